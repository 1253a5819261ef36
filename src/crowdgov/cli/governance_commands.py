"""
crowdgov governance CLI commands

CLI equivalents for the governance HTTP API:
- DAO registration and listing
- Proposal registration, lifecycle transitions and voting
- Voting power and delegation
- Proposal funding (contribute, withdraw, refund)
- Audit events and the local logical clock
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

import click
import requests
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)
console = Console()

STATUS_COLORS = {
    "draft": "blue",
    "active": "yellow",
    "passed": "green",
    "rejected": "red",
    "executed": "cyan",
    "canceled": "dim",
}


def _handle_cli_error(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler for consistent messaging/exit codes."""
    logger.error("CLI error: %s", exc)
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


class GovernanceClient:
    """Client for governance API operations."""

    def __init__(self, api_url: str, account: str | None = None, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.account = account
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        """Make HTTP request to governance endpoint."""
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        logger.debug("Governance request: %s %s", method, url)
        headers = kwargs.pop("headers", {})
        if self.account:
            headers.setdefault("X-Account", self.account)
        try:
            response = requests.request(method, url, timeout=self.timeout, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error("Governance API error: %s", e)
            raise click.ClickException(f"Governance API error: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            error = data.get("error", f"HTTP {response.status_code}")
            message = data.get("message", response.reason or "request failed")
            logger.debug("Governance response: status=%d error=%s", response.status_code, error)
            raise click.ClickException(f"{error}: {message}")
        logger.debug("Governance response: status=%d", response.status_code)
        return data

    def _require_account(self) -> None:
        if not self.account:
            raise click.ClickException("This command needs an account (--account or CROWDGOV_ACCOUNT)")

    def post(
        self, endpoint: str, payload: dict[str, Any] | None = None, require_account: bool = True
    ) -> dict[str, Any]:
        if require_account:
            self._require_account()
        return self._request("POST", endpoint, json=payload or {})

    def delete(self, endpoint: str) -> dict[str, Any]:
        self._require_account()
        return self._request("DELETE", endpoint)

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._request("GET", endpoint, params=params or {})

    def list_proposals(self, organization: str | None = None, status: str | None = None, limit: int = 20):
        params: dict[str, Any] = {"limit": limit}
        if organization:
            params["organization"] = organization
        if status:
            params["status"] = status
        return self.get("/governance/proposals", params)

    def get_proposal(self, proposal_id: str) -> dict[str, Any]:
        return self.get(f"/governance/proposals/{proposal_id}")

    def register_proposal(self, proposal_data: dict[str, Any]) -> dict[str, Any]:
        return self.post("/governance/proposals", proposal_data)

    def transition(self, proposal_id: str, action: str) -> dict[str, Any]:
        return self.post(f"/governance/proposals/{proposal_id}/{action}")

    def vote(self, proposal_id: str, kind: str) -> dict[str, Any]:
        return self.post(f"/governance/proposals/{proposal_id}/vote", {"kind": kind})

    def get_power(self, organization: str, account: str) -> dict[str, Any]:
        return self.get(f"/governance/power/{organization}/{account}")


def _client(ctx: click.Context) -> GovernanceClient:
    obj = ctx.obj or {}
    return GovernanceClient(obj.get("api_url", ""), account=obj.get("account"), timeout=obj.get("timeout", 30.0))


def _emit_json(ctx: click.Context, data: dict[str, Any]) -> bool:
    if (ctx.obj or {}).get("json_output"):
        click.echo(json.dumps(data, indent=2))
        return True
    return False


def _run(ctx: click.Context, call, render) -> None:
    try:
        data = call()
        if not _emit_json(ctx, data):
            render(data)
    except (click.ClickException, requests.RequestException, ValueError, KeyError) as exc:
        _handle_cli_error(exc)


@click.group()
def governance():
    """Governance proposals, voting, delegation and funding."""
    pass


# ==================== DAOs ====================


@governance.command("create-dao")
@click.argument("dao_id")
@click.option("--name", required=True, help="Display name")
@click.option("--description", default="", help="Short description")
@click.option("--url", default="", help="Homepage URL")
@click.option("--token-asset", default=None, help="Governance token identifier")
@click.pass_context
def create_dao(ctx: click.Context, dao_id: str, name: str, description: str, url: str, token_asset: str | None):
    """
    Register a DAO owned by the current account.

    Example:
        crowdgov --account alice governance create-dao dao.alpha --name Alpha
    """
    client = _client(ctx)
    payload = {"dao_id": dao_id, "name": name, "description": description, "url": url}
    if token_asset:
        payload["token_asset"] = token_asset
    _run(
        ctx,
        lambda: client.post("/governance/daos", payload),
        lambda data: console.print(f"[bold green]DAO registered:[/] [cyan]{data['dao']['dao_id']}[/]"),
    )


@governance.command("daos")
@click.option("--active-only", is_flag=True, help="Hide deactivated DAOs")
@click.pass_context
def list_daos(ctx: click.Context, active_only: bool):
    """List registered DAOs."""
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        daos = data.get("daos", [])
        if not daos:
            console.print("[yellow]No DAOs found[/]")
            return
        table = Table(title=f"DAOs ({len(daos)})", box=box.ROUNDED)
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Owner", style="dim")
        table.add_column("Token")
        table.add_column("Active")
        for dao in daos:
            table.add_row(
                dao["dao_id"],
                dao["name"],
                dao["owner"],
                dao.get("token_asset") or "-",
                "[green]yes[/]" if dao["active"] else "[red]no[/]",
            )
        console.print(table)

    _run(ctx, lambda: client.get("/governance/daos", {"active_only": "1" if active_only else ""}), render)


# ==================== Proposals ====================


@governance.command("list")
@click.option("--organization", default=None, help="Only proposals of this DAO")
@click.option(
    "--status",
    type=click.Choice(["draft", "active", "passed", "rejected", "executed", "canceled", "all"]),
    default="all",
    help="Filter proposals by status",
)
@click.option("--limit", default=20, type=int, help="Maximum proposals to show")
@click.pass_context
def list_proposals(ctx: click.Context, organization: str | None, status: str, limit: int):
    """
    List governance proposals.

    Example:
        crowdgov governance list --status active --limit 10
    """
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        proposals = data.get("proposals", [])
        if not proposals:
            console.print("[yellow]No proposals found[/]")
            return
        table = Table(title=f"Governance Proposals ({len(proposals)})", box=box.ROUNDED, show_lines=True)
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title", style="white", max_width=40)
        table.add_column("DAO")
        table.add_column("Status")
        table.add_column("Window", justify="right")
        for prop in proposals:
            prop_status = prop.get("status", "unknown")
            color = STATUS_COLORS.get(prop_status, "white")
            table.add_row(
                prop["proposal_id"],
                prop.get("title", "Untitled")[:40],
                prop.get("organization", ""),
                f"[{color}]{prop_status.upper()}[/]",
                f"[{prop['voting_start']}, {prop['voting_end']})",
            )
        console.print(table)

    _run(
        ctx,
        lambda: client.list_proposals(organization, None if status == "all" else status, limit),
        render,
    )


@governance.command("show")
@click.argument("proposal_id")
@click.pass_context
def show_proposal(ctx: click.Context, proposal_id: str):
    """Show proposal details and the current tally."""
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        proposal = data["proposal"]
        tally = data["tally"]
        table = Table(show_header=False, box=box.ROUNDED)
        table.add_row("[bold cyan]Proposal ID", proposal["proposal_id"])
        table.add_row("[bold cyan]Title", proposal["title"])
        table.add_row("[bold cyan]DAO", proposal["organization"])
        table.add_row("[bold cyan]Proposer", proposal["proposer"])
        table.add_row("[bold cyan]Status", proposal["status"].upper())
        table.add_row("[bold cyan]Voting", f"[{proposal['voting_start']}, {proposal['voting_end']})")
        table.add_row("[bold green]Yes", str(tally["yes"]))
        table.add_row("[bold red]No", str(tally["no"]))
        table.add_row("[bold yellow]Abstain", str(tally["abstain"]))
        table.add_row("[bold cyan]Voters", str(tally["voter_count"]))
        table.add_row(
            "[bold cyan]Approval",
            f"{tally['approval_percentage']}% (needs {proposal['min_approval_percentage']}%)",
        )
        console.print(Panel(table, title="[bold green]Proposal Details", border_style="green"))
        if proposal.get("description"):
            console.print(Panel(proposal["description"][:500], border_style="dim"))

    _run(ctx, lambda: client.get_proposal(proposal_id), render)


@governance.command("propose")
@click.option("--organization", required=True, help="DAO hosting the proposal")
@click.option("--title", required=True, help="Proposal title")
@click.option("--description", default="", help="Proposal description")
@click.option("--start", "voting_start", required=True, type=int, help="First epoch of the voting window")
@click.option("--end", "voting_end", required=True, type=int, help="Epoch the voting window closes")
@click.option("--min-approval", required=True, type=click.IntRange(0, 100), help="Required approval percentage")
@click.option("--funding-goal", default=0, type=int, help="Funding goal in base units")
@click.option("--data", "payload_json", help="JSON payload for execution")
@click.option("--id", "proposal_id", default=None, help="Explicit proposal id")
@click.pass_context
def create_proposal(
    ctx: click.Context,
    organization: str,
    title: str,
    description: str,
    voting_start: int,
    voting_end: int,
    min_approval: int,
    funding_goal: int,
    payload_json: str | None,
    proposal_id: str | None,
):
    """
    Register a DRAFT proposal.

    Example:
        crowdgov --account alice governance propose --organization dao.alpha \\
            --title "Fund audit" --start 10 --end 20 --min-approval 51
    """
    client = _client(ctx)

    payload = None
    if payload_json:
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"Invalid JSON payload: {e}")

    proposal_data: dict[str, Any] = {
        "organization": organization,
        "title": title,
        "description": description,
        "voting_start": voting_start,
        "voting_end": voting_end,
        "min_approval_percentage": min_approval,
        "funding_goal": funding_goal,
    }
    if payload is not None:
        proposal_data["payload"] = payload
    if proposal_id:
        proposal_data["proposal_id"] = proposal_id

    def render(data: dict[str, Any]) -> None:
        console.print("[bold green]Proposal registered[/]")
        console.print(f"Proposal ID: [cyan]{data['proposal']['proposal_id']}[/]")
        console.print(f"Status: [blue]{data['proposal']['status'].upper()}[/]")

    logger.info("Registering proposal: title=%s organization=%s", title, organization)
    _run(ctx, lambda: client.register_proposal(proposal_data), render)


def _transition_command(action: str, help_text: str):
    @click.argument("proposal_id")
    @click.pass_context
    def command(ctx: click.Context, proposal_id: str):
        client = _client(ctx)

        def render(data: dict[str, Any]) -> None:
            if action == "finalize":
                result = data["result"]
                color = STATUS_COLORS.get(result["status"], "white")
                console.print(
                    f"Proposal [cyan]{proposal_id}[/] finalized: [{color}]{result['status'].upper()}[/] "
                    f"({result['approval_percentage']}% approval, "
                    f"{result['min_approval_percentage']}% required)"
                )
            else:
                status = data["proposal"]["status"]
                console.print(f"Proposal [cyan]{proposal_id}[/] is now [bold]{status.upper()}[/]")

        _run(ctx, lambda: client.transition(proposal_id, action), render)

    command.__doc__ = help_text
    return governance.command(action)(command)


activate_proposal = _transition_command("activate", "Open a DRAFT proposal for voting.")
finalize_proposal = _transition_command("finalize", "Tally a proposal whose voting window has closed.")
execute_proposal = _transition_command("execute", "Mark a PASSED proposal as executed.")
cancel_proposal = _transition_command("cancel", "Cancel a DRAFT or ACTIVE proposal.")


@governance.command("vote")
@click.argument("proposal_id")
@click.option("--choice", type=click.Choice(["yes", "no", "abstain"]), required=True, help="Vote choice")
@click.pass_context
def vote_proposal(ctx: click.Context, proposal_id: str, choice: str):
    """
    Vote on an ACTIVE proposal with the account's current effective power.

    Example:
        crowdgov --account bob governance vote proposal_1a2b --choice yes
    """
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        vote = data["vote"]
        tally = data["tally"]
        console.print(
            f"[bold green]Vote recorded:[/] {vote['kind'].upper()} with power {vote['power']}"
        )
        console.print(
            f"Tally: yes={tally['yes']} no={tally['no']} abstain={tally['abstain']} "
            f"({tally['approval_percentage']}% approval)"
        )

    _run(ctx, lambda: client.vote(proposal_id, choice), render)


# ==================== Power & delegation ====================


@governance.command("power")
@click.argument("organization")
@click.argument("account")
@click.pass_context
def show_power(ctx: click.Context, organization: str, account: str):
    """Show an account's voting power in a DAO."""
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        power = data["power"]
        table = Table(show_header=False, box=box.ROUNDED)
        table.add_row("[bold cyan]Token power", str(power["token_power"]))
        table.add_row("[bold cyan]Currency power", str(power["currency_power"]))
        table.add_row("[bold cyan]Received delegations", str(power["received_delegated_power"]))
        table.add_row("[bold green]Effective power", str(data["effective_power"]))
        delegation = data.get("delegation")
        if delegation:
            expiry = delegation.get("expiry")
            table.add_row(
                "[bold yellow]Delegating to",
                f"{delegation['delegate']} ({delegation['amount']}"
                + (f", expires after {expiry})" if expiry is not None else ")"),
            )
        console.print(Panel(table, title=f"[bold]{account} in {organization}", border_style="cyan"))

    _run(ctx, lambda: client.get_power(organization, account), render)


@governance.command("delegate")
@click.argument("organization")
@click.argument("delegate")
@click.option("--expiry", type=int, default=None, help="Last epoch the delegation is valid")
@click.pass_context
def delegate_power(ctx: click.Context, organization: str, delegate: str, expiry: int | None):
    """Delegate the account's own power in a DAO."""
    client = _client(ctx)
    payload: dict[str, Any] = {"delegate": delegate}
    if expiry is not None:
        payload["expiry"] = expiry
    _run(
        ctx,
        lambda: client.post(f"/governance/delegations/{organization}", payload),
        lambda data: console.print(
            f"[bold green]Delegated[/] {data['delegation']['amount']} to [cyan]{delegate}[/]"
        ),
    )


@governance.command("revoke")
@click.argument("organization")
@click.pass_context
def revoke_delegation(ctx: click.Context, organization: str):
    """Revoke the account's active delegation in a DAO."""
    client = _client(ctx)
    _run(
        ctx,
        lambda: client.delete(f"/governance/delegations/{organization}"),
        lambda data: console.print(f"[bold green]Delegation revoked[/], reclaimed {data['reclaimed']}"),
    )


# ==================== Funding ====================


@governance.group("funding")
def funding():
    """Proposal crowdfunding escrow."""
    pass


@funding.command("init")
@click.argument("proposal_id")
@click.option("--start", "window_start", required=True, type=int, help="First funding epoch")
@click.option("--end", "window_end", required=True, type=int, help="Epoch funding closes")
@click.option("--min-goal", required=True, type=int, help="Minimum goal in base units")
@click.option("--target-goal", required=True, type=int, help="Target goal in base units")
@click.option("--beneficiary", default=None, help="Withdrawal recipient (defaults to the DAO)")
@click.pass_context
def funding_init(
    ctx: click.Context,
    proposal_id: str,
    window_start: int,
    window_end: int,
    min_goal: int,
    target_goal: int,
    beneficiary: str | None,
):
    """Open the escrow for a proposal."""
    client = _client(ctx)
    payload: dict[str, Any] = {
        "window_start": window_start,
        "window_end": window_end,
        "min_goal": min_goal,
        "target_goal": target_goal,
    }
    if beneficiary:
        payload["beneficiary"] = beneficiary
    _run(
        ctx,
        lambda: client.post(f"/governance/funding/{proposal_id}", payload),
        lambda data: console.print(
            f"[bold green]Funding opened[/] for [cyan]{proposal_id}[/], "
            f"beneficiary {data['funding']['beneficiary']}"
        ),
    )


@funding.command("status")
@click.argument("proposal_id")
@click.pass_context
def funding_status(ctx: click.Context, proposal_id: str):
    """Show raised amounts, goals and available balances."""
    client = _client(ctx)

    def render(data: dict[str, Any]) -> None:
        record = data["funding"]
        token = record["token_raised"]
        table = Table(show_header=False, box=box.ROUNDED)
        table.add_row("[bold cyan]Window", f"[{record['window']['start']}, {record['window']['end']})")
        table.add_row("[bold cyan]Raised", f"{record['total_raised']} ({record['progress']}% of target)")
        table.add_row(f"[bold cyan]{record.get('native_asset', 'Native')}", str(record["stx_raised"]))
        if token.get("asset"):
            table.add_row(f"[bold cyan]{token['asset']}", str(token["amount"]))
        table.add_row("[bold cyan]Goals", f"min {record['min_goal']} / target {record['target_goal']}")
        table.add_row("[bold cyan]Funders", str(record["funder_count"]))
        table.add_row("[bold cyan]Available", str(record["available_balance"]))
        reached = record["min_goal_reached"]
        table.add_row("[bold cyan]Minimum goal", "[green]reached[/]" if reached else "[yellow]not reached[/]")
        console.print(Panel(table, title=f"[bold]Funding for {proposal_id}", border_style="cyan"))

    _run(ctx, lambda: client.get(f"/governance/funding/{proposal_id}"), render)


@funding.command("contribute")
@click.argument("proposal_id")
@click.argument("amount", type=int)
@click.option("--asset", default=None, help="Alternate asset (native currency when omitted)")
@click.pass_context
def funding_contribute(ctx: click.Context, proposal_id: str, amount: int, asset: str | None):
    """Contribute to a proposal's escrow."""
    client = _client(ctx)
    payload: dict[str, Any] = {"amount": amount}
    if asset:
        payload["asset"] = asset
    _run(
        ctx,
        lambda: client.post(f"/governance/funding/{proposal_id}/contribute", payload),
        lambda data: console.print(
            f"[bold green]Contributed[/] {amount} to [cyan]{proposal_id}[/] "
            f"({data['contribution']['contribution_count']} contribution(s) so far)"
        ),
    )


@funding.command("withdraw")
@click.argument("proposal_id")
@click.argument("amount", type=int)
@click.option("--token", is_flag=True, help="Withdraw the alternate asset")
@click.pass_context
def funding_withdraw(ctx: click.Context, proposal_id: str, amount: int, token: bool):
    """Beneficiary withdrawal after a successful raise."""
    client = _client(ctx)
    endpoint = "withdraw-token" if token else "withdraw"
    _run(
        ctx,
        lambda: client.post(f"/governance/funding/{proposal_id}/{endpoint}", {"amount": amount}),
        lambda data: console.print(f"[bold green]Withdrew[/] {amount} from [cyan]{proposal_id}[/]"),
    )


@funding.command("refund")
@click.argument("proposal_id")
@click.option("--token", is_flag=True, help="Refund the alternate-asset contribution")
@click.pass_context
def funding_refund(ctx: click.Context, proposal_id: str, token: bool):
    """Take back a contribution after a failed raise."""
    client = _client(ctx)
    endpoint = "refund-token" if token else "refund"
    _run(
        ctx,
        lambda: client.post(f"/governance/funding/{proposal_id}/{endpoint}"),
        lambda data: console.print(f"[bold green]Refunded[/] {data['refunded']}"),
    )


# ==================== Events & clock ====================


@governance.command("events")
@click.option("--kind", default=None, help="Only events of this kind (e.g. vote_cast)")
@click.option("--since", default=0, type=int, help="Only events after this sequence number")
@click.option("--limit", default=50, type=int, help="Maximum events to show")
@click.pass_context
def list_events(ctx: click.Context, kind: str | None, since: int, limit: int):
    """Show the audit event stream."""
    client = _client(ctx)
    params: dict[str, Any] = {"since": since, "limit": limit}
    if kind:
        params["kind"] = kind

    def render(data: dict[str, Any]) -> None:
        events = data.get("events", [])
        if not events:
            console.print("[yellow]No events[/]")
            return
        table = Table(title=f"Audit Events ({len(events)})", box=box.SIMPLE)
        table.add_column("#", justify="right")
        table.add_column("Epoch", justify="right")
        table.add_column("Kind", style="cyan")
        table.add_column("Actor")
        table.add_column("Subject", style="dim")
        for event in events:
            table.add_row(
                str(event["sequence"]),
                str(event["epoch"]),
                event["kind"],
                event["actor"],
                json.dumps(event["subject"], sort_keys=True),
            )
        console.print(table)

    _run(ctx, lambda: client.get("/governance/events", params), render)


@governance.command("clock")
@click.option("--set", "epoch", type=int, default=None, help="Move the clock to this epoch")
@click.option("--advance", type=int, default=None, help="Move the clock forward by this many epochs")
@click.pass_context
def clock(ctx: click.Context, epoch: int | None, advance: int | None):
    """Show or move the logical clock (local networks only)."""
    client = _client(ctx)
    if epoch is not None and advance is not None:
        raise click.UsageError("Use either --set or --advance, not both")

    if epoch is not None:
        call = lambda: client.post("/governance/clock", {"epoch": epoch}, require_account=False)  # noqa: E731
    elif advance is not None:
        call = lambda: client.post("/governance/clock", {"advance": advance}, require_account=False)  # noqa: E731
    else:
        call = lambda: client.get("/governance/clock")  # noqa: E731
    _run(ctx, call, lambda data: console.print(f"Epoch: [bold cyan]{data['epoch']}[/]"))
