"""
Governance API Handler

HTTP surface of the governance engine:
- DAO registration and lookup
- Proposal registration, activation, voting, finalization, execution
- Voting power and delegation
- Proposal funding escrow
- Logical clock (local networks only) and the audit event stream

The acting account is taken from the ``X-Account`` header. Governance errors
become ``{"success": false, "error", "field", "message"}`` responses.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, Response, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crowdgov.core.config import GovernanceConfig
from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    GovernanceError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    TransferFailedError,
    UnauthorizedError,
)
from crowdgov.governance.funding_escrow import FundingWindow
from crowdgov.governance.governance_engine import GovernanceEngine

logger = logging.getLogger(__name__)

ACCOUNT_HEADER = "X-Account"

ERROR_STATUS: list[tuple[type[GovernanceError], int]] = [
    (InvalidInputError, 400),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (AlreadyExistsError, 409),
    (InsufficientFundsError, 409),
    (TransferFailedError, 502),
]


def status_for(error: GovernanceError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 400


class GovernanceAPIHandler:
    """Handles all governance-related API endpoints."""

    def __init__(self, engine: GovernanceEngine, app: Flask, allow_clock_override: bool = False):
        """
        Initialize Governance API Handler.

        Args:
            engine: GovernanceEngine instance
            app: Flask application instance
            allow_clock_override: Let callers move the logical clock (local nodes)
        """
        self.engine = engine
        self.app = app
        self.allow_clock_override = allow_clock_override

        self._register_routes()

    def _register_routes(self) -> None:
        """Register all governance routes."""
        route = self.app.add_url_rule

        route("/health", "health", lambda: (jsonify({"status": "ok", "epoch": self.engine.clock.now}), 200))
        route("/metrics", "metrics", self.metrics_handler)

        # DAOs
        route("/governance/daos", "list_daos", self._wrap(self.list_daos_handler), methods=["GET"])
        route("/governance/daos", "create_dao", self._wrap(self.create_dao_handler), methods=["POST"])
        route("/governance/daos/<dao_id>", "get_dao", self._wrap(self.get_dao_handler), methods=["GET"])
        route(
            "/governance/daos/<dao_id>/deactivate",
            "deactivate_dao",
            self._wrap(self.deactivate_dao_handler),
            methods=["POST"],
        )

        # Proposals
        route("/governance/proposals", "list_proposals", self._wrap(self.list_proposals_handler), methods=["GET"])
        route(
            "/governance/proposals", "register_proposal", self._wrap(self.register_proposal_handler), methods=["POST"]
        )
        route(
            "/governance/proposals/<proposal_id>",
            "get_proposal",
            self._wrap(self.get_proposal_handler),
            methods=["GET"],
        )
        route(
            "/governance/proposals/<proposal_id>/votes",
            "list_votes",
            self._wrap(self.list_votes_handler),
            methods=["GET"],
        )
        route(
            "/governance/proposals/<proposal_id>/vote",
            "vote",
            self._wrap(self.vote_handler),
            methods=["POST"],
        )
        for action in ("activate", "finalize", "execute", "cancel"):
            route(
                f"/governance/proposals/<proposal_id>/{action}",
                f"proposal_{action}",
                self._wrap(self._transition_handler(action)),
                methods=["POST"],
            )

        # Power & delegation
        route(
            "/governance/power/<organization>/<account>",
            "get_power",
            self._wrap(self.get_power_handler),
            methods=["GET"],
        )
        route(
            "/governance/power/<organization>/<account>",
            "update_power",
            self._wrap(self.update_power_handler),
            methods=["POST"],
        )
        route(
            "/governance/power/<organization>/<account>/refresh",
            "refresh_power",
            self._wrap(self.refresh_power_handler),
            methods=["POST"],
        )
        route(
            "/governance/delegations/<organization>",
            "list_delegations",
            self._wrap(self.list_delegations_handler),
            methods=["GET"],
        )
        route(
            "/governance/delegations/<organization>",
            "delegate",
            self._wrap(self.delegate_handler),
            methods=["POST"],
        )
        route(
            "/governance/delegations/<organization>",
            "revoke",
            self._wrap(self.revoke_handler),
            methods=["DELETE"],
        )
        route(
            "/governance/delegations/<organization>/expire",
            "check_expiry",
            self._wrap(self.check_expiry_handler),
            methods=["POST"],
        )

        # Funding
        route(
            "/governance/funding/<proposal_id>",
            "get_funding",
            self._wrap(self.get_funding_handler),
            methods=["GET"],
        )
        route(
            "/governance/funding/<proposal_id>",
            "initialize_funding",
            self._wrap(self.initialize_funding_handler),
            methods=["POST"],
        )
        route(
            "/governance/funding/<proposal_id>/contribute",
            "contribute",
            self._wrap(self.contribute_handler),
            methods=["POST"],
        )
        route(
            "/governance/funding/<proposal_id>/contributions",
            "list_contributions",
            self._wrap(self.list_contributions_handler),
            methods=["GET"],
        )
        route(
            "/governance/funding/<proposal_id>/contributions/<funder>",
            "get_contribution",
            self._wrap(self.get_contribution_handler),
            methods=["GET"],
        )
        for action in ("withdraw", "withdraw-token"):
            route(
                f"/governance/funding/<proposal_id>/{action}",
                action.replace("-", "_"),
                self._wrap(self._withdraw_handler(token=action.endswith("token"))),
                methods=["POST"],
            )
        for action in ("refund", "refund-token"):
            route(
                f"/governance/funding/<proposal_id>/{action}",
                action.replace("-", "_"),
                self._wrap(self._refund_handler(token=action.endswith("token"))),
                methods=["POST"],
            )

        # Clock & events
        route("/governance/clock", "get_clock", self._wrap(self.get_clock_handler), methods=["GET"])
        route("/governance/clock", "set_clock", self._wrap(self.set_clock_handler), methods=["POST"])
        route("/governance/events", "events", self._wrap(self.events_handler), methods=["GET"])

    # ==================== Plumbing ====================

    def _wrap(self, handler: Callable[..., tuple[Any, int]]) -> Callable[..., tuple[Any, int]]:
        def view(**kwargs: Any) -> tuple[Any, int]:
            try:
                with self.engine.lock:
                    payload, status = handler(**kwargs)
            except GovernanceError as exc:
                status = status_for(exc)
                logger.warning(
                    "Governance request rejected: %s",
                    exc.message,
                    extra={
                        "event": "api.request_rejected",
                        "error": exc.kind,
                        "field": exc.field,
                        "path": request.path,
                        "status": status,
                    },
                )
                return jsonify({"success": False, **exc.to_dict()}), status
            return jsonify(payload), status

        view.__name__ = handler.__name__
        return view

    @staticmethod
    def _caller() -> str:
        caller = request.headers.get(ACCOUNT_HEADER, "").strip()
        if not caller:
            raise InvalidInputError(f"Missing {ACCOUNT_HEADER} header", field="caller")
        return caller

    @staticmethod
    def _body() -> dict[str, Any]:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise InvalidInputError("Request body must be a JSON object", field="body")
        return data

    @staticmethod
    def _required(data: dict[str, Any], key: str) -> Any:
        if key not in data or data[key] is None:
            raise InvalidInputError(f"Missing field: {key}", field=key)
        return data[key]

    def metrics_handler(self) -> Response:
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    # ==================== DAOs ====================

    def list_daos_handler(self) -> tuple[dict[str, Any], int]:
        active_only = request.args.get("active_only", "").lower() in ("1", "true", "yes")
        daos = self.engine.list_daos(active_only=active_only)
        return {"count": len(daos), "daos": [d.to_dict() for d in daos]}, 200

    def create_dao_handler(self) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        dao = self.engine.create_dao(
            caller,
            self._required(data, "dao_id"),
            self._required(data, "name"),
            description=data.get("description", ""),
            url=data.get("url", ""),
            token_asset=data.get("token_asset"),
        )
        return {"success": True, "dao": dao.to_dict()}, 201

    def get_dao_handler(self, dao_id: str) -> tuple[dict[str, Any], int]:
        return {"dao": self.engine.get_dao(dao_id).to_dict()}, 200

    def deactivate_dao_handler(self, dao_id: str) -> tuple[dict[str, Any], int]:
        dao = self.engine.deactivate_dao(self._caller(), dao_id)
        return {"success": True, "dao": dao.to_dict()}, 200

    # ==================== Proposals ====================

    def list_proposals_handler(self) -> tuple[dict[str, Any], int]:
        proposals = self.engine.list_proposals(
            organization=request.args.get("organization"),
            status=request.args.get("status"),
        )
        limit = request.args.get("limit", type=int)
        if limit is not None:
            proposals = proposals[: max(limit, 0)]
        return {"count": len(proposals), "proposals": [p.to_dict() for p in proposals]}, 200

    def register_proposal_handler(self) -> tuple[dict[str, Any], int]:
        """
        Handle proposal registration.

        Returns:
            Tuple of (response dict, HTTP status code)
        """
        caller = self._caller()
        data = self._body()
        proposal = self.engine.register_proposal(
            caller,
            organization=self._required(data, "organization"),
            title=self._required(data, "title"),
            description=data.get("description", ""),
            voting_start=self._required(data, "voting_start"),
            voting_end=self._required(data, "voting_end"),
            min_approval_percentage=self._required(data, "min_approval_percentage"),
            funding_goal=data.get("funding_goal", 0),
            payload=data.get("payload"),
            proposal_id=data.get("proposal_id"),
        )
        return {"success": True, "proposal": proposal.to_dict()}, 201

    def get_proposal_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        proposal = self.engine.get_proposal(proposal_id)
        tally = self.engine.get_tally(proposal_id)
        return {"proposal": proposal.to_dict(), "tally": tally.to_dict()}, 200

    def list_votes_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        votes = self.engine.list_votes(proposal_id)
        return {"count": len(votes), "votes": [v.to_dict() for v in votes]}, 200

    def vote_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        """
        Handle vote submission. Power is the caller's effective power at cast time.

        Returns:
            Tuple of (response dict, HTTP status code)
        """
        caller = self._caller()
        data = self._body()
        record = self.engine.vote(caller, proposal_id, self._required(data, "kind"))
        tally = self.engine.get_tally(proposal_id)
        return {"success": True, "vote": record.to_dict(), "tally": tally.to_dict()}, 200

    def _transition_handler(self, action: str) -> Callable[..., tuple[dict[str, Any], int]]:
        def handler(proposal_id: str) -> tuple[dict[str, Any], int]:
            result = getattr(self.engine, action)(self._caller(), proposal_id)
            key = "result" if action == "finalize" else "proposal"
            return {"success": True, key: result.to_dict()}, 200

        handler.__name__ = f"{action}_handler"
        return handler

    # ==================== Power & delegation ====================

    def get_power_handler(self, organization: str, account: str) -> tuple[dict[str, Any], int]:
        record = self.engine.get_power_record(organization, account)
        delegation = self.engine.get_delegation(organization, account)
        return (
            {
                "power": record.to_dict(),
                "effective_power": record.effective_power,
                "delegation": delegation.to_dict() if delegation else None,
            },
            200,
        )

    def update_power_handler(self, organization: str, account: str) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        component = self._required(data, "component")
        amount = self._required(data, "amount")
        if component == "token":
            record = self.engine.update_token_power(caller, organization, account, amount)
        elif component == "currency":
            record = self.engine.update_currency_power(caller, organization, account, amount)
        else:
            raise InvalidInputError("component must be 'token' or 'currency'", field="component")
        return {"success": True, "power": record.to_dict()}, 200

    def refresh_power_handler(self, organization: str, account: str) -> tuple[dict[str, Any], int]:
        record = self.engine.refresh_power(self._caller(), organization, account)
        return {"success": True, "power": record.to_dict()}, 200

    def list_delegations_handler(self, organization: str) -> tuple[dict[str, Any], int]:
        delegations = self.engine.list_delegations(organization)
        return {"count": len(delegations), "delegations": [d.to_dict() for d in delegations]}, 200

    def delegate_handler(self, organization: str) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        delegation = self.engine.delegate(
            caller, organization, self._required(data, "delegate"), expiry=data.get("expiry")
        )
        return {"success": True, "delegation": delegation.to_dict()}, 201

    def revoke_handler(self, organization: str) -> tuple[dict[str, Any], int]:
        amount = self.engine.revoke(self._caller(), organization)
        return {"success": True, "reclaimed": amount}, 200

    def check_expiry_handler(self, organization: str) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        amount = self.engine.check_expiry(
            caller, organization, self._required(data, "delegator"), self._required(data, "delegate")
        )
        return {"success": True, "expired": amount > 0, "reclaimed": amount}, 200

    # ==================== Funding ====================

    def get_funding_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        return {"funding": self.engine.funding_summary(proposal_id)}, 200

    def initialize_funding_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        record = self.engine.initialize_funding(
            caller,
            proposal_id,
            FundingWindow(
                start=self._required(data, "window_start"),
                end=self._required(data, "window_end"),
            ),
            min_goal=self._required(data, "min_goal"),
            target_goal=self._required(data, "target_goal"),
            beneficiary=data.get("beneficiary"),
            fundable=data.get("fundable", True),
        )
        return {"success": True, "funding": record.to_dict()}, 201

    def contribute_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        caller = self._caller()
        data = self._body()
        contribution = self.engine.contribute(
            caller, proposal_id, self._required(data, "amount"), asset=data.get("asset")
        )
        return {"success": True, "contribution": contribution.to_dict()}, 200

    def list_contributions_handler(self, proposal_id: str) -> tuple[dict[str, Any], int]:
        contributions = self.engine.list_contributions(proposal_id)
        return {
            "proposal_id": proposal_id,
            "contributions": [c.to_dict() for c in contributions],
            "count": len(contributions),
        }, 200

    def get_contribution_handler(self, proposal_id: str, funder: str) -> tuple[dict[str, Any], int]:
        contribution = self.engine.get_contribution(proposal_id, funder)
        if contribution is None:
            raise NotFoundError(f"No contribution from {funder} to {proposal_id}", field="contribution")
        return {"contribution": contribution.to_dict()}, 200

    def _withdraw_handler(self, token: bool) -> Callable[..., tuple[dict[str, Any], int]]:
        def handler(proposal_id: str) -> tuple[dict[str, Any], int]:
            caller = self._caller()
            amount = self._required(self._body(), "amount")
            withdraw = self.engine.withdraw_token if token else self.engine.withdraw
            record = withdraw(caller, proposal_id, amount)
            return {"success": True, "withdrawals": record.to_dict()}, 200

        handler.__name__ = "withdraw_token_handler" if token else "withdraw_handler"
        return handler

    def _refund_handler(self, token: bool) -> Callable[..., tuple[dict[str, Any], int]]:
        def handler(proposal_id: str) -> tuple[dict[str, Any], int]:
            caller = self._caller()
            refund = self.engine.refund_token if token else self.engine.refund
            return {"success": True, "refunded": refund(caller, proposal_id)}, 200

        handler.__name__ = "refund_token_handler" if token else "refund_handler"
        return handler

    # ==================== Clock & events ====================

    def get_clock_handler(self) -> tuple[dict[str, Any], int]:
        return {"epoch": self.engine.clock.now}, 200

    def set_clock_handler(self) -> tuple[dict[str, Any], int]:
        if not self.allow_clock_override:
            raise UnauthorizedError("Logical clock is owned by the host", field="clock")
        data = self._body()
        if "epoch" in data:
            epoch = self.engine.set_clock(data["epoch"])
        else:
            epoch = self.engine.advance_clock(data.get("advance", 1))
        return {"success": True, "epoch": epoch}, 200

    def events_handler(self) -> tuple[dict[str, Any], int]:
        events = self.engine.events(
            kind=request.args.get("kind"),
            since=request.args.get("since", 0, type=int),
            limit=request.args.get("limit", type=int),
        )
        return {"count": len(events), "events": [e.to_dict() for e in events]}, 200


def create_app(
    engine: Optional[GovernanceEngine] = None, config: Optional[GovernanceConfig] = None
) -> Flask:
    """
    Build the Flask application around an engine.

    When no engine is given one is created from ``config`` (or the
    environment) and, if the configured state file exists, restored from it.
    """
    if config is None:
        config = engine.config if engine is not None else GovernanceConfig.from_env()
    if engine is None:
        engine = GovernanceEngine(config=config)
        if config.state_file and Path(config.state_file).exists():
            engine.load_state()

    app = Flask("crowdgov")
    app.config["GOVERNANCE_ENGINE"] = engine
    GovernanceAPIHandler(engine, app, allow_clock_override=config.allow_clock_override)
    return app
