"""
Governance engine: the registry/aggregator facade.

Wires the DAO registry, proposal lifecycle, power ledger and funding escrow
over one record store and exposes one method per caller action. Each action:

1. takes the engine lock (host adapters may call from several threads)
2. builds an ``ActionContext`` from the caller and the host clock
3. runs inside a single store transaction, so component operations composed
   by the action commit or abort together

Organization-ownership checks that span components (execute, funding setup,
power overrides) live here; per-record checks stay in the components.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from crowdgov.core import governance_metrics
from crowdgov.core.asset_transfer import AssetTransfer, InMemoryAssetLedger
from crowdgov.core.audit_events import AuditEvent, AuditEventKind, AuditEventLog
from crowdgov.core.config import ConfigurationError, GovernanceConfig
from crowdgov.core.governance_exceptions import (
    GoalNotReachedError,
    InvalidInputError,
    InvalidStateError,
    UnauthorizedError,
)
from crowdgov.core.logical_clock import ActionContext, LogicalClock
from crowdgov.core.record_store import RecordStore
from crowdgov.governance.dao_registry import DaoRecord, DaoRegistry
from crowdgov.governance.funding_escrow import (
    Contribution,
    FundingEscrow,
    FundingRecord,
    FundingWindow,
    WithdrawalRecord,
)
from crowdgov.governance.power_ledger import Delegation, PowerLedger, PowerRecord
from crowdgov.governance.proposal_lifecycle import (
    FinalizationResult,
    Proposal,
    ProposalLifecycle,
    ProposalStatus,
    VoteKind,
    VoteRecord,
    VoteTally,
)

logger = logging.getLogger(__name__)


def parse_vote_kind(value: Any) -> VoteKind:
    if isinstance(value, VoteKind):
        return value
    if isinstance(value, str):
        try:
            return VoteKind(value.strip().lower())
        except ValueError:
            pass
    raise InvalidInputError(f"Unknown vote kind: {value!r}", field="kind")


def parse_status(value: Any) -> Optional[ProposalStatus]:
    if value is None or isinstance(value, ProposalStatus):
        return value
    try:
        return ProposalStatus(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidInputError(f"Unknown proposal status: {value!r}", field="status") from exc


class GovernanceEngine:
    """
    Single entry point for governance actions.

    Args:
        config: Runtime settings (escrow account, metrics toggle)
        assets: External asset service; an in-memory ledger when omitted
        clock: Host-owned logical clock
        event_log: Audit log receiving committed events
    """

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        assets: Optional[AssetTransfer] = None,
        clock: Optional[LogicalClock] = None,
        event_log: Optional[AuditEventLog] = None,
    ):
        self.config = config or GovernanceConfig()
        self.assets = assets if assets is not None else InMemoryAssetLedger()
        if not isinstance(self.assets, AssetTransfer):
            raise TypeError("assets must implement transfer() and balance_of()")
        self.clock = clock or LogicalClock()
        self.event_log = event_log or AuditEventLog()
        self.store = RecordStore(self.event_log)

        self.registry = DaoRegistry(self.store)
        self.lifecycle = ProposalLifecycle(self.store)
        self.power = PowerLedger(self.store, self.assets)
        self.escrow = FundingEscrow(self.store, self.assets, self.config.escrow_account)

        self._lock = threading.RLock()
        if self.config.metrics_enabled:
            self.event_log.subscribe(governance_metrics.record_event)

        logger.info(
            "Governance engine ready (network=%s, escrow=%s)",
            self.config.network.value,
            self.config.escrow_account,
            extra={"event": "engine.started", "epoch": self.clock.now},
        )

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @contextmanager
    def _action(self, caller: str) -> Iterator[ActionContext]:
        with self._lock:
            ctx = self.clock.context(caller)
            with self.store.transaction(ctx):
                yield ctx

    # ==================== Clock ====================

    def set_clock(self, epoch: int) -> int:
        with self._lock:
            return self.clock.set(epoch)

    def advance_clock(self, delta: int = 1) -> int:
        with self._lock:
            return self.clock.advance(delta)

    # ==================== DAOs ====================

    def create_dao(
        self,
        caller: str,
        dao_id: str,
        name: str,
        description: str = "",
        url: str = "",
        token_asset: Optional[str] = None,
    ) -> DaoRecord:
        with self._action(caller) as ctx:
            return self.registry.create_dao(ctx, dao_id, name, description, url, token_asset)

    def deactivate_dao(self, caller: str, dao_id: str) -> DaoRecord:
        with self._action(caller) as ctx:
            return self.registry.deactivate_dao(ctx, dao_id)

    def get_dao(self, dao_id: str) -> DaoRecord:
        return self.registry.get_dao(dao_id)

    def list_daos(self, active_only: bool = False) -> list[DaoRecord]:
        return self.registry.list_daos(active_only)

    # ==================== Proposals ====================

    def register_proposal(
        self,
        caller: str,
        organization: str,
        title: str,
        description: str,
        voting_start: int,
        voting_end: int,
        min_approval_percentage: int,
        funding_goal: int = 0,
        payload: Optional[dict[str, Any]] = None,
        proposal_id: Optional[str] = None,
    ) -> Proposal:
        """Register a DRAFT proposal for an active DAO."""
        with self._action(caller) as ctx:
            self.registry.require_active(organization)
            return self.lifecycle.register_proposal(
                ctx,
                organization,
                title,
                description,
                voting_start,
                voting_end,
                min_approval_percentage,
                funding_goal=funding_goal,
                payload=payload,
                proposal_id=proposal_id,
            )

    def activate(self, caller: str, proposal_id: str) -> Proposal:
        with self._action(caller) as ctx:
            return self.lifecycle.activate(ctx, proposal_id)

    def vote(self, caller: str, proposal_id: str, kind: Any) -> VoteRecord:
        """
        Cast the caller's vote with their current effective power.

        Expired delegations touching the caller are released first, so an
        expired delegator votes with its own power again and a delegate no
        longer counts power whose grant has lapsed. Delegators whose power is
        included are recorded on the vote so they cannot vote again on this
        proposal after a revoke or expiry, and a later delegate of theirs does
        not count that power a second time.
        """
        vote_kind = parse_vote_kind(kind)
        with self._action(caller) as ctx:
            proposal = self.lifecycle.get_proposal(proposal_id)
            self.power.expire_stale(ctx, proposal.organization, caller)
            power = self.power.compute_effective_power(proposal.organization, caller)
            delegators = []
            for incoming in self.power.delegations_to(proposal.organization, caller):
                if self._power_already_cast(proposal_id, incoming.delegator):
                    power -= incoming.amount
                else:
                    delegators.append(incoming.delegator)
            return self.lifecycle.cast_vote(ctx, proposal_id, vote_kind, power, delegators)

    def finalize(self, caller: str, proposal_id: str) -> FinalizationResult:
        with self._action(caller) as ctx:
            return self.lifecycle.finalize(ctx, proposal_id)

    def execute(self, caller: str, proposal_id: str) -> Proposal:
        """
        Mark a PASSED proposal EXECUTED.

        Raises:
            UnauthorizedError: caller is neither proposer nor organization
            GoalNotReachedError: fundable escrow below its minimum goal
        """
        with self._action(caller) as ctx:
            proposal = self.lifecycle.get_proposal(proposal_id)
            self._require_proposal_owner(ctx, proposal, "execute")
            if self.escrow.is_initialized(proposal_id):
                funding = self.escrow.get_funding(proposal_id)
                if funding.fundable and not funding.min_goal_reached:
                    raise GoalNotReachedError(
                        f"Proposal {proposal_id} raised {funding.total_raised} "
                        f"of the {funding.min_goal} minimum",
                        field="min_goal",
                    )
            return self.lifecycle.execute(ctx, proposal_id)

    def cancel(self, caller: str, proposal_id: str) -> Proposal:
        with self._action(caller) as ctx:
            return self.lifecycle.cancel(ctx, proposal_id)

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self.lifecycle.get_proposal(proposal_id)

    def list_proposals(
        self, organization: Optional[str] = None, status: Any = None
    ) -> list[Proposal]:
        return self.lifecycle.list_proposals(organization, parse_status(status))

    def get_tally(self, proposal_id: str) -> VoteTally:
        return self.lifecycle.get_tally(proposal_id)

    def get_vote(self, proposal_id: str, voter: str) -> Optional[VoteRecord]:
        return self.lifecycle.get_vote(proposal_id, voter)

    def list_votes(self, proposal_id: str) -> list[VoteRecord]:
        self.lifecycle.get_proposal(proposal_id)
        return self.lifecycle.list_votes(proposal_id)

    # ==================== Power & delegation ====================

    def update_token_power(
        self, caller: str, organization: str, account: str, amount: int
    ) -> PowerRecord:
        """Organization-side override of an account's token-derived power."""
        with self._action(caller) as ctx:
            self._require_dao_manager(ctx, organization)
            return self.power.update_token_power(ctx, organization, account, amount)

    def update_currency_power(
        self, caller: str, organization: str, account: str, amount: int
    ) -> PowerRecord:
        with self._action(caller) as ctx:
            self._require_dao_manager(ctx, organization)
            return self.power.update_currency_power(ctx, organization, account, amount)

    def refresh_power(self, caller: str, organization: str, account: str) -> PowerRecord:
        """
        Re-read ``account``'s balances from the asset service.

        Currency power always refreshes; token power refreshes when the DAO
        declares a governance token. Anyone may trigger a refresh since the
        values come from the asset service, not from the caller.
        """
        with self._action(caller) as ctx:
            dao = self.registry.get_dao(organization)
            record = self.power.refresh_currency_power(ctx, organization, account)
            if dao.token_asset:
                record = self.power.refresh_token_power(ctx, organization, account, dao.token_asset)
            return record

    def delegate(
        self, caller: str, organization: str, delegate: str, expiry: Optional[int] = None
    ) -> Delegation:
        """Delegate the caller's own power; refused while the caller has a vote on an open proposal."""
        with self._action(caller) as ctx:
            self.registry.get_dao(organization)
            if self.lifecycle.has_open_vote(organization, ctx.caller, ctx.now):
                raise InvalidStateError(
                    f"{ctx.caller} has voted on an open proposal in {organization}; "
                    "delegate after voting closes",
                    field="delegator",
                )
            return self.power.delegate(ctx, organization, delegate, expiry)

    def revoke(self, caller: str, organization: str) -> int:
        with self._action(caller) as ctx:
            return self.power.revoke(ctx, organization)

    def check_expiry(self, caller: str, organization: str, delegator: str, delegate: str) -> int:
        with self._action(caller) as ctx:
            return self.power.check_expiry(ctx, organization, delegator, delegate)

    def get_power_record(self, organization: str, account: str) -> PowerRecord:
        return self.power.get_power_record(organization, account)

    def effective_power(self, organization: str, account: str) -> int:
        return self.power.compute_effective_power(organization, account)

    def get_delegation(self, organization: str, delegator: str) -> Optional[Delegation]:
        return self.power.get_delegation(organization, delegator)

    def list_delegations(self, organization: str) -> list[Delegation]:
        return self.power.list_delegations(organization)

    # ==================== Funding ====================

    def initialize_funding(
        self,
        caller: str,
        proposal_id: str,
        window: FundingWindow,
        min_goal: int,
        target_goal: int,
        beneficiary: Optional[str] = None,
        fundable: bool = True,
    ) -> FundingRecord:
        """Open an escrow for a proposal; the beneficiary defaults to its organization."""
        with self._action(caller) as ctx:
            proposal = self.lifecycle.get_proposal(proposal_id)
            self._require_proposal_owner(ctx, proposal, "initialize funding for")
            return self.escrow.initialize(
                ctx,
                proposal_id,
                fundable,
                window,
                min_goal,
                target_goal,
                beneficiary if beneficiary is not None else proposal.organization,
            )

    def contribute(
        self, caller: str, proposal_id: str, amount: int, asset: Optional[str] = None
    ) -> Contribution:
        with self._action(caller) as ctx:
            return self.escrow.contribute(ctx, proposal_id, amount, asset)

    def withdraw(self, caller: str, proposal_id: str, amount: int) -> WithdrawalRecord:
        with self._action(caller) as ctx:
            return self.escrow.withdraw(ctx, proposal_id, amount)

    def withdraw_token(self, caller: str, proposal_id: str, amount: int) -> WithdrawalRecord:
        with self._action(caller) as ctx:
            return self.escrow.withdraw_token(ctx, proposal_id, amount)

    def refund(self, caller: str, proposal_id: str) -> int:
        with self._action(caller) as ctx:
            return self.escrow.refund(ctx, proposal_id)

    def refund_token(self, caller: str, proposal_id: str) -> int:
        with self._action(caller) as ctx:
            return self.escrow.refund_token(ctx, proposal_id)

    def get_funding(self, proposal_id: str) -> FundingRecord:
        return self.escrow.get_funding(proposal_id)

    def get_contribution(self, proposal_id: str, funder: str) -> Optional[Contribution]:
        return self.escrow.get_contribution(proposal_id, funder)

    def list_contributions(self, proposal_id: str) -> list[Contribution]:
        self.escrow.get_funding(proposal_id)
        return self.escrow.list_contributions(proposal_id)

    def get_withdrawals(self, proposal_id: str) -> WithdrawalRecord:
        self.escrow.get_funding(proposal_id)
        return self.escrow.get_withdrawals(proposal_id)

    def funding_summary(self, proposal_id: str) -> dict[str, Any]:
        """Funding record plus derived balances, as served by the API."""
        with self._lock:
            record = self.escrow.get_funding(proposal_id)
            summary = record.to_dict()
            summary.update(
                {
                    "available_balance": self.escrow.available_balance(proposal_id),
                    "available_token_balance": self.escrow.available_token_balance(proposal_id),
                    "min_goal_reached": self.escrow.is_min_goal_reached(proposal_id),
                    "target_reached": self.escrow.is_target_reached(proposal_id),
                    "progress": self.escrow.funding_progress(proposal_id),
                    "withdrawals": self.escrow.get_withdrawals(proposal_id).to_dict(),
                    "native_asset": self.config.native_asset_symbol,
                }
            )
            return summary

    # ==================== Events & persistence ====================

    def events(
        self, kind: Any = None, since: int = 0, limit: Optional[int] = None
    ) -> list[AuditEvent]:
        if kind is not None and not isinstance(kind, AuditEventKind):
            try:
                kind = AuditEventKind(str(kind).strip().lower())
            except ValueError as exc:
                raise InvalidInputError(f"Unknown event kind: {kind!r}", field="kind") from exc
        return self.event_log.events(kind=kind, since=since, limit=limit)

    def save_state(self, path: Optional[str | Path] = None) -> Path:
        """Write the record snapshot and, beside it, the audit log as JSON lines."""
        target = self._state_path(path)
        with self._lock:
            self.store.save(target)
            self.event_log.export_jsonl(self.events_path(target))
        return target

    def load_state(self, path: Optional[str | Path] = None) -> Path:
        source = self._state_path(path)
        with self._lock:
            self.store.load(source)
            events_file = self.events_path(source)
            if events_file.exists():
                count = self.event_log.load_jsonl(events_file)
                logger.info(
                    "Restored %d audit events from %s",
                    count,
                    events_file,
                    extra={"event": "engine.events_restored"},
                )
        return source

    @staticmethod
    def events_path(state_path: str | Path) -> Path:
        state_path = Path(state_path)
        return state_path.with_name(state_path.name + ".events.jsonl")

    # ==================== Helpers ====================

    def _state_path(self, path: Optional[str | Path]) -> Path:
        if path is not None:
            return Path(path)
        if not self.config.state_file:
            raise ConfigurationError("No state file given and CROWDGOV_STATE_FILE is not set")
        return Path(self.config.state_file)

    def _power_already_cast(self, proposal_id: str, account: str) -> bool:
        return (
            self.lifecycle.get_vote(proposal_id, account) is not None
            or self.lifecycle.find_carrier(proposal_id, account) is not None
        )

    def _require_dao_manager(self, ctx: ActionContext, organization: str) -> None:
        dao = self.registry.get_dao(organization)
        if not dao.can_manage(ctx.caller):
            raise UnauthorizedError(
                f"Only the owner or the DAO account can manage power in {organization}",
                field="caller",
            )

    @staticmethod
    def _require_proposal_owner(ctx: ActionContext, proposal: Proposal, action: str) -> None:
        if not proposal.is_owner(ctx.caller):
            raise UnauthorizedError(
                f"Only the proposer or organization can {action} {proposal.proposal_id}",
                field="caller",
            )
