"""
Funding escrow for proposal crowdfunding.

Contributions move from the funder to the escrow account on the external
asset service *before* anything is recorded; a rejected transfer aborts the
action with no state change. Once the funding window closes:

- minimum goal reached: the beneficiary withdraws, per asset, up to what was
  raised and not yet withdrawn
- minimum goal missed: every funder can take back exactly what they put in,
  once per asset (``refund`` for native currency, ``refund_token`` for the
  alternate asset)

A proposal accepts native currency plus at most one alternate asset; the
first alternate-asset contribution fixes which one. Both count toward
``total_raised``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Optional

from crowdgov.core.asset_transfer import NATIVE_ASSET, AssetTransfer
from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    GoalNotReachedError,
    GoalReachedError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    TransferFailedError,
    UnauthorizedError,
)
from crowdgov.core.logical_clock import ActionContext
from crowdgov.core.record_store import RecordStore
from crowdgov.core.validation import (
    require_epoch,
    require_positive_amount,
    require_text,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingWindow:
    start: int
    end: int

    def is_open(self, now: int) -> bool:
        return self.start <= now < self.end

    def is_closed(self, now: int) -> bool:
        return now >= self.end


@dataclass
class TokenAmount:
    asset: Optional[str] = None
    amount: int = 0


@dataclass
class FundingRecord:
    proposal_id: str
    fundable: bool
    window: FundingWindow
    min_goal: int
    target_goal: int
    beneficiary: str
    total_raised: int = 0
    stx_raised: int = 0
    token_raised: TokenAmount = field(default_factory=TokenAmount)
    funder_count: int = 0
    initialized_at: int = 0

    @property
    def min_goal_reached(self) -> bool:
        return self.total_raised >= self.min_goal

    @property
    def target_reached(self) -> bool:
        return self.total_raised >= self.target_goal

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "FundingRecord":
        values = dict(data)
        values["window"] = FundingWindow(**values["window"])
        values["token_raised"] = TokenAmount(**values["token_raised"])
        return FundingRecord(**values)


@dataclass
class Contribution:
    proposal_id: str
    funder: str
    stx_amount: int = 0
    token_amount: int = 0
    first_contribution_at: int = 0
    last_contribution_at: int = 0
    contribution_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.stx_amount == 0 and self.token_amount == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Contribution":
        return Contribution(**data)


@dataclass
class WithdrawalRecord:
    proposal_id: str
    withdrawn_amount: int = 0
    token_withdrawn_amount: int = 0
    last_withdrawal_at: Optional[int] = None
    withdrawal_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "WithdrawalRecord":
        return WithdrawalRecord(**data)


class FundingEscrow:
    """Per-proposal contribution accounting, goal evaluation, withdrawal and refund."""

    def __init__(self, store: RecordStore, assets: AssetTransfer, escrow_account: str):
        require_text(escrow_account, "escrow_account")
        self._store = store
        self._assets = assets
        self.escrow_account = escrow_account
        self._funding = store.register("funding", FundingRecord)
        self._contributions = store.register("contributions", Contribution)
        self._withdrawals = store.register("withdrawals", WithdrawalRecord)

    # ==================== Queries ====================

    def is_initialized(self, proposal_id: str) -> bool:
        return proposal_id in self._funding

    def get_funding(self, proposal_id: str) -> FundingRecord:
        return self._funding.require(
            proposal_id, f"Funding for {proposal_id}", field="proposal_id"
        )

    def get_contribution(self, proposal_id: str, funder: str) -> Optional[Contribution]:
        return self._contributions.get((proposal_id, funder))

    def list_contributions(self, proposal_id: str) -> list[Contribution]:
        return sorted(
            (c for c in self._contributions.values() if c.proposal_id == proposal_id),
            key=lambda c: (c.first_contribution_at, c.funder),
        )

    def get_withdrawals(self, proposal_id: str) -> WithdrawalRecord:
        return self._withdrawals.get(proposal_id) or WithdrawalRecord(proposal_id=proposal_id)

    def available_balance(self, proposal_id: str) -> int:
        """Native currency raised and not yet withdrawn."""
        record = self.get_funding(proposal_id)
        return record.stx_raised - self.get_withdrawals(proposal_id).withdrawn_amount

    def available_token_balance(self, proposal_id: str) -> int:
        record = self.get_funding(proposal_id)
        return record.token_raised.amount - self.get_withdrawals(proposal_id).token_withdrawn_amount

    def is_min_goal_reached(self, proposal_id: str) -> bool:
        return self.get_funding(proposal_id).min_goal_reached

    def is_target_reached(self, proposal_id: str) -> bool:
        return self.get_funding(proposal_id).target_reached

    def funding_progress(self, proposal_id: str) -> int:
        """Floor percentage of the target goal raised so far."""
        record = self.get_funding(proposal_id)
        return (record.total_raised * 100) // record.target_goal

    # ==================== Actions ====================

    def initialize(
        self,
        ctx: ActionContext,
        proposal_id: str,
        fundable: bool,
        window: FundingWindow,
        min_goal: int,
        target_goal: int,
        beneficiary: str,
    ) -> FundingRecord:
        """
        One-time escrow setup for a proposal.

        Raises:
            InvalidInputError: goals out of order, bad window or beneficiary
            AlreadyExistsError: escrow already initialized for the proposal
        """
        require_text(proposal_id, "proposal_id")
        if not isinstance(fundable, bool):
            raise InvalidInputError("fundable must be a boolean", field="fundable")
        if not isinstance(window, FundingWindow):
            raise InvalidInputError("window must be a FundingWindow", field="window")
        require_epoch(window.start, "window.start")
        require_epoch(window.end, "window.end")
        if window.end < window.start:
            raise InvalidInputError("Funding window end precedes start", field="window")
        require_positive_amount(min_goal, "min_goal")
        require_positive_amount(target_goal, "target_goal")
        if target_goal < min_goal:
            raise InvalidInputError("Target goal must be at least the minimum goal", field="target_goal")
        require_text(beneficiary, "beneficiary")

        with self._store.transaction(ctx) as tx:
            if proposal_id in self._funding:
                raise AlreadyExistsError(
                    f"Funding for {proposal_id} already initialized", field="proposal_id"
                )
            record = FundingRecord(
                proposal_id=proposal_id,
                fundable=fundable,
                window=window,
                min_goal=min_goal,
                target_goal=target_goal,
                beneficiary=beneficiary,
                initialized_at=ctx.now,
            )
            self._funding.put(proposal_id, record)
            self._withdrawals.put(proposal_id, WithdrawalRecord(proposal_id=proposal_id))
            tx.emit(
                AuditEventKind.FUNDING_INITIALIZED,
                {"proposal_id": proposal_id},
                {
                    "fundable": fundable,
                    "window_start": window.start,
                    "window_end": window.end,
                    "min_goal": min_goal,
                    "target_goal": target_goal,
                    "beneficiary": beneficiary,
                },
            )

        logger.info(
            "Funding for %s initialized: min=%d target=%d window=[%d, %d)",
            proposal_id,
            min_goal,
            target_goal,
            window.start,
            window.end,
            extra={"event": "escrow.initialized", "fundable": fundable, "epoch": ctx.now},
        )
        return record

    def contribute(
        self, ctx: ActionContext, proposal_id: str, amount: int, asset: Optional[str] = None
    ) -> Contribution:
        """
        Escrow ``amount`` from the caller, in native currency or ``asset``.

        Raises:
            NotFoundError: escrow not initialized
            InvalidStateError: not fundable or window not open
            InvalidInputError: non-positive amount or a second alternate asset
            GoalReachedError: target goal already reached
            TransferFailedError: asset service rejected the transfer
        """
        funder = ctx.caller
        require_positive_amount(amount)
        if asset is not None:
            require_text(asset, "asset")

        with self._store.transaction(ctx) as tx:
            record = self.get_funding(proposal_id)
            if not record.fundable:
                raise InvalidStateError(f"Proposal {proposal_id} is not fundable", field="fundable")
            if not record.window.is_open(ctx.now):
                raise InvalidStateError(
                    f"Funding window [{record.window.start}, {record.window.end}) "
                    f"is not open at {ctx.now}",
                    field="now",
                )
            if record.target_reached:
                raise GoalReachedError(
                    f"Target goal of {record.target_goal} already reached", field="target_goal"
                )
            if (
                asset is not None
                and record.token_raised.asset is not None
                and record.token_raised.asset != asset
            ):
                raise InvalidInputError(
                    f"Proposal {proposal_id} only accepts {record.token_raised.asset}",
                    field="asset",
                )

            self._transfer(amount, funder, self.escrow_account, asset)

            contribution = self.get_contribution(proposal_id, funder)
            if contribution is None:
                contribution = Contribution(
                    proposal_id=proposal_id, funder=funder, first_contribution_at=ctx.now
                )
                record.funder_count += 1

            if asset is None:
                record.stx_raised += amount
                contribution.stx_amount += amount
            else:
                record.token_raised.asset = asset
                record.token_raised.amount += amount
                contribution.token_amount += amount
            record.total_raised += amount
            contribution.last_contribution_at = ctx.now
            contribution.contribution_count += 1

            self._funding.put(proposal_id, record)
            self._contributions.put((proposal_id, funder), contribution)
            tx.emit(
                AuditEventKind.CONTRIBUTED,
                {"proposal_id": proposal_id, "funder": funder},
                {
                    "asset": asset or NATIVE_ASSET,
                    "amount": amount,
                    "total_raised": record.total_raised,
                    "funder_count": record.funder_count,
                },
            )

        logger.info(
            "%s contributed %d %s to %s (total %d/%d)",
            funder,
            amount,
            asset or NATIVE_ASSET,
            proposal_id,
            record.total_raised,
            record.target_goal,
            extra={"event": "escrow.contributed", "epoch": ctx.now},
        )
        return contribution

    def withdraw(self, ctx: ActionContext, proposal_id: str, amount: int) -> WithdrawalRecord:
        """Beneficiary withdraws native currency after a successful raise."""
        return self._withdraw(ctx, proposal_id, amount, token=False)

    def withdraw_token(self, ctx: ActionContext, proposal_id: str, amount: int) -> WithdrawalRecord:
        """Beneficiary withdraws the alternate asset after a successful raise."""
        return self._withdraw(ctx, proposal_id, amount, token=True)

    def refund(self, ctx: ActionContext, proposal_id: str) -> int:
        """Return the caller's native contribution after a failed raise."""
        return self._refund(ctx, proposal_id, token=False)

    def refund_token(self, ctx: ActionContext, proposal_id: str) -> int:
        """Return the caller's alternate-asset contribution after a failed raise."""
        return self._refund(ctx, proposal_id, token=True)

    # ==================== Internals ====================

    def _withdraw(
        self, ctx: ActionContext, proposal_id: str, amount: int, token: bool
    ) -> WithdrawalRecord:
        require_positive_amount(amount)

        with self._store.transaction(ctx) as tx:
            record = self.get_funding(proposal_id)
            if ctx.caller != record.beneficiary:
                raise UnauthorizedError("Only the beneficiary can withdraw", field="caller")
            if not record.window.is_closed(ctx.now):
                raise InvalidStateError(
                    f"Funding window open until {record.window.end}", field="now"
                )
            if not record.min_goal_reached:
                raise GoalNotReachedError(
                    f"Minimum goal of {record.min_goal} not reached ({record.total_raised} raised)",
                    field="min_goal",
                )

            withdrawals = self.get_withdrawals(proposal_id)
            if token:
                asset = record.token_raised.asset
                available = record.token_raised.amount - withdrawals.token_withdrawn_amount
            else:
                asset = None
                available = record.stx_raised - withdrawals.withdrawn_amount
            if amount > available:
                raise InsufficientFundsError(
                    f"Requested {amount}, only {available} available", field="amount"
                )

            self._transfer(amount, self.escrow_account, record.beneficiary, asset)

            if token:
                withdrawals.token_withdrawn_amount += amount
            else:
                withdrawals.withdrawn_amount += amount
            withdrawals.last_withdrawal_at = ctx.now
            withdrawals.withdrawal_count += 1
            self._withdrawals.put(proposal_id, withdrawals)
            tx.emit(
                AuditEventKind.TOKEN_WITHDRAWN if token else AuditEventKind.WITHDRAWN,
                {"proposal_id": proposal_id, "beneficiary": record.beneficiary},
                {
                    "asset": asset or NATIVE_ASSET,
                    "amount": amount,
                    "remaining": available - amount,
                    "withdrawal_count": withdrawals.withdrawal_count,
                },
            )

        logger.info(
            "Beneficiary %s withdrew %d %s from %s",
            record.beneficiary,
            amount,
            asset or NATIVE_ASSET,
            proposal_id,
            extra={"event": "escrow.withdrawn", "remaining": available - amount, "epoch": ctx.now},
        )
        return withdrawals

    def _refund(self, ctx: ActionContext, proposal_id: str, token: bool) -> int:
        funder = ctx.caller

        with self._store.transaction(ctx) as tx:
            contribution = self.get_contribution(proposal_id, funder)
            if contribution is None:
                raise NotFoundError(
                    f"No contribution from {funder} to {proposal_id}", field="contribution"
                )
            record = self.get_funding(proposal_id)
            if not record.window.is_closed(ctx.now):
                raise InvalidStateError(
                    f"Funding window open until {record.window.end}", field="now"
                )
            if record.min_goal_reached:
                raise GoalReachedError(
                    f"Minimum goal of {record.min_goal} reached; refunds unavailable",
                    field="min_goal",
                )

            if token:
                asset = record.token_raised.asset
                amount = contribution.token_amount
            else:
                asset = None
                amount = contribution.stx_amount
            if amount == 0:
                raise InsufficientFundsError(
                    f"Nothing to refund in {'alternate asset' if token else 'native currency'}",
                    field="token_amount" if token else "stx_amount",
                )

            self._transfer(amount, self.escrow_account, funder, asset)

            if token:
                record.token_raised.amount -= amount
                contribution.token_amount = 0
            else:
                record.stx_raised -= amount
                contribution.stx_amount = 0
            record.total_raised -= amount

            removed = contribution.is_empty
            if removed:
                record.funder_count -= 1
                self._contributions.delete((proposal_id, funder))
            else:
                self._contributions.put((proposal_id, funder), contribution)
            self._funding.put(proposal_id, record)
            tx.emit(
                AuditEventKind.TOKEN_REFUNDED if token else AuditEventKind.REFUNDED,
                {"proposal_id": proposal_id, "funder": funder},
                {
                    "asset": asset or NATIVE_ASSET,
                    "amount": amount,
                    "total_raised": record.total_raised,
                    "contribution_removed": removed,
                },
            )

        logger.info(
            "Refunded %d %s to %s from %s",
            amount,
            asset or NATIVE_ASSET,
            funder,
            proposal_id,
            extra={"event": "escrow.refunded", "epoch": ctx.now},
        )
        return amount

    def _transfer(self, amount: int, sender: str, recipient: str, asset: Optional[str]) -> None:
        if not self._assets.transfer(amount, sender, recipient, asset):
            logger.warning(
                "Asset transfer of %d %s from %s to %s rejected",
                amount,
                asset or NATIVE_ASSET,
                sender,
                recipient,
                extra={"event": "escrow.transfer_failed"},
            )
            raise TransferFailedError("Asset transfer rejected", field="amount")
