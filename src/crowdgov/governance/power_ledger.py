"""
Voting power and delegation ledger.

Each (organization, account) pair owns a PowerRecord made of three parts:
power derived from the organization's token, power derived from native
currency holdings, and power received from delegators. Effective power is the
sum of the three, or zero while the account has delegated its power away.

Delegation amounts are a snapshot of the delegator's own power at grant time.
Later balance updates never touch a standing delegation: the delegate's power
cannot change because of events outside its control, at the cost of diverging
from the delegator's current balance until the delegation is revoked and
granted again.

Delegation is one hop: an account holding received power cannot delegate, and
an account that has delegated away cannot receive, so no delegated amount is
ever parked on an account with zero effective power.

Expiry is lazy. ``check_expiry`` (or ``expire_stale`` for every delegation
touching an account) must run before power is consumed; the engine does this
before every vote.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Any, Optional

from crowdgov.core.asset_transfer import AssetTransfer
from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from crowdgov.core.logical_clock import ActionContext
from crowdgov.core.record_store import RecordStore, StoreTransaction
from crowdgov.core.validation import require_non_negative_amount, require_text

logger = logging.getLogger(__name__)


@dataclass
class PowerRecord:
    organization: str
    account: str
    token_power: int = 0
    currency_power: int = 0
    received_delegated_power: int = 0
    delegate_target: Optional[str] = None
    last_updated: int = 0

    @property
    def own_power(self) -> int:
        return self.token_power + self.currency_power

    @property
    def effective_power(self) -> int:
        if self.delegate_target is not None:
            return 0
        return self.own_power + self.received_delegated_power

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "PowerRecord":
        return PowerRecord(**data)


@dataclass
class Delegation:
    organization: str
    delegator: str
    delegate: str
    amount: int
    created_at: int
    expiry: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        return self.expiry is not None and now > self.expiry

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Delegation":
        return Delegation(**data)


class PowerLedger:
    """Per-organization voting power and delegation relationships."""

    def __init__(self, store: RecordStore, assets: Optional[AssetTransfer] = None):
        self._store = store
        self._assets = assets
        self._power = store.register("power", PowerRecord)
        self._delegations = store.register("delegations", Delegation)

    # ==================== Queries ====================

    def get_power_record(self, organization: str, account: str) -> PowerRecord:
        """Stored record, or an all-zero record for an unknown account."""
        record = self._power.get((organization, account))
        if record is None:
            return PowerRecord(organization=organization, account=account)
        return record

    def compute_effective_power(self, organization: str, account: str) -> int:
        """Vote weight available to ``account`` right now. Never cache this."""
        return self.get_power_record(organization, account).effective_power

    def get_delegation(self, organization: str, delegator: str) -> Optional[Delegation]:
        """The delegator's active delegation in ``organization``, if any."""
        record = self._power.get((organization, delegator))
        if record is None or record.delegate_target is None:
            return None
        return self._delegations.get((organization, delegator, record.delegate_target))

    def list_delegations(self, organization: str) -> list[Delegation]:
        return sorted(
            (d for d in self._delegations.values() if d.organization == organization),
            key=lambda d: (d.delegator, d.delegate),
        )

    def delegations_to(self, organization: str, delegate: str) -> list[Delegation]:
        return [d for d in self.list_delegations(organization) if d.delegate == delegate]

    # ==================== Balance updates ====================

    def update_token_power(
        self, ctx: ActionContext, organization: str, account: str, amount: int
    ) -> PowerRecord:
        """Overwrite the token-derived component. Standing delegations keep their amount."""
        return self._update_component(ctx, organization, account, "token_power", amount)

    def update_currency_power(
        self, ctx: ActionContext, organization: str, account: str, amount: int
    ) -> PowerRecord:
        """Overwrite the native-currency component. Standing delegations keep their amount."""
        return self._update_component(ctx, organization, account, "currency_power", amount)

    def refresh_currency_power(
        self, ctx: ActionContext, organization: str, account: str
    ) -> PowerRecord:
        """Read the native balance from the asset service and apply it."""
        balance = self._require_assets().balance_of(account)
        return self.update_currency_power(ctx, organization, account, balance)

    def refresh_token_power(
        self, ctx: ActionContext, organization: str, account: str, asset: str
    ) -> PowerRecord:
        """Read the organization token balance from the asset service and apply it."""
        require_text(asset, "asset")
        balance = self._require_assets().balance_of(account, asset)
        return self.update_token_power(ctx, organization, account, balance)

    def _update_component(
        self, ctx: ActionContext, organization: str, account: str, component: str, amount: int
    ) -> PowerRecord:
        require_text(organization, "organization")
        require_text(account, "account")
        require_non_negative_amount(amount)

        with self._store.transaction(ctx) as tx:
            record = self.get_power_record(organization, account)
            previous = getattr(record, component)
            setattr(record, component, amount)
            record.last_updated = ctx.now
            self._power.put((organization, account), record)
            tx.emit(
                AuditEventKind.POWER_UPDATED,
                {"organization": organization, "account": account},
                {"component": component, "previous": previous, "amount": amount},
            )

        logger.debug(
            "Power %s for %s in %s set to %d",
            component,
            account,
            organization,
            amount,
            extra={"event": "power.updated", "component": component, "epoch": ctx.now},
        )
        return record

    def _require_assets(self) -> AssetTransfer:
        if self._assets is None:
            raise RuntimeError("PowerLedger has no asset service attached")
        return self._assets

    # ==================== Delegation ====================

    def delegate(
        self,
        ctx: ActionContext,
        organization: str,
        delegate: str,
        expiry: Optional[int] = None,
    ) -> Delegation:
        """
        Delegate the caller's own power in ``organization`` to ``delegate``.

        The amount is a snapshot of token + currency power at call time.

        Raises:
            AlreadyExistsError: caller already has an active delegation
            InvalidStateError: caller holds received power, or the delegate has
                delegated its own power away
            InvalidInputError: self-delegation, bad expiry, or no power to delegate
        """
        delegator = ctx.caller
        require_text(organization, "organization")
        require_text(delegate, "delegate")
        if delegate == delegator:
            raise InvalidInputError("Cannot delegate voting power to yourself", field="delegate")
        if expiry is not None:
            require_non_negative_amount(expiry, "expiry")
            if expiry <= ctx.now:
                raise InvalidInputError("Delegation expiry must be in the future", field="expiry")

        with self._store.transaction(ctx) as tx:
            self._expire_own(ctx, tx, organization, delegator)
            self._expire_own(ctx, tx, organization, delegate)
            for incoming in self.delegations_to(organization, delegator):
                if incoming.is_expired(ctx.now):
                    self._release(tx, incoming, AuditEventKind.DELEGATION_EXPIRED)

            record = self.get_power_record(organization, delegator)
            if record.delegate_target is not None:
                raise AlreadyExistsError(
                    f"{delegator} already delegates to {record.delegate_target}; revoke first",
                    field="delegator",
                )
            if record.received_delegated_power > 0:
                raise InvalidStateError(
                    f"{delegator} holds power delegated by others and cannot delegate onward",
                    field="delegator",
                )
            target = self.get_power_record(organization, delegate)
            if target.delegate_target is not None:
                raise InvalidStateError(
                    f"{delegate} has delegated its own power to {target.delegate_target}",
                    field="delegate",
                )
            if record.effective_power == 0:
                raise InvalidInputError("Delegator has no voting power", field="power")
            amount = record.own_power
            if amount == 0:
                raise InvalidInputError("Delegator has no own power to delegate", field="amount")

            delegation = Delegation(
                organization=organization,
                delegator=delegator,
                delegate=delegate,
                amount=amount,
                created_at=ctx.now,
                expiry=expiry,
            )

            target.received_delegated_power += amount
            record.delegate_target = delegate

            self._power.put((organization, delegate), target)
            self._power.put((organization, delegator), record)
            self._delegations.put((organization, delegator, delegate), delegation)

            tx.emit(
                AuditEventKind.DELEGATED,
                {"organization": organization, "delegator": delegator, "delegate": delegate},
                {
                    "amount": amount,
                    "expiry": expiry,
                    "active_delegations": len(self.list_delegations(organization)),
                },
            )

        logger.info(
            "%s delegated %d power to %s in %s",
            delegator,
            amount,
            delegate,
            organization,
            extra={"event": "power.delegated", "expiry": expiry, "epoch": ctx.now},
        )
        return delegation

    def revoke(self, ctx: ActionContext, organization: str) -> int:
        """Revoke the caller's active delegation. Returns the reclaimed amount."""
        delegator = ctx.caller
        require_text(organization, "organization")

        with self._store.transaction(ctx) as tx:
            delegation = self.get_delegation(organization, delegator)
            if delegation is None:
                raise NotFoundError(
                    f"No active delegation for {delegator} in {organization}", field="delegator"
                )
            self._release(tx, delegation, AuditEventKind.DELEGATION_REVOKED)

        logger.info(
            "%s revoked delegation of %d to %s",
            delegator,
            delegation.amount,
            delegation.delegate,
            extra={"event": "power.revoked", "organization": organization, "epoch": ctx.now},
        )
        return delegation.amount

    def check_expiry(
        self, ctx: ActionContext, organization: str, delegator: str, delegate: str
    ) -> int:
        """
        Lazily expire one delegation.

        Returns:
            The reclaimed amount if the delegation had expired, else 0
        """
        delegation = self._delegations.get((organization, delegator, delegate))
        if delegation is None:
            raise NotFoundError(
                f"No delegation from {delegator} to {delegate} in {organization}",
                field="delegation",
            )
        if not delegation.is_expired(ctx.now):
            return 0

        with self._store.transaction(ctx) as tx:
            self._release(tx, delegation, AuditEventKind.DELEGATION_EXPIRED)

        logger.info(
            "Delegation %s -> %s expired at %d, reclaimed %d",
            delegator,
            delegate,
            delegation.expiry,
            delegation.amount,
            extra={"event": "power.expired", "organization": organization, "epoch": ctx.now},
        )
        return delegation.amount

    def expire_stale(self, ctx: ActionContext, organization: str, account: str) -> int:
        """Expire the account's own delegation and every expired one targeting it."""
        reclaimed = 0
        with self._store.transaction(ctx):
            own = self.get_delegation(organization, account)
            if own is not None:
                reclaimed += self.check_expiry(ctx, organization, account, own.delegate)
            for incoming in self.delegations_to(organization, account):
                reclaimed += self.check_expiry(ctx, organization, incoming.delegator, account)
        return reclaimed

    def _expire_own(
        self, ctx: ActionContext, tx: StoreTransaction, organization: str, delegator: str
    ) -> None:
        own = self.get_delegation(organization, delegator)
        if own is not None and own.is_expired(ctx.now):
            self._release(tx, own, AuditEventKind.DELEGATION_EXPIRED)

    def _release(
        self, tx: StoreTransaction, delegation: Delegation, kind: AuditEventKind
    ) -> None:
        organization = delegation.organization
        delegator_record = self.get_power_record(organization, delegation.delegator)
        delegate_record = self.get_power_record(organization, delegation.delegate)

        delegator_record.delegate_target = None
        delegate_record.received_delegated_power -= delegation.amount

        self._power.put((organization, delegation.delegator), delegator_record)
        self._power.put((organization, delegation.delegate), delegate_record)
        self._delegations.delete((organization, delegation.delegator, delegation.delegate))

        tx.emit(
            kind,
            {
                "organization": organization,
                "delegator": delegation.delegator,
                "delegate": delegation.delegate,
            },
            {
                "amount": delegation.amount,
                "active_delegations": len(self.list_delegations(organization)),
            },
        )
