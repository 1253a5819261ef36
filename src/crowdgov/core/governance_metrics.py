"""
Governance instrumentation for crowdgov.

Prometheus metrics for votes, delegation and escrow flows, with helper
functions that are safe to call from the commit path of an action.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

from crowdgov.core.asset_transfer import NATIVE_ASSET
from crowdgov.core.audit_events import AuditEvent, AuditEventKind

votes_cast_counter = Counter(
    "crowdgov_votes_cast_total", "Total votes cast on proposals", ["kind"]
)

vote_power_counter = Counter(
    "crowdgov_vote_power_total", "Total voting power committed to proposals", ["kind"]
)

proposal_outcome_counter = Counter(
    "crowdgov_proposal_outcomes_total", "Proposals reaching a lifecycle outcome", ["status"]
)

active_delegations_gauge = Gauge(
    "crowdgov_active_delegations", "Active delegations per organization", ["organization"]
)

escrow_flow_counter = Counter(
    "crowdgov_escrow_flow_total",
    "Amounts moved through the funding escrow",
    ["direction", "asset"],
)


def record_vote(kind: str, power: int) -> None:
    """Count a committed vote and its power."""
    if power <= 0:
        return
    votes_cast_counter.labels(kind=kind).inc()
    vote_power_counter.labels(kind=kind).inc(power)


def record_outcome(status: str) -> None:
    proposal_outcome_counter.labels(status=status).inc()


def set_active_delegations(organization: str, count: int) -> None:
    active_delegations_gauge.labels(organization=organization).set(max(count, 0))


def record_escrow_flow(direction: str, asset: str, amount: int) -> None:
    """Increment the escrow counters; ``direction`` is in/withdrawn/refunded."""
    if amount <= 0:
        return
    escrow_flow_counter.labels(direction=direction, asset=asset).inc(amount)


def record_event(event: AuditEvent) -> None:
    """Audit log subscriber: translate committed events into metrics."""
    changes = event.changes
    if event.kind == AuditEventKind.VOTE_CAST:
        record_vote(changes.get("kind", "unknown"), int(changes.get("power", 0)))
    elif event.kind in (
        AuditEventKind.PROPOSAL_FINALIZED,
        AuditEventKind.PROPOSAL_EXECUTED,
        AuditEventKind.PROPOSAL_CANCELED,
    ):
        record_outcome(changes.get("status", "unknown"))
    elif event.kind in (
        AuditEventKind.DELEGATED,
        AuditEventKind.DELEGATION_REVOKED,
        AuditEventKind.DELEGATION_EXPIRED,
    ):
        if "active_delegations" in changes:
            set_active_delegations(event.subject.get("organization", ""), changes["active_delegations"])
    elif event.kind == AuditEventKind.CONTRIBUTED:
        record_escrow_flow("in", changes.get("asset", NATIVE_ASSET), int(changes.get("amount", 0)))
    elif event.kind in (AuditEventKind.WITHDRAWN, AuditEventKind.TOKEN_WITHDRAWN):
        record_escrow_flow("withdrawn", changes.get("asset", NATIVE_ASSET), int(changes.get("amount", 0)))
    elif event.kind in (AuditEventKind.REFUNDED, AuditEventKind.TOKEN_REFUNDED):
        record_escrow_flow("refunded", changes.get("asset", NATIVE_ASSET), int(changes.get("amount", 0)))
