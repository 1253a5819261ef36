"""
Proposal lifecycle state machine and vote tally.

    DRAFT -> ACTIVE -> {PASSED, REJECTED}
    PASSED -> EXECUTED
    {DRAFT, ACTIVE} -> CANCELED

Any other transition raises InvalidStateError. Votes are one per account per
proposal and can never be changed; each vote insert and its tally update are
written in the same store transaction.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Optional

from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    InvalidInputError,
    InvalidStateError,
    UnauthorizedError,
)
from crowdgov.core.logical_clock import ActionContext
from crowdgov.core.record_store import RecordStore
from crowdgov.core.validation import (
    require_epoch,
    require_non_negative_amount,
    require_percentage,
    require_positive_amount,
    require_text,
)

logger = logging.getLogger(__name__)


class ProposalStatus(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"
    EXECUTED = "executed"
    CANCELED = "canceled"


class VoteKind(Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


# Outcomes of governance that can no longer be canceled.
_NON_CANCELABLE = (
    ProposalStatus.PASSED,
    ProposalStatus.REJECTED,
    ProposalStatus.EXECUTED,
    ProposalStatus.CANCELED,
)


@dataclass
class Proposal:
    proposal_id: str
    organization: str
    proposer: str
    title: str
    description: str
    voting_start: int
    voting_end: int
    min_approval_percentage: int
    created_at: int
    funding_goal: int = 0
    payload: Optional[dict[str, Any]] = None
    status: ProposalStatus = ProposalStatus.DRAFT
    activated_at: Optional[int] = None
    finalized_at: Optional[int] = None
    executed_at: Optional[int] = None
    canceled_at: Optional[int] = None

    def is_owner(self, account: str) -> bool:
        """Proposer and owning organization control the pre-vote transitions."""
        return account in (self.proposer, self.organization)

    def voting_open(self, now: int) -> bool:
        return self.voting_start <= now < self.voting_end

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Proposal":
        values = dict(data)
        values["status"] = ProposalStatus(values["status"])
        return Proposal(**values)


@dataclass
class VoteRecord:
    proposal_id: str
    voter: str
    kind: VoteKind
    power: int
    cast_at: int
    delegators: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "VoteRecord":
        values = dict(data)
        values["kind"] = VoteKind(values["kind"])
        return VoteRecord(**values)


@dataclass
class VoteTally:
    proposal_id: str
    yes: int = 0
    no: int = 0
    abstain: int = 0
    total_voted: int = 0
    voter_count: int = 0

    def add(self, kind: VoteKind, power: int) -> None:
        if kind == VoteKind.YES:
            self.yes += power
        elif kind == VoteKind.NO:
            self.no += power
        else:
            self.abstain += power
        self.total_voted += power
        self.voter_count += 1

    @property
    def approval_percentage(self) -> int:
        """floor(yes * 100 / (yes + no)); abstains never enter the denominator."""
        decided = self.yes + self.no
        if decided == 0:
            return 0
        return (self.yes * 100) // decided

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["approval_percentage"] = self.approval_percentage
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "VoteTally":
        values = {k: v for k, v in data.items() if k != "approval_percentage"}
        return VoteTally(**values)


@dataclass
class FinalizationResult:
    proposal_id: str
    status: ProposalStatus
    approval_percentage: int
    min_approval_percentage: int
    tally: Optional[VoteTally] = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status.value,
            "approval_percentage": self.approval_percentage,
            "min_approval_percentage": self.min_approval_percentage,
            "tally": self.tally.to_dict() if self.tally is not None else None,
        }


class ProposalLifecycle:
    """Owns proposals, vote records and tallies."""

    def __init__(self, store: RecordStore):
        self._store = store
        self._proposals = store.register("proposals", Proposal)
        self._votes = store.register("votes", VoteRecord)
        self._tallies = store.register("tallies", VoteTally)
        self._sequence = 0

    # ==================== Queries ====================

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self._proposals.require(proposal_id, f"Proposal {proposal_id}", field="proposal_id")

    def get_tally(self, proposal_id: str) -> VoteTally:
        self.get_proposal(proposal_id)
        return self._tallies.get(proposal_id) or VoteTally(proposal_id=proposal_id)

    def get_vote(self, proposal_id: str, voter: str) -> Optional[VoteRecord]:
        return self._votes.get((proposal_id, voter))

    def list_votes(self, proposal_id: str) -> list[VoteRecord]:
        return sorted(
            (v for v in self._votes.values() if v.proposal_id == proposal_id),
            key=lambda v: (v.cast_at, v.voter),
        )

    def find_carrier(self, proposal_id: str, account: str) -> Optional[VoteRecord]:
        """Return the vote on ``proposal_id`` that carried ``account``'s delegated power."""
        for vote in self.list_votes(proposal_id):
            if account in vote.delegators:
                return vote
        return None

    def has_open_vote(self, organization: str, account: str, now: int) -> bool:
        """True while ``account`` has a vote on an ACTIVE proposal still open at ``now``."""
        return any(
            (p.proposal_id, account) in self._votes
            for p in self.list_proposals(organization, ProposalStatus.ACTIVE)
            if p.voting_open(now)
        )

    def list_proposals(
        self, organization: Optional[str] = None, status: Optional[ProposalStatus] = None
    ) -> list[Proposal]:
        proposals = [
            p
            for p in self._proposals.values()
            if (organization is None or p.organization == organization)
            and (status is None or p.status == status)
        ]
        return sorted(proposals, key=lambda p: (p.created_at, p.proposal_id))

    def approval_percentage(self, proposal_id: str) -> int:
        return self.get_tally(proposal_id).approval_percentage

    # ==================== Transitions ====================

    def register_proposal(
        self,
        ctx: ActionContext,
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
        """
        Create a DRAFT proposal owned by ``organization`` with the caller as proposer.

        Raises:
            InvalidInputError: empty title, bad window, percentage or goal
            AlreadyExistsError: ``proposal_id`` already registered
        """
        require_text(organization, "organization")
        require_text(title, "title")
        if not isinstance(description, str):
            raise InvalidInputError("description must be a string", field="description")
        require_epoch(voting_start, "voting_start")
        require_epoch(voting_end, "voting_end")
        if voting_end < voting_start:
            raise InvalidInputError("Voting end must not precede voting start", field="voting_end")
        require_percentage(min_approval_percentage)
        require_non_negative_amount(funding_goal, "funding_goal")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidInputError("payload must be a JSON object", field="payload")

        with self._store.transaction(ctx) as tx:
            if proposal_id is None:
                proposal_id = self._generate_id(ctx, organization, title)
            else:
                require_text(proposal_id, "proposal_id")
            if proposal_id in self._proposals:
                raise AlreadyExistsError(f"Proposal {proposal_id} already exists", field="proposal_id")

            proposal = Proposal(
                proposal_id=proposal_id,
                organization=organization,
                proposer=ctx.caller,
                title=title,
                description=description,
                voting_start=voting_start,
                voting_end=voting_end,
                min_approval_percentage=min_approval_percentage,
                created_at=ctx.now,
                funding_goal=funding_goal,
                payload=payload,
            )
            self._proposals.put(proposal_id, proposal)
            self._tallies.put(proposal_id, VoteTally(proposal_id=proposal_id))
            tx.emit(
                AuditEventKind.PROPOSAL_REGISTERED,
                {"proposal_id": proposal_id, "organization": organization},
                {
                    "status": ProposalStatus.DRAFT.value,
                    "voting_start": voting_start,
                    "voting_end": voting_end,
                    "min_approval_percentage": min_approval_percentage,
                },
            )

        logger.info(
            "Proposal %s registered by %s for %s",
            proposal_id,
            ctx.caller,
            organization,
            extra={"event": "lifecycle.registered", "epoch": ctx.now},
        )
        return proposal

    def activate(self, ctx: ActionContext, proposal_id: str) -> Proposal:
        with self._store.transaction(ctx) as tx:
            proposal = self.get_proposal(proposal_id)
            self._require_owner(ctx, proposal, "activate")
            self._require_status(proposal, ProposalStatus.DRAFT, "activate")

            proposal.status = ProposalStatus.ACTIVE
            proposal.activated_at = ctx.now
            self._proposals.put(proposal_id, proposal)
            tx.emit(
                AuditEventKind.PROPOSAL_ACTIVATED,
                {"proposal_id": proposal_id, "organization": proposal.organization},
                {"status": proposal.status.value},
            )

        logger.info(
            "Proposal %s activated",
            proposal_id,
            extra={"event": "lifecycle.activated", "epoch": ctx.now},
        )
        return proposal

    def cast_vote(
        self,
        ctx: ActionContext,
        proposal_id: str,
        kind: VoteKind,
        power: int,
        delegators: Optional[list[str]] = None,
    ) -> VoteRecord:
        """
        Record the caller's vote with ``power`` and update the tally.

        ``delegators`` lists the accounts whose delegated power is included in
        ``power``; none of them may vote on this proposal afterwards.

        Raises:
            InvalidStateError: proposal not ACTIVE or clock outside [start, end),
                or the caller's power was already cast by a delegate
            InvalidInputError: non-positive power or unknown vote kind
            AlreadyExistsError: caller already voted on this proposal
        """
        voter = ctx.caller
        if not isinstance(kind, VoteKind):
            raise InvalidInputError("Unknown vote kind", field="kind")
        require_positive_amount(power, "power")

        with self._store.transaction(ctx) as tx:
            proposal = self.get_proposal(proposal_id)
            self._require_status(proposal, ProposalStatus.ACTIVE, "vote on")
            if not proposal.voting_open(ctx.now):
                raise InvalidStateError(
                    f"Voting window [{proposal.voting_start}, {proposal.voting_end}) "
                    f"is not open at {ctx.now}",
                    field="now",
                )
            if (proposal_id, voter) in self._votes:
                raise AlreadyExistsError(
                    f"{voter} has already voted on {proposal_id}", field="voter"
                )
            carrier = self.find_carrier(proposal_id, voter)
            if carrier is not None:
                raise InvalidStateError(
                    f"{voter}'s power was already cast on {proposal_id} by {carrier.voter}",
                    field="voter",
                )

            record = VoteRecord(
                proposal_id=proposal_id,
                voter=voter,
                kind=kind,
                power=power,
                cast_at=ctx.now,
                delegators=sorted(delegators or []),
            )
            tally = self.get_tally(proposal_id)
            tally.add(kind, power)

            self._votes.put((proposal_id, voter), record)
            self._tallies.put(proposal_id, tally)
            tx.emit(
                AuditEventKind.VOTE_CAST,
                {"proposal_id": proposal_id, "voter": voter},
                {"kind": kind.value, "power": power, "total_voted": tally.total_voted},
            )

        logger.info(
            "Vote on %s by %s: %s with power %d (yes=%d no=%d abstain=%d)",
            proposal_id,
            voter,
            kind.value.upper(),
            power,
            tally.yes,
            tally.no,
            tally.abstain,
            extra={"event": "lifecycle.vote_cast", "epoch": ctx.now},
        )
        return record

    def finalize(self, ctx: ActionContext, proposal_id: str) -> FinalizationResult:
        """Evaluate the tally once the window has closed: PASSED or REJECTED."""
        with self._store.transaction(ctx) as tx:
            proposal = self.get_proposal(proposal_id)
            self._require_status(proposal, ProposalStatus.ACTIVE, "finalize")
            if ctx.now < proposal.voting_end:
                raise InvalidStateError(
                    f"Voting for {proposal_id} is open until {proposal.voting_end}", field="now"
                )

            tally = self.get_tally(proposal_id)
            approval = tally.approval_percentage
            passed = approval >= proposal.min_approval_percentage
            proposal.status = ProposalStatus.PASSED if passed else ProposalStatus.REJECTED
            proposal.finalized_at = ctx.now
            self._proposals.put(proposal_id, proposal)
            tx.emit(
                AuditEventKind.PROPOSAL_FINALIZED,
                {"proposal_id": proposal_id, "organization": proposal.organization},
                {
                    "status": proposal.status.value,
                    "approval_percentage": approval,
                    "yes": tally.yes,
                    "no": tally.no,
                    "abstain": tally.abstain,
                },
            )

        logger.info(
            "Proposal %s finalized: %s (%d%% approval, %d%% required)",
            proposal_id,
            proposal.status.value.upper(),
            approval,
            proposal.min_approval_percentage,
            extra={"event": "lifecycle.finalized", "epoch": ctx.now},
        )
        return FinalizationResult(
            proposal_id=proposal_id,
            status=proposal.status,
            approval_percentage=approval,
            min_approval_percentage=proposal.min_approval_percentage,
            tally=tally,
        )

    def execute(self, ctx: ActionContext, proposal_id: str) -> Proposal:
        """PASSED -> EXECUTED. Running the payload is the caller's business."""
        with self._store.transaction(ctx) as tx:
            proposal = self.get_proposal(proposal_id)
            self._require_status(proposal, ProposalStatus.PASSED, "execute")

            proposal.status = ProposalStatus.EXECUTED
            proposal.executed_at = ctx.now
            self._proposals.put(proposal_id, proposal)
            tx.emit(
                AuditEventKind.PROPOSAL_EXECUTED,
                {"proposal_id": proposal_id, "organization": proposal.organization},
                {"status": proposal.status.value},
            )

        logger.info(
            "Proposal %s executed",
            proposal_id,
            extra={"event": "lifecycle.executed", "epoch": ctx.now},
        )
        return proposal

    def cancel(self, ctx: ActionContext, proposal_id: str) -> Proposal:
        with self._store.transaction(ctx) as tx:
            proposal = self.get_proposal(proposal_id)
            self._require_owner(ctx, proposal, "cancel")
            if proposal.status in _NON_CANCELABLE:
                raise InvalidStateError(
                    f"Cannot cancel proposal with status: {proposal.status.value}",
                    field="status",
                )

            previous = proposal.status
            proposal.status = ProposalStatus.CANCELED
            proposal.canceled_at = ctx.now
            self._proposals.put(proposal_id, proposal)
            tx.emit(
                AuditEventKind.PROPOSAL_CANCELED,
                {"proposal_id": proposal_id, "organization": proposal.organization},
                {"status": proposal.status.value, "previous": previous.value},
            )

        logger.info(
            "Proposal %s canceled by %s",
            proposal_id,
            ctx.caller,
            extra={"event": "lifecycle.canceled", "epoch": ctx.now},
        )
        return proposal

    # ==================== Helpers ====================

    def _generate_id(self, ctx: ActionContext, organization: str, title: str) -> str:
        while True:
            self._sequence += 1
            digest = hashlib.sha256(
                f"{organization}|{ctx.caller}|{title}|{ctx.now}|{self._sequence}".encode()
            ).hexdigest()
            proposal_id = f"proposal_{digest[:16]}"
            if proposal_id not in self._proposals:
                return proposal_id

    @staticmethod
    def _require_owner(ctx: ActionContext, proposal: Proposal, action: str) -> None:
        if not proposal.is_owner(ctx.caller):
            raise UnauthorizedError(
                f"Only the proposer or organization can {action} {proposal.proposal_id}",
                field="caller",
            )

    @staticmethod
    def _require_status(proposal: Proposal, expected: ProposalStatus, action: str) -> None:
        if proposal.status != expected:
            raise InvalidStateError(
                f"Cannot {action} proposal {proposal.proposal_id} in status "
                f"{proposal.status.value} (requires {expected.value})",
                field="status",
            )
