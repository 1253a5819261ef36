"""
Governance exception hierarchy for crowdgov.

Every failing action raises one of these typed errors before touching any
record, so callers can branch on the class (or on ``kind``) and know that
state was left untouched.
"""

from __future__ import annotations

from typing import Any, Optional, Dict


class GovernanceError(Exception):
    """Base exception for all governance actions.

    Attributes:
        message: Human-readable error description
        field: Name of the offending field, when one applies
        details: Additional context for logs (never returned to callers)
    """

    kind = "GovernanceError"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing representation: kind, field and message only."""
        return {"error": self.kind, "field": self.field, "message": self.message}


class UnauthorizedError(GovernanceError):
    """Caller lacks the required role (proposer, organization, beneficiary)."""

    kind = "Unauthorized"


class NotFoundError(GovernanceError):
    """Referenced proposal, DAO, delegation or contribution is absent."""

    kind = "NotFound"


class InvalidStateError(GovernanceError):
    """Operation attempted outside its lifecycle state or time window."""

    kind = "InvalidState"


class GoalReachedError(InvalidStateError):
    """Funding goal already reached (contribution closed or refund denied)."""

    kind = "GoalReached"


class GoalNotReachedError(InvalidStateError):
    """Minimum funding goal not reached (withdrawal or execution denied)."""

    kind = "GoalNotReached"


class InvalidInputError(GovernanceError):
    """Zero/negative amount, malformed percentage, empty string, bad goals."""

    kind = "InvalidInput"


class AlreadyExistsError(GovernanceError):
    """Duplicate vote, duplicate active delegation or double initialization."""

    kind = "AlreadyExists"


class InsufficientFundsError(GovernanceError):
    """Withdrawal or refund exceeds the available escrow balance."""

    kind = "InsufficientFunds"


class TransferFailedError(GovernanceError):
    """External asset transfer was rejected."""

    kind = "TransferFailed"
