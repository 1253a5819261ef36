"""
Input validation shared by the governance components.

Amounts and power are integers in base units; booleans are rejected even
though ``bool`` subclasses ``int``.
"""

from __future__ import annotations

from typing import Any

from crowdgov.core.governance_exceptions import InvalidInputError


def require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field} cannot be empty", field=field)
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def require_positive_amount(value: Any, field: str = "amount") -> int:
    if not _is_int(value) or value <= 0:
        raise InvalidInputError(f"{field} must be a positive integer", field=field)
    return value


def require_non_negative_amount(value: Any, field: str = "amount") -> int:
    if not _is_int(value) or value < 0:
        raise InvalidInputError(f"{field} must be a non-negative integer", field=field)
    return value


def require_epoch(value: Any, field: str) -> int:
    return require_non_negative_amount(value, field)


def require_percentage(value: Any, field: str = "min_approval_percentage") -> int:
    if not _is_int(value) or not 0 <= value <= 100:
        raise InvalidInputError(f"{field} must be an integer between 0 and 100", field=field)
    return value
