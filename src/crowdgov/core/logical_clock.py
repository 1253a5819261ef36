"""
Logical clock (epoch counter) and per-action context.

The host environment owns the clock: it is the only party allowed to move it,
and it never moves backwards. Governance components never read a hidden
global; every operation receives an ``ActionContext`` carrying the caller and
the epoch the action is evaluated at.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from crowdgov.core.governance_exceptions import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionContext:
    """Who is acting, and at which logical time."""

    caller: str
    now: int

    def __post_init__(self) -> None:
        if not self.caller:
            raise InvalidInputError("Caller cannot be empty", field="caller")
        if not isinstance(self.now, int) or self.now < 0:
            raise InvalidInputError("Epoch must be a non-negative integer", field="now")


class LogicalClock:
    """Monotonic, non-decreasing epoch counter set by the host."""

    def __init__(self, start: int = 0):
        if not isinstance(start, int) or start < 0:
            raise InvalidInputError("Clock start must be a non-negative integer", field="epoch")
        self._epoch = start
        self._lock = threading.RLock()

    @property
    def now(self) -> int:
        return self._epoch

    def set(self, epoch: int) -> int:
        """Move the clock to ``epoch``. Regressions are rejected."""
        if not isinstance(epoch, int) or epoch < 0:
            raise InvalidInputError("Epoch must be a non-negative integer", field="epoch")
        with self._lock:
            if epoch < self._epoch:
                raise InvalidInputError(
                    f"Clock cannot move backwards ({epoch} < {self._epoch})", field="epoch"
                )
            if epoch != self._epoch:
                logger.debug(
                    "Logical clock advanced to %d",
                    epoch,
                    extra={"event": "clock.advanced", "from": self._epoch, "to": epoch},
                )
            self._epoch = epoch
            return self._epoch

    def advance(self, delta: int = 1) -> int:
        if not isinstance(delta, int) or delta < 0:
            raise InvalidInputError("Clock delta must be a non-negative integer", field="delta")
        return self.set(self._epoch + delta)

    def context(self, caller: str) -> ActionContext:
        """Build an ``ActionContext`` for ``caller`` at the current epoch."""
        return ActionContext(caller=caller, now=self._epoch)
