"""
Audit event stream.

Every successful state-mutating action produces exactly one structured event
(plus one per lazily expired delegation it triggers). Events are buffered by
the record store transaction and only published here after commit, so a
failed action never leaves a trace in the log.

Consumers (indexers, UIs, the HTTP API) treat the log as append-only.
Nothing in the governance core depends on delivery to subscribers.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class AuditEventKind(Enum):
    """Audit event kinds"""

    DAO_CREATED = "dao_created"
    DAO_DEACTIVATED = "dao_deactivated"
    PROPOSAL_REGISTERED = "proposal_registered"
    PROPOSAL_ACTIVATED = "proposal_activated"
    VOTE_CAST = "vote_cast"
    PROPOSAL_FINALIZED = "proposal_finalized"
    PROPOSAL_EXECUTED = "proposal_executed"
    PROPOSAL_CANCELED = "proposal_canceled"
    POWER_UPDATED = "power_updated"
    DELEGATED = "delegated"
    DELEGATION_REVOKED = "delegation_revoked"
    DELEGATION_EXPIRED = "delegation_expired"
    FUNDING_INITIALIZED = "funding_initialized"
    CONTRIBUTED = "contributed"
    WITHDRAWN = "withdrawn"
    TOKEN_WITHDRAWN = "token_withdrawn"
    REFUNDED = "refunded"
    TOKEN_REFUNDED = "token_refunded"


@dataclass
class AuditEvent:
    """One committed governance action."""

    kind: AuditEventKind
    actor: str
    epoch: int
    subject: dict[str, Any]
    changes: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    event_id: str = ""

    def calculate_event_id(self) -> str:
        payload = {
            "kind": self.kind.value,
            "actor": self.actor,
            "epoch": self.epoch,
            "subject": self.subject,
            "changes": self.changes,
            "sequence": self.sequence,
        }
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "sequence": self.sequence,
            "kind": self.kind.value,
            "actor": self.actor,
            "epoch": self.epoch,
            "subject": self.subject,
            "changes": self.changes,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "AuditEvent":
        return AuditEvent(
            kind=AuditEventKind(data["kind"]),
            actor=data["actor"],
            epoch=data["epoch"],
            subject=data.get("subject", {}),
            changes=data.get("changes", {}),
            sequence=data.get("sequence", 0),
            event_id=data.get("event_id", ""),
        )


EventSubscriber = Callable[[AuditEvent], None]


class AuditEventLog:
    """Append-only log of committed audit events with subscriber fan-out."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._subscribers: list[EventSubscriber] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._events)

    def subscribe(self, callback: EventSubscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: EventSubscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, events: list[AuditEvent]) -> None:
        """Append committed events, assign sequence numbers and notify."""
        with self._lock:
            for event in events:
                event.sequence = len(self._events) + 1
                event.event_id = event.calculate_event_id()
                self._events.append(event)
                logger.info(
                    "Audit event %s #%d",
                    event.kind.value,
                    event.sequence,
                    extra={
                        "event": f"audit.{event.kind.value}",
                        "actor": event.actor,
                        "epoch": event.epoch,
                        "subject": event.subject,
                    },
                )
            subscribers = list(self._subscribers)

        for event in events:
            for callback in subscribers:
                try:
                    callback(event)
                except Exception as exc:
                    # Delivery is best effort; committed state is already final.
                    logger.warning(
                        "Audit subscriber failed: %s",
                        exc,
                        extra={
                            "event": "audit.subscriber_failed",
                            "error_type": type(exc).__name__,
                            "sequence": event.sequence,
                        },
                    )

    def events(
        self, kind: AuditEventKind | None = None, since: int = 0, limit: int | None = None
    ) -> list[AuditEvent]:
        """Events with ``sequence > since``, optionally filtered by kind."""
        with self._lock:
            selected = [
                e for e in self._events if e.sequence > since and (kind is None or e.kind == kind)
            ]
        if limit is not None:
            selected = selected[: max(limit, 0)]
        return selected

    def export_jsonl(self, path: str | Path) -> int:
        """Write the log as JSON lines. Returns the number of events written."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            lines = [json.dumps(e.to_dict(), sort_keys=True, default=str) for e in self._events]
        target.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        return len(lines)

    def load_jsonl(self, path: str | Path) -> int:
        """Replace the log contents with events read from a JSON-lines file."""
        source = Path(path)
        loaded = []
        for line in source.read_text(encoding="utf-8").splitlines():
            if line.strip():
                loaded.append(AuditEvent.from_dict(json.loads(line)))
        with self._lock:
            self._events = loaded
        return len(loaded)
