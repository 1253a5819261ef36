"""
Keyed record stores with all-or-nothing transactions.

Each governance component registers the collections it owns (proposals,
votes, power records, ...). Records are plain dataclasses exposing
``to_dict``/``from_dict``; the store hands out copies so no component can
hold a live reference into another component's state.

Writes are only accepted inside ``RecordStore.transaction()``. The
transaction keeps an undo journal of every key it touches and buffers the
audit events raised by the action:

    with store.transaction(ctx) as tx:
        proposals.put(pid, proposal)
        tx.emit(AuditEventKind.PROPOSAL_ACTIVATED, {"proposal_id": pid})

If the block raises, every journaled key is restored and the buffered events
are dropped. Nested ``transaction()`` calls join the outermost one, so an
action composed from several component operations commits or aborts as one.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generic, Hashable, Iterator, Optional, Protocol, TypeVar

from crowdgov.core.audit_events import AuditEvent, AuditEventKind, AuditEventLog
from crowdgov.core.governance_exceptions import NotFoundError
from crowdgov.core.logical_clock import ActionContext

logger = logging.getLogger(__name__)

_MISSING = object()


class Record(Protocol):
    def to_dict(self) -> Dict[str, Any]: ...


R = TypeVar("R", bound=Record)


class KeyedStore(Generic[R]):
    """A single named collection of records keyed by a hashable key."""

    def __init__(self, name: str, record_type: type, owner: "RecordStore"):
        self.name = name
        self.record_type = record_type
        self._owner = owner
        self._records: Dict[Hashable, R] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._records

    def get(self, key: Hashable) -> Optional[R]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def require(self, key: Hashable, what: str, field: str | None = None) -> R:
        record = self.get(key)
        if record is None:
            raise NotFoundError(f"{what} not found", field=field)
        return record

    def put(self, key: Hashable, record: R) -> None:
        self._owner._journal(self, key)
        self._records[key] = copy.deepcopy(record)

    def delete(self, key: Hashable) -> None:
        if key not in self._records:
            return
        self._owner._journal(self, key)
        del self._records[key]

    def items(self) -> list[tuple[Hashable, R]]:
        return [(k, copy.deepcopy(v)) for k, v in self._records.items()]

    def values(self) -> list[R]:
        return [copy.deepcopy(v) for v in self._records.values()]

    def _raw_restore(self, key: Hashable, previous: Any) -> None:
        if previous is _MISSING:
            self._records.pop(key, None)
        else:
            self._records[key] = previous

    def to_list(self) -> list[Dict[str, Any]]:
        entries = []
        for key, record in self._records.items():
            entries.append(
                {
                    "key": list(key) if isinstance(key, tuple) else key,
                    "record": record.to_dict(),
                }
            )
        entries.sort(key=lambda e: json.dumps(e["key"], sort_keys=True))
        return entries

    def load_list(self, entries: list[Dict[str, Any]]) -> None:
        records: Dict[Hashable, R] = {}
        for entry in entries:
            key = entry["key"]
            if isinstance(key, list):
                key = tuple(key)
            records[key] = self.record_type.from_dict(entry["record"])
        self._records = records


class StoreTransaction:
    """Undo journal and event buffer for one action."""

    def __init__(self, ctx: ActionContext):
        self.ctx = ctx
        self.undo: list[tuple[KeyedStore, Hashable, Any]] = []
        self.touched: set[tuple[str, Hashable]] = set()
        self.events: list[AuditEvent] = []

    def emit(
        self,
        kind: AuditEventKind,
        subject: Dict[str, Any],
        changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(
            AuditEvent(
                kind=kind,
                actor=self.ctx.caller,
                epoch=self.ctx.now,
                subject=dict(subject),
                changes=dict(changes or {}),
            )
        )


class RecordStore:
    """All governance collections plus the transaction that guards them."""

    def __init__(self, event_log: Optional[AuditEventLog] = None):
        self.event_log = event_log or AuditEventLog()
        self._collections: Dict[str, KeyedStore] = {}
        self._active: Optional[StoreTransaction] = None
        self._lock = threading.RLock()

    def register(self, name: str, record_type: type) -> KeyedStore:
        """Return the collection ``name``, creating it on first registration."""
        existing = self._collections.get(name)
        if existing is not None:
            if existing.record_type is not record_type:
                raise ValueError(
                    f"Collection {name} already registered for {existing.record_type.__name__}"
                )
            return existing
        collection: KeyedStore = KeyedStore(name, record_type, self)
        self._collections[name] = collection
        return collection

    @property
    def in_transaction(self) -> bool:
        return self._active is not None

    @contextmanager
    def transaction(self, ctx: ActionContext) -> Iterator[StoreTransaction]:
        with self._lock:
            if self._active is not None:
                yield self._active
                return

            tx = StoreTransaction(ctx)
            self._active = tx
            try:
                yield tx
            except BaseException:
                for collection, key, previous in reversed(tx.undo):
                    collection._raw_restore(key, previous)
                if tx.undo:
                    logger.debug(
                        "Transaction aborted, restored %d record(s)",
                        len(tx.undo),
                        extra={"event": "store.rollback", "caller": ctx.caller, "epoch": ctx.now},
                    )
                raise
            finally:
                self._active = None

            if tx.events:
                self.event_log.publish(tx.events)

    def _journal(self, collection: KeyedStore, key: Hashable) -> None:
        tx = self._active
        if tx is None:
            raise RuntimeError(f"Write to {collection.name} outside of a transaction")
        marker = (collection.name, key)
        if marker in tx.touched:
            return
        tx.touched.add(marker)
        tx.undo.append((collection, key, collection._records.get(key, _MISSING)))

    # ==================== Persistence ====================

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {name: c.to_list() for name, c in sorted(self._collections.items())}

    def snapshot_digest(self) -> str:
        """SHA-256 of the canonical JSON form of every collection."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(target)
        logger.info(
            "Governance state saved to %s",
            target,
            extra={"event": "store.saved", "collections": len(self._collections)},
        )

    def load(self, path: str | Path) -> None:
        """Replace registered collections with a snapshot written by ``save``."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        with self._lock:
            if self._active is not None:
                raise RuntimeError("Cannot load state inside a transaction")
            unknown = set(data) - set(self._collections)
            if unknown:
                raise ValueError(f"Snapshot contains unregistered collections: {sorted(unknown)}")
            for name, entries in data.items():
                self._collections[name].load_list(entries)
        logger.info(
            "Governance state loaded from %s",
            path,
            extra={"event": "store.loaded", "collections": len(data)},
        )
