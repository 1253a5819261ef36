"""
DAO registry.

A DAO is identified by an account handle; proposals are routed to it by that
handle and the handle itself counts as an owner of every proposal it hosts.
The registry carries metadata only and holds no funds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
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
from crowdgov.core.validation import require_text

logger = logging.getLogger(__name__)


@dataclass
class DaoRecord:
    dao_id: str
    name: str
    owner: str
    created_at: int
    description: str = ""
    url: str = ""
    token_asset: Optional[str] = None
    active: bool = True

    def can_manage(self, account: str) -> bool:
        return account in (self.owner, self.dao_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "DaoRecord":
        return DaoRecord(**data)


class DaoRegistry:
    def __init__(self, store: RecordStore):
        self._store = store
        self._daos = store.register("daos", DaoRecord)

    def get_dao(self, dao_id: str) -> DaoRecord:
        return self._daos.require(dao_id, f"DAO {dao_id}", field="dao_id")

    def list_daos(self, active_only: bool = False) -> list[DaoRecord]:
        daos = [d for d in self._daos.values() if d.active or not active_only]
        return sorted(daos, key=lambda d: (d.created_at, d.dao_id))

    def require_active(self, dao_id: str) -> DaoRecord:
        dao = self.get_dao(dao_id)
        if not dao.active:
            raise InvalidStateError(f"DAO {dao_id} is deactivated", field="organization")
        return dao

    def create_dao(
        self,
        ctx: ActionContext,
        dao_id: str,
        name: str,
        description: str = "",
        url: str = "",
        token_asset: Optional[str] = None,
    ) -> DaoRecord:
        """Register ``dao_id`` with the caller as owner."""
        require_text(dao_id, "dao_id")
        require_text(name, "name")
        for value, field_name in ((description, "description"), (url, "url")):
            if not isinstance(value, str):
                raise InvalidInputError(f"{field_name} must be a string", field=field_name)
        if token_asset is not None:
            require_text(token_asset, "token_asset")

        with self._store.transaction(ctx) as tx:
            if dao_id in self._daos:
                raise AlreadyExistsError(f"DAO {dao_id} already exists", field="dao_id")
            dao = DaoRecord(
                dao_id=dao_id,
                name=name,
                owner=ctx.caller,
                created_at=ctx.now,
                description=description,
                url=url,
                token_asset=token_asset,
            )
            self._daos.put(dao_id, dao)
            tx.emit(
                AuditEventKind.DAO_CREATED,
                {"dao_id": dao_id},
                {"name": name, "owner": ctx.caller, "token_asset": token_asset},
            )

        logger.info(
            "DAO %s (%s) created by %s",
            dao_id,
            name,
            ctx.caller,
            extra={"event": "registry.dao_created", "epoch": ctx.now},
        )
        return dao

    def deactivate_dao(self, ctx: ActionContext, dao_id: str) -> DaoRecord:
        with self._store.transaction(ctx) as tx:
            dao = self.get_dao(dao_id)
            if not dao.can_manage(ctx.caller):
                raise UnauthorizedError(
                    f"Only the owner or the DAO account can deactivate {dao_id}", field="caller"
                )
            if not dao.active:
                raise InvalidStateError(f"DAO {dao_id} is already deactivated", field="active")
            dao.active = False
            self._daos.put(dao_id, dao)
            tx.emit(AuditEventKind.DAO_DEACTIVATED, {"dao_id": dao_id}, {"active": False})

        logger.info(
            "DAO %s deactivated",
            dao_id,
            extra={"event": "registry.dao_deactivated", "epoch": ctx.now},
        )
        return dao
