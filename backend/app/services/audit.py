from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import event
from sqlmodel import Session, select

from app.models.audit import AuditAction, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError("Audit log entries cannot be modified")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError("Audit log entries cannot be deleted")


class AuditLog:
    """Append-only record of transitions and dispatched notifications.

    ``record`` only adds the entry to the caller's session; the caller
    commits it together with the state change it describes, so a
    transition and its audit entry land (or roll back) atomically.
    """

    @staticmethod
    def record(
        db: Session,
        testator_id: str,
        action: AuditAction,
        details: dict | None = None,
        delivery_id: str | None = None,
        at: datetime | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            testator_id=testator_id,
            action=action.value,
            detail_json=json.dumps(details, default=str, sort_keys=True)
            if details
            else None,
            delivery_id=delivery_id,
        )
        if at is not None:
            entry.created_at = at
        db.add(entry)
        logger.debug("Audit %s for testator %s", action.value, testator_id)
        return entry

    @staticmethod
    def trail(
        db: Session, testator_id: str, limit: int | None = None
    ) -> list[AuditLogEntry]:
        """Newest-first audit entries for one testator."""
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.testator_id == testator_id)
            .order_by(AuditLogEntry.created_at.desc())  # type: ignore[union-attr]
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(db.exec(stmt).all())

    @staticmethod
    def find_by_delivery_id(db: Session, delivery_id: str) -> AuditLogEntry | None:
        return db.exec(
            select(AuditLogEntry).where(AuditLogEntry.delivery_id == delivery_id)
        ).first()
