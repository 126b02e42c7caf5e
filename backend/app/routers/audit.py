from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlmodel import Session

from app.db import get_session
from app.dependencies import get_current_testator_id
from app.models.audit import AuditLogRead
from app.services.audit import AuditLog

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("", response_model=list[AuditLogRead])
async def get_audit_trail(
    limit: int = 100,
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
) -> list[AuditLogRead]:
    """Newest-first audit trail for the authenticated testator."""
    limit = max(1, min(limit, 1000))
    return [
        AuditLogRead.model_validate(e)
        for e in AuditLog.trail(db, testator_id, limit=limit)
    ]
