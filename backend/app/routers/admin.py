from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from app.db import get_session
from app.dependencies import get_escalation_scheduler, require_admin
from app.services.escalation import EscalationScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class SweepDetail(BaseModel):
    testator_id: str
    transitions: list[str]
    request_id: str | None
    redelivered: int
    undelivered: int
    error: str | None  # Error message if this testator failed


class SweepResult(BaseModel):
    started_at: str
    processed: int
    transitions: int
    failed: int
    details: list[SweepDetail]


@router.post("/escalation/sweep", response_model=SweepResult)
def run_escalation_sweep(
    _admin: None = Depends(require_admin),
    db: Session = Depends(get_session),
    scheduler: EscalationScheduler = Depends(get_escalation_scheduler),
) -> SweepResult:
    """Run one escalation sweep now. Meant for cron or an operator.

    Safe to call at any frequency; work already done is skipped. Runs in
    the threadpool since the sweep blocks on SMTP.
    """
    report = scheduler.process_overdue(db)
    details = [
        SweepDetail(
            testator_id=r.testator_id,
            transitions=r.transitions,
            request_id=r.request_id,
            redelivered=r.redelivered,
            undelivered=r.undelivered,
            error=r.error,
        )
        for r in report.results
        if r.transitions or r.redelivered or r.undelivered or r.error or r.request_id
    ]
    logger.info(
        "Admin sweep: processed=%d, transitions=%d, failed=%d",
        report.processed,
        report.transition_count,
        len(report.failures),
    )
    return SweepResult(
        started_at=report.started_at.isoformat(),
        processed=report.processed,
        transitions=report.transition_count,
        failed=len(report.failures),
        details=details,
    )
