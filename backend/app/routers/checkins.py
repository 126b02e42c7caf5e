"""Check-in router: the testator's liveness confirmations and schedule."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from app.db import get_session
from app.dependencies import get_checkin_tracker, get_current_testator_id
from app.errors import ProtocolError
from app.models.checkin import CheckInRead, CheckInStatusResponse
from app.models.testator import TestatorRead, TestatorSettingsUpdate
from app.services.checkin import CheckInTracker

router = APIRouter(prefix="/api/checkins", tags=["checkins"])


@router.post("", response_model=CheckInRead, status_code=201)
async def check_in(
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
) -> CheckInRead:
    """Confirm the testator is alive. Cancels any pending verification."""
    try:
        checkin = tracker.record_check_in(db, testator_id)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)
    return CheckInRead.model_validate(checkin)


@router.get("/current", response_model=CheckInRead | None)
async def current_checkin(
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
) -> CheckInRead | None:
    try:
        checkin = tracker.current_status(db, testator_id)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)
    return CheckInRead.model_validate(checkin) if checkin is not None else None


@router.get("/status", response_model=CheckInStatusResponse)
async def checkin_status(
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
) -> CheckInStatusResponse:
    """Deadlines, escalation stage and any active verification request."""
    try:
        return tracker.status_summary(db, testator_id)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)


@router.get("/history", response_model=list[CheckInRead])
async def checkin_history(
    limit: int = 50,
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
) -> list[CheckInRead]:
    limit = max(1, min(limit, 500))
    try:
        rows = tracker.history(db, testator_id, limit=limit)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)
    return [CheckInRead.model_validate(r) for r in rows]


@router.put("/settings", response_model=TestatorRead)
async def update_checkin_settings(
    body: TestatorSettingsUpdate,
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
) -> TestatorRead:
    """Update check-in cadence, grace period and reminder preferences."""
    try:
        testator = tracker.update_settings(db, testator_id, body)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)
    return TestatorRead.model_validate(testator)
