from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, select

from app.config import Settings
from app.errors import NotFound
from app.models.audit import AuditAction
from app.models.checkin import CheckIn, CheckInStatus, CheckInStatusResponse
from app.models.testator import Testator, TestatorSettingsUpdate
from app.models.verification import VerificationRequest, VerificationStatus
from app.services.audit import AuditLog
from app.services.verification import transition_request
from app.utils.clock import Clock, as_naive_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationDeadlines:
    next_due: datetime
    contacts_at: datetime
    verification_at: datetime


def escalation_deadlines(checkin: CheckIn, testator: Testator) -> EscalationDeadlines:
    """Deadlines derived from the current check-in, never from sweep counts."""
    grace = timedelta(days=testator.grace_period_days)
    return EscalationDeadlines(
        next_due=checkin.next_due,
        contacts_at=checkin.next_due + grace / 2,
        verification_at=checkin.next_due + grace,
    )


class CheckInTracker:
    """Liveness confirmations and the escalation stage of the current one.

    Each check-in is its own row; "current" is simply the latest by
    ``checked_in_at``. Rows are never deleted, only superseded, and their
    status only moves forward (see ``advance``).
    """

    def __init__(self, settings: Settings, clock: Clock) -> None:
        self._settings = settings
        self._clock = clock

    # --- Testator accounts ---

    def enroll_testator(
        self,
        db: Session,
        email: str,
        full_name: str,
        checkin_interval_days: int | None = None,
        grace_period_days: int | None = None,
        trusted_contact_email: str | None = None,
    ) -> Testator:
        """Create a protected account and seed its day-0 check-in."""
        now = self._clock.now()
        testator = Testator(
            email=email.strip().lower(),
            full_name=full_name.strip(),
            checkin_interval_days=checkin_interval_days
            or self._settings.default_checkin_interval_days,
            grace_period_days=grace_period_days
            or self._settings.default_grace_period_days,
            trusted_contact_email=trusted_contact_email,
            created_at=now,
            updated_at=now,
        )
        db.add(testator)
        # Inserts are not ordered by foreign key; the testator row must exist first.
        db.flush()
        AuditLog.record(
            db,
            testator.id,
            AuditAction.TESTATOR_ENROLLED,
            {
                "checkin_interval_days": testator.checkin_interval_days,
                "grace_period_days": testator.grace_period_days,
            },
            at=now,
        )
        self._add_checkin(db, testator, now)
        db.commit()
        db.refresh(testator)
        logger.info("Enrolled testator %s", testator.id)
        return testator

    def get_testator(self, db: Session, testator_id: str) -> Testator:
        testator = db.get(Testator, testator_id)
        if testator is None:
            raise NotFound(f"Unknown testator {testator_id}")
        return testator

    def update_settings(
        self, db: Session, testator_id: str, body: TestatorSettingsUpdate
    ) -> Testator:
        testator = self.get_testator(db, testator_id)
        update_data = body.model_dump(exclude_unset=True)
        for key, value in update_data.items():
            setattr(testator, key, value)
        testator.updated_at = self._clock.now()
        db.add(testator)
        AuditLog.record(
            db, testator.id, AuditAction.SETTINGS_UPDATED, update_data, at=testator.updated_at
        )
        db.commit()
        db.refresh(testator)
        return testator

    # --- Check-ins ---

    def record_check_in(
        self, db: Session, testator_id: str, at: datetime | None = None
    ) -> CheckIn:
        """Record that the testator is alive and restart their cadence.

        A pending verification request is cancelled in the same commit, so
        an unlock that has not committed yet will find it no longer pending.
        """
        testator = self.get_testator(db, testator_id)
        now = as_naive_utc(at) if at is not None else self._clock.now()

        latest = self.current_status(db, testator_id)
        if (
            latest is not None
            and latest.checked_in_at == now
            and latest.status == CheckInStatus.ALIVE.value
        ):
            return latest

        checkin = self._add_checkin(db, testator, now)

        pending = db.exec(
            select(VerificationRequest).where(
                VerificationRequest.testator_id == testator_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
            )
        ).first()
        if pending is not None:
            transition_request(
                db, pending, VerificationStatus.CANCELLED, now, reason="testator_checked_in"
            )
            logger.info(
                "Check-in by testator %s cancelled verification request %s",
                testator_id,
                pending.id,
            )

        db.commit()
        db.refresh(checkin)
        return checkin

    def current_status(self, db: Session, testator_id: str) -> CheckIn | None:
        """Return the latest check-in for the testator, or None."""
        self.get_testator(db, testator_id)
        return db.exec(
            select(CheckIn)
            .where(CheckIn.testator_id == testator_id)
            .order_by(CheckIn.checked_in_at.desc())  # type: ignore[union-attr]
            .limit(1)
        ).first()

    def history(self, db: Session, testator_id: str, limit: int = 50) -> list[CheckIn]:
        self.get_testator(db, testator_id)
        return list(
            db.exec(
                select(CheckIn)
                .where(CheckIn.testator_id == testator_id)
                .order_by(CheckIn.checked_in_at.desc())  # type: ignore[union-attr]
                .limit(limit)
            ).all()
        )

    def advance(
        self,
        db: Session,
        checkin: CheckIn,
        target: CheckInStatus,
        now: datetime,
    ) -> bool:
        """Move a check-in one or more stages forward.

        Conditional on the status the caller last saw, so of two concurrent
        sweeps only one wins. Returns False for the loser. Does not commit.
        """
        current = CheckInStatus(checkin.status)
        if not current.can_advance_to(target):
            raise ValueError(
                f"Illegal check-in transition {current.value} -> {target.value}"
            )

        result = db.execute(
            update(CheckIn)
            .where(CheckIn.id == checkin.id, CheckIn.status == current.value)
            .values(status=target.value, status_changed_at=now)
        )
        if result.rowcount != 1:
            logger.info(
                "Check-in %s already moved past %s by another sweep",
                checkin.id,
                current.value,
            )
            return False

        db.refresh(checkin)
        AuditLog.record(
            db,
            checkin.testator_id,
            AuditAction.CHECKIN_STATUS_ADVANCED,
            {"checkin_id": checkin.id, "from": current.value, "to": target.value},
            at=now,
        )
        return True

    def status_summary(self, db: Session, testator_id: str) -> CheckInStatusResponse:
        testator = self.get_testator(db, testator_id)
        latest = self.current_status(db, testator_id)
        active = db.exec(
            select(VerificationRequest.id).where(
                VerificationRequest.testator_id == testator_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
            )
        ).first()

        if latest is None:
            return CheckInStatusResponse(
                last_checkin=None,
                next_due=None,
                grace_deadline=None,
                is_overdue=False,
                status=None,
                active_request_id=active,
                frozen=testator.frozen,
            )

        deadlines = escalation_deadlines(latest, testator)
        return CheckInStatusResponse(
            last_checkin=latest.checked_in_at,
            next_due=deadlines.next_due,
            grace_deadline=deadlines.verification_at,
            is_overdue=self._clock.now() > deadlines.next_due,
            status=CheckInStatus(latest.status),
            active_request_id=active,
            frozen=testator.frozen,
        )

    def _add_checkin(self, db: Session, testator: Testator, now: datetime) -> CheckIn:
        checkin = CheckIn(
            testator_id=testator.id,
            checked_in_at=now,
            status=CheckInStatus.ALIVE.value,
            next_due=now + timedelta(days=testator.checkin_interval_days),
        )
        db.add(checkin)
        AuditLog.record(
            db,
            testator.id,
            AuditAction.CHECKIN_RECORDED,
            {"checkin_id": checkin.id, "next_due": checkin.next_due},
            at=now,
        )
        return checkin
