from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlmodel import Session, select

from app.errors import UpstreamFailure
from app.models.audit import AuditAction
from app.models.checkin import CheckIn, CheckInStatus, TrustedContactAlert
from app.models.testator import Testator
from app.services.audit import AuditLog
from app.services.checkin import CheckInTracker, escalation_deadlines
from app.services.notifier import NotificationKind, Notifier
from app.services.verification import VerificationService
from app.utils.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class TestatorSweepResult:
    testator_id: str
    transitions: list[str] = field(default_factory=list)
    request_id: str | None = None
    redelivered: int = 0
    undelivered: int = 0
    error: str | None = None


@dataclass
class SweepReport:
    started_at: datetime
    processed: int = 0
    results: list[TestatorSweepResult] = field(default_factory=list)

    @property
    def failures(self) -> list[TestatorSweepResult]:
        return [r for r in self.results if r.error is not None]

    @property
    def transition_count(self) -> int:
        return sum(len(r.transitions) for r in self.results)


class EscalationScheduler:
    """Periodic sweep that walks overdue check-ins up the escalation ladder.

    Deadlines are recomputed from the current check-in on every run and
    each step is guarded by the persisted status, so the sweep can run at
    any interval, twice in a row, or again after a crash without doing
    anything twice. It never schedules itself; something external calls
    ``process_overdue``.
    """

    def __init__(
        self,
        tracker: CheckInTracker,
        verification: VerificationService,
        notifier: Notifier,
        clock: Clock,
    ) -> None:
        self._tracker = tracker
        self._verification = verification
        self._notifier = notifier
        self._clock = clock

    def process_overdue(self, db: Session, now: datetime | None = None) -> SweepReport:
        now = now or self._clock.now()
        report = SweepReport(started_at=now)

        testator_ids = db.exec(
            select(Testator.id).where(
                Testator.checkin_enabled == True,  # noqa: E712
                Testator.frozen == False,  # noqa: E712
            )
        ).all()

        for testator_id in testator_ids:
            result = TestatorSweepResult(testator_id=testator_id)
            try:
                self._process_testator(db, testator_id, now, result)
            except Exception as exc:
                db.rollback()
                result.error = str(exc)
                logger.exception("Escalation failed for testator %s", testator_id)
                self._record_failure(db, testator_id, exc, now)
            report.results.append(result)
            report.processed += 1

        if report.transition_count or report.failures:
            logger.info(
                "Escalation sweep: %d testators, %d transitions, %d failures",
                report.processed,
                report.transition_count,
                len(report.failures),
            )
        return report

    def _process_testator(
        self, db: Session, testator_id: str, now: datetime, result: TestatorSweepResult
    ) -> None:
        testator = self._tracker.get_testator(db, testator_id)
        checkin = self._tracker.current_status(db, testator_id)
        if checkin is None:
            logger.debug("No check-ins recorded for testator %s", testator_id)
            return

        deadlines = escalation_deadlines(checkin, testator)

        if checkin.status == CheckInStatus.ALIVE.value and deadlines.next_due < now:
            if self._tracker.advance(db, checkin, CheckInStatus.PENDING, now):
                if testator.notify_by_email:
                    self._notify(
                        db,
                        testator,
                        testator.email,
                        NotificationKind.CHECKIN_REMINDER,
                        {
                            "testator_name": testator.full_name,
                            "next_due": deadlines.next_due.isoformat(),
                            "grace_deadline": deadlines.verification_at.isoformat(),
                        },
                        now,
                    )
                db.commit()
                result.transitions.append(CheckInStatus.PENDING.value)
            else:
                db.rollback()
                return

        if checkin.status == CheckInStatus.PENDING.value and now > deadlines.contacts_at:
            if self._tracker.advance(
                db, checkin, CheckInStatus.TRUSTED_CONTACTS_NOTIFIED, now
            ):
                db.commit()
                result.transitions.append(CheckInStatus.TRUSTED_CONTACTS_NOTIFIED.value)
            else:
                db.rollback()
                return

        if checkin.status == CheckInStatus.TRUSTED_CONTACTS_NOTIFIED.value:
            result.undelivered = self._notify_trusted_contacts(
                db, testator, checkin, deadlines.verification_at, now
            )

        if (
            checkin.status != CheckInStatus.VERIFICATION_TRIGGERED.value
            and now > deadlines.verification_at
        ):
            request = self._verification.open_request(db, testator, now, checkin)
            result.request_id = request.id
            if self._tracker.advance(
                db, checkin, CheckInStatus.VERIFICATION_TRIGGERED, now
            ):
                db.commit()
                result.transitions.append(CheckInStatus.VERIFICATION_TRIGGERED.value)
            else:
                db.rollback()
            return

        if checkin.status == CheckInStatus.VERIFICATION_TRIGGERED.value:
            request = self._verification.get_active_request(db, testator_id, now)
            if request is not None:
                result.request_id = request.id
                result.redelivered = self._verification.redeliver_credentials(
                    db, testator, request, now
                )

    def _notify_trusted_contacts(
        self,
        db: Session,
        testator: Testator,
        checkin: CheckIn,
        grace_deadline: datetime,
        now: datetime,
    ) -> int:
        """Alert each trusted contact at most once for this check-in.

        Each delivery commits with its marker row and audit entry. Returns
        how many contacts still lack a successful delivery.
        """
        snapshot = self._verification.registry.list_parties(db, testator.id)
        if not snapshot.trusted_contacts:
            if checkin.status_changed_at == now:
                logger.warning(
                    "No trusted contacts configured for testator %s, skipping welfare alert",
                    testator.id,
                )
            return 0

        alerted = set(
            db.exec(
                select(TrustedContactAlert.contact_email).where(
                    TrustedContactAlert.checkin_id == checkin.id
                )
            ).all()
        )
        undelivered = 0
        for contact in snapshot.trusted_contacts:
            address = contact.email.strip().lower()
            if address in alerted:
                continue
            kind = NotificationKind.TRUSTED_CONTACT_ALERT
            payload = {
                "testator_name": testator.full_name,
                "contact_name": contact.name,
                "next_due": checkin.next_due.isoformat(),
                "grace_deadline": grace_deadline.isoformat(),
            }
            try:
                delivery_id = self._notifier.send(contact.email, kind, payload)
            except UpstreamFailure as exc:
                undelivered += 1
                logger.warning(
                    "Welfare alert for testator %s not delivered: %s",
                    testator.id,
                    exc.detail,
                )
                AuditLog.record(
                    db,
                    testator.id,
                    AuditAction.NOTIFICATION_FAILED,
                    {
                        "kind": kind.value,
                        "recipient": contact.email,
                        "checkin_id": checkin.id,
                        "error": exc.detail,
                    },
                    at=now,
                )
                db.commit()
                continue

            db.add(
                TrustedContactAlert(
                    checkin_id=checkin.id,
                    testator_id=testator.id,
                    contact_email=address,
                    delivery_id=delivery_id,
                    sent_at=now,
                )
            )
            AuditLog.record(
                db,
                testator.id,
                AuditAction.NOTIFICATION_SENT,
                {"kind": kind.value, "recipient": contact.email, "checkin_id": checkin.id},
                delivery_id=delivery_id,
                at=now,
            )
            db.commit()
            alerted.add(address)
        return undelivered

    def _notify(
        self,
        db: Session,
        testator: Testator,
        address: str,
        kind: NotificationKind,
        payload: dict,
        now: datetime,
    ) -> str:
        """Send one notification. UpstreamFailure propagates to abort the step."""
        delivery_id = self._notifier.send(address, kind, payload)
        AuditLog.record(
            db,
            testator.id,
            AuditAction.NOTIFICATION_SENT,
            {"kind": kind.value, "recipient": address},
            delivery_id=delivery_id,
            at=now,
        )
        return delivery_id

    def _record_failure(
        self, db: Session, testator_id: str, exc: Exception, now: datetime
    ) -> None:
        try:
            AuditLog.record(
                db,
                testator_id,
                AuditAction.SWEEP_FAILED,
                {"error": str(exc), "type": type(exc).__name__},
                at=now,
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not record sweep failure for testator %s", testator_id)
