"""Tests for the CheckInTracker: liveness confirmations and settings."""

from __future__ import annotations

from datetime import timedelta, timezone

import pytest
from sqlmodel import Session, select

from app.errors import NotFound
from app.models.audit import AuditAction
from app.models.checkin import CheckIn, CheckInStatus
from app.models.testator import Testator, TestatorSettingsUpdate
from app.models.verification import VerificationStatus
from app.services.audit import AuditLog
from app.services.checkin import CheckInTracker, escalation_deadlines

from conftest import T0, ManualClock


# ===========================================================================
# TestEnroll
# ===========================================================================


class TestEnroll:
    def test_seeds_day_zero_checkin(
        self, session: Session, tracker: CheckInTracker, testator: Testator
    ):
        current = tracker.current_status(session, testator.id)
        assert current is not None
        assert current.checked_in_at == T0
        assert current.next_due == T0 + timedelta(days=7)
        assert current.status == CheckInStatus.ALIVE.value

    def test_email_normalized(self, testator: Testator):
        assert testator.email == "henry.vance@example.com"

    def test_defaults_from_settings(self, session: Session, tracker: CheckInTracker):
        t = tracker.enroll_testator(session, email="a@example.com", full_name="A")
        assert t.checkin_interval_days == 7
        assert t.grace_period_days == 7

    def test_audited(self, session: Session, testator: Testator):
        actions = [e.action for e in AuditLog.trail(session, testator.id)]
        assert AuditAction.TESTATOR_ENROLLED.value in actions
        assert AuditAction.CHECKIN_RECORDED.value in actions


# ===========================================================================
# TestRecordCheckIn
# ===========================================================================


class TestRecordCheckIn:
    def test_new_checkin_supersedes_previous(
        self,
        session: Session,
        tracker: CheckInTracker,
        testator: Testator,
        clock: ManualClock,
    ):
        clock.advance(days=3)
        checkin = tracker.record_check_in(session, testator.id)
        assert checkin.next_due == T0 + timedelta(days=10)
        assert tracker.current_status(session, testator.id).id == checkin.id
        assert len(tracker.history(session, testator.id)) == 2

    def test_unknown_testator(self, session: Session, tracker: CheckInTracker):
        with pytest.raises(NotFound):
            tracker.record_check_in(session, "missing")

    def test_same_tick_is_idempotent(
        self,
        session: Session,
        tracker: CheckInTracker,
        testator: Testator,
        clock: ManualClock,
    ):
        clock.advance(days=1)
        first = tracker.record_check_in(session, testator.id)
        second = tracker.record_check_in(session, testator.id)
        assert first.id == second.id
        rows = session.exec(select(CheckIn).where(CheckIn.testator_id == testator.id)).all()
        assert len(rows) == 2  # enrollment + one

    def test_explicit_aware_timestamp_stored_as_naive_utc(
        self, session: Session, tracker: CheckInTracker, testator: Testator
    ):
        at = (T0 + timedelta(days=2)).replace(tzinfo=timezone.utc)
        checkin = tracker.record_check_in(session, testator.id, at=at)
        assert checkin.checked_in_at.tzinfo is None
        assert checkin.checked_in_at == T0 + timedelta(days=2)

    def test_cancels_pending_verification(
        self,
        session: Session,
        tracker: CheckInTracker,
        testator: Testator,
        triggered,
        clock: ManualClock,
    ):
        clock.advance(hours=1)
        checkin = tracker.record_check_in(session, testator.id)
        session.refresh(triggered)
        assert triggered.status == VerificationStatus.CANCELLED.value
        assert triggered.close_reason == "testator_checked_in"
        assert checkin.status == CheckInStatus.ALIVE.value
        summary = tracker.status_summary(session, testator.id)
        assert summary.active_request_id is None
        assert summary.status is CheckInStatus.ALIVE


# ===========================================================================
# TestAdvance
# ===========================================================================


class TestAdvance:
    def test_only_forward(
        self, session: Session, tracker: CheckInTracker, testator: Testator
    ):
        checkin = tracker.current_status(session, testator.id)
        assert tracker.advance(session, checkin, CheckInStatus.PENDING, T0)
        session.commit()
        with pytest.raises(ValueError):
            tracker.advance(session, checkin, CheckInStatus.ALIVE, T0)
        with pytest.raises(ValueError):
            tracker.advance(session, checkin, CheckInStatus.PENDING, T0)

    def test_loser_of_concurrent_advance_gets_false(
        self, session: Session, tracker: CheckInTracker, testator: Testator
    ):
        checkin = tracker.current_status(session, testator.id)
        stale = CheckIn(
            id=checkin.id,
            testator_id=checkin.testator_id,
            checked_in_at=checkin.checked_in_at,
            next_due=checkin.next_due,
            status=CheckInStatus.ALIVE.value,
        )
        assert tracker.advance(session, checkin, CheckInStatus.PENDING, T0)
        session.commit()
        # A second sweep still holding the old "alive" snapshot loses.
        assert tracker.advance(session, stale, CheckInStatus.PENDING, T0) is False

    def test_ranks_are_monotonic(self):
        order = list(CheckInStatus)
        assert [s.rank for s in order] == sorted(s.rank for s in order)
        assert CheckInStatus.ALIVE.can_advance_to(CheckInStatus.VERIFICATION_TRIGGERED)
        assert not CheckInStatus.VERIFICATION_TRIGGERED.can_advance_to(
            CheckInStatus.PENDING
        )


# ===========================================================================
# TestStatusAndSettings
# ===========================================================================


class TestStatusAndSettings:
    def test_summary_deadlines(
        self,
        session: Session,
        tracker: CheckInTracker,
        testator: Testator,
        clock: ManualClock,
    ):
        clock.advance(days=8)
        summary = tracker.status_summary(session, testator.id)
        assert summary.next_due == T0 + timedelta(days=7)
        assert summary.grace_deadline == T0 + timedelta(days=14)
        assert summary.is_overdue is True
        assert summary.frozen is False

    def test_deadlines_halfway_through_grace(
        self, session: Session, tracker: CheckInTracker, testator: Testator
    ):
        deadlines = escalation_deadlines(
            tracker.current_status(session, testator.id), testator
        )
        assert deadlines.contacts_at == T0 + timedelta(days=10, hours=12)

    def test_update_settings(
        self,
        session: Session,
        tracker: CheckInTracker,
        testator: Testator,
        clock: ManualClock,
    ):
        clock.advance(minutes=5)
        updated = tracker.update_settings(
            session,
            testator.id,
            TestatorSettingsUpdate(checkin_interval_days=30, notify_by_email=False),
        )
        assert updated.checkin_interval_days == 30
        assert updated.notify_by_email is False
        assert updated.grace_period_days == 7
        entry = AuditLog.trail(session, testator.id, limit=1)[0]
        assert entry.action == AuditAction.SETTINGS_UPDATED.value
        assert entry.details == {"checkin_interval_days": 30, "notify_by_email": False}
