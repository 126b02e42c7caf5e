"""Tests for the verification request state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.errors import AlreadyReleased, Conflict
from app.models.audit import AuditAction
from app.models.checkin import CheckIn
from app.models.testator import PartyRole, Testator, WillParty
from app.models.verification import (
    UnlockCredential,
    VerificationRequest,
    VerificationStatus,
)
from app.services.audit import AuditLog
from app.services.notifier import NotificationKind
from app.services.verification import VerificationService, transition_request

from conftest import T0, ManualClock, RecordingNotifier


# ===========================================================================
# TestOpenRequest
# ===========================================================================


class TestOpenRequest:
    def test_one_credential_per_recipient(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        clock: ManualClock,
    ):
        request = verification.open_request(session, testator)
        creds = verification.credentials_for(session, request.id)
        assert {c.party_email for c in creds} == {
            "eleanor@example.com",
            "marcus@example.com",
            "priya@example.com",
            "tom@example.com",
        }
        assert all(c.expires_at == request.expires_at for c in creds)
        assert request.expires_at == clock.now() + timedelta(hours=72)

    def test_returns_existing_pending_request(
        self, session: Session, verification: VerificationService, testator: Testator
    ):
        first = verification.open_request(session, testator)
        second = verification.open_request(session, testator)
        assert first.id == second.id
        pending = session.exec(
            select(VerificationRequest).where(
                VerificationRequest.status == VerificationStatus.PENDING.value
            )
        ).all()
        assert len(pending) == 1

    def test_database_rejects_second_pending_request(
        self, session: Session, testator: Testator
    ):
        for _ in range(2):
            session.add(
                VerificationRequest(
                    testator_id=testator.id, expires_at=T0 + timedelta(hours=72)
                )
            )
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_lost_race_for_pending_slot_is_conflict(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        monkeypatch,
    ):
        first = verification.open_request(session, testator)
        # Another writer opened the request after this one looked.
        monkeypatch.setattr(verification, "get_active_request", lambda *a, **kw: None)
        with pytest.raises(Conflict):
            verification.open_request(session, testator)
        assert verification.credentials_for(session, first.id)

    def test_other_integrity_errors_not_reported_as_conflict(
        self, session: Session, verification: VerificationService, testator: Testator
    ):
        unsaved = CheckIn(testator_id=testator.id, next_due=T0)
        with pytest.raises(IntegrityError):
            verification.open_request(session, testator, checkin=unsaved)
        assert verification.list_requests(session, testator.id) == []

    def test_frozen_testator_rejected(
        self, session: Session, verification: VerificationService, testator: Testator
    ):
        testator.frozen = True
        session.add(testator)
        session.commit()
        with pytest.raises(AlreadyReleased):
            verification.open_request(session, testator)

    def test_recipients_are_snapshotted(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        notifier: RecordingNotifier,
    ):
        request = verification.open_request(session, testator)
        session.add(
            WillParty(
                testator_id=testator.id,
                name="Late Addition",
                email="late@example.com",
                role=PartyRole.BENEFICIARY.value,
            )
        )
        session.commit()
        creds = verification.credentials_for(session, request.id)
        assert "late@example.com" not in {c.party_email for c in creds}
        assert all(addr != "late@example.com" for addr, _, _ in notifier.sent)

    def test_notifications_never_carry_another_recipients_code(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        notifier: RecordingNotifier,
    ):
        verification.open_request(session, testator)
        opened = notifier.of_kind(NotificationKind.VERIFICATION_OPENED)
        codes = {addr: payload["unlock_code"] for addr, payload in opened}
        assert len(set(codes.values())) == 4
        for addr, payload in opened:
            others = payload["other_recipients"]
            assert addr not in {o["email"] for o in others}
            assert len(others) == 3
            for other in others:
                assert set(other) == {"name", "email", "role"}
            rendered = repr(payload)
            for other_addr, code in codes.items():
                if other_addr != addr:
                    assert code not in rendered

    def test_codes_stored_only_as_hashes(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        notifier: RecordingNotifier,
    ):
        request = verification.open_request(session, testator)
        code = notifier.last_to("eleanor@example.com", NotificationKind.VERIFICATION_OPENED)[
            "unlock_code"
        ]
        for cred in verification.credentials_for(session, request.id):
            assert code not in cred.code_hash
        for entry in AuditLog.trail(session, testator.id):
            assert code not in (entry.detail_json or "")

    def test_delivery_ids_audited(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
    ):
        verification.open_request(session, testator)
        sent = [
            e
            for e in AuditLog.trail(session, testator.id)
            if e.action == AuditAction.NOTIFICATION_SENT.value
        ]
        assert len(sent) == 4
        assert all(e.delivery_id for e in sent)

    def test_failed_delivery_leaves_credential_unnotified(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        notifier: RecordingNotifier,
    ):
        notifier.fail_for.add("marcus@example.com")
        request = verification.open_request(session, testator)
        marcus = session.exec(
            select(UnlockCredential).where(
                UnlockCredential.request_id == request.id,
                UnlockCredential.party_email == "marcus@example.com",
            )
        ).one()
        assert marcus.notified_at is None
        actions = [e.action for e in AuditLog.trail(session, testator.id)]
        assert AuditAction.NOTIFICATION_FAILED.value in actions


# ===========================================================================
# TestLifecycle
# ===========================================================================


class TestLifecycle:
    def test_lazy_expiry(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        clock: ManualClock,
    ):
        request = verification.open_request(session, testator)
        clock.advance(hours=72)
        assert verification.get_active_request(session, testator.id) is not None
        clock.advance(seconds=1)
        assert verification.get_active_request(session, testator.id) is None
        session.refresh(request)
        assert request.status == VerificationStatus.EXPIRED.value
        assert request.close_reason == "ttl_elapsed"

    def test_new_request_after_expiry(
        self,
        session: Session,
        verification: VerificationService,
        testator: Testator,
        clock: ManualClock,
    ):
        first = verification.open_request(session, testator)
        clock.advance(hours=73)
        second = verification.open_request(session, testator)
        assert second.id != first.id
        assert [r.id for r in verification.list_requests(session, testator.id)] == [
            second.id,
            first.id,
        ]

    def test_terminal_states_do_not_transition(
        self, session: Session, verification: VerificationService, testator: Testator
    ):
        request = verification.open_request(session, testator)
        assert transition_request(
            session, request, VerificationStatus.CANCELLED, T0, reason="test"
        )
        session.commit()
        assert not transition_request(
            session, request, VerificationStatus.COMPLETED, T0, reason="test"
        )
        assert request.status == VerificationStatus.CANCELLED.value

    def test_transition_table(self):
        assert VerificationStatus.PENDING.can_transition_to(VerificationStatus.EXPIRED)
        assert not VerificationStatus.PENDING.can_transition_to(VerificationStatus.PENDING)
        for terminal in (
            VerificationStatus.COMPLETED,
            VerificationStatus.EXPIRED,
            VerificationStatus.CANCELLED,
        ):
            assert not terminal.can_transition_to(VerificationStatus.PENDING)
