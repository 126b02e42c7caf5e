"""Multi-party unlock chain.

identify (unlock code) -> one-time code by email -> name other recipients
-> finalize. Each step is a separate HTTP call, so every step reloads the
session and re-checks the request and the testator before acting; the
final step re-checks everything once more inside the release transaction.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.config import Settings
from app.errors import (
    AlreadyReleased,
    Conflict,
    Expired,
    InvalidCredential,
    NotFound,
    ProtocolError,
    UpstreamFailure,
)
from app.models.audit import AuditAction
from app.models.testator import Testator
from app.models.verification import (
    ReleasePackage,
    SessionStage,
    UnlockCredential,
    UnlockOtp,
    UnlockSession,
    VerificationRequest,
    VerificationStatus,
)
from app.services.audit import AuditLog
from app.services.codes import CodeIssuer
from app.services.matching import NameMatcher, match_contacts, substring_name_match
from app.services.notifier import NotificationKind, Notifier
from app.services.verification import VerificationService, transition_request
from app.services.will_store import SealedWill, WillStore
from app.utils.clock import Clock
from app.utils.crypto import sha256_hash

logger = logging.getLogger(__name__)

NO_LONGER_ACTIVE = "This verification is no longer active."


class UnlockService:
    def __init__(
        self,
        settings: Settings,
        verification: VerificationService,
        notifier: Notifier,
        will_store: WillStore,
        clock: Clock,
        matcher: NameMatcher = substring_name_match,
    ) -> None:
        self._settings = settings
        self._verification = verification
        self._notifier = notifier
        self._will_store = will_store
        self._clock = clock
        self._matcher = matcher
        self._codes = CodeIssuer(settings)

    # --- Step 1: identify ---

    def request_unlock(
        self,
        db: Session,
        name: str,
        email: str,
        testator_email: str,
        unlock_code: str,
        now: datetime | None = None,
    ) -> tuple[UnlockSession, datetime]:
        """Start an unlock session for a recipient and send their first OTP.

        Returns the session and the OTP expiry.
        """
        now = now or self._clock.now()
        testator = db.exec(
            select(Testator).where(Testator.email == testator_email.strip().lower())
        ).first()
        if testator is None:
            logger.info("Unlock identify for unknown testator address")
            raise NotFound("No testator with that email")

        credential = self._verification.find_credential(db, testator.id, name, email)
        if credential is None:
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {"reason": "unknown_party"},
                NotFound("Claimed party is not a recipient"),
                now,
            )
        audit = {"credential_id": credential.id, "request_id": credential.request_id}

        if credential.used:
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {**audit, "reason": "credential_used"},
                InvalidCredential("Unlock credential already used"),
                now,
            )
        if testator.frozen:
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {**audit, "reason": "already_released"},
                AlreadyReleased(f"Testator {testator.id} is frozen"),
                now,
            )

        active = self._verification.get_active_request(db, testator.id, now)
        if active is None or active.id != credential.request_id:
            request = db.get(VerificationRequest, credential.request_id)
            if request is not None and request.status == VerificationStatus.EXPIRED.value:
                error: ProtocolError = Expired("Verification request expired")
                reason = "request_expired"
            else:
                error = NotFound("No active verification request for this credential")
                reason = "no_active_request"
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {**audit, "reason": reason},
                error,
                now,
            )

        if not self._codes.matches(unlock_code, credential.code_hash):
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {**audit, "reason": "wrong_code"},
                InvalidCredential("Unlock code does not match"),
                now,
            )
        if now > credential.expires_at:
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_IDENTIFY_FAILED,
                {**audit, "reason": "credential_expired"},
                Expired("Unlock credential expired"),
                now,
            )

        # One live session per credential
        stale_sessions = db.exec(
            select(UnlockSession).where(
                UnlockSession.credential_id == credential.id,
                UnlockSession.stage.in_(  # type: ignore[union-attr]
                    [
                        SessionStage.IDENTIFIED.value,
                        SessionStage.OTP_VERIFIED.value,
                        SessionStage.CONTACTS_VERIFIED.value,
                    ]
                ),
            )
        ).all()
        for stale in stale_sessions:
            self._set_stage(stale, SessionStage.ABORTED, now)
            db.add(stale)

        session = UnlockSession(
            request_id=active.id,
            credential_id=credential.id,
            testator_id=testator.id,
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        AuditLog.record(
            db,
            testator.id,
            AuditAction.UNLOCK_SESSION_STARTED,
            {**audit, "session_id": session.id, "party_role": credential.party_role},
            at=now,
        )
        db.commit()
        db.refresh(session)
        logger.info("Unlock session %s started for request %s", session.id, active.id)

        otp_expires_at = self.issue_otp(db, session.id, now)
        db.refresh(session)
        return session, otp_expires_at

    # --- Step 2: one-time code ---

    def issue_otp(self, db: Session, session_id: str, now: datetime | None = None) -> datetime:
        """Send a fresh OTP to the recipient's snapshotted address.

        Any earlier OTP for the credential stops working, and a session that
        had progressed falls back to ``identified``. Returns the OTP expiry.
        """
        now = now or self._clock.now()
        session = self._load_session(db, session_id)
        testator, request = self._assert_releasable(db, session, now)
        credential = self._credential(db, session)

        if session.stage != SessionStage.IDENTIFIED.value:
            self._reset_to_identified(session, now)
            db.add(session)

        db.execute(delete(UnlockOtp).where(UnlockOtp.credential_id == credential.id))
        code, code_hash, expires_at = self._codes.new_otp(now)
        otp = UnlockOtp(
            credential_id=credential.id,
            session_id=session.id,
            code_hash=code_hash,
            expires_at=expires_at,
            created_at=now,
        )
        db.add(otp)
        db.commit()

        payload = {
            "testator_name": testator.full_name,
            "otp": code,
            "expires_at": expires_at.isoformat(),
            "ttl_minutes": self._settings.otp_ttl_minutes,
        }
        try:
            delivery_id = self._notifier.send(
                credential.party_email, NotificationKind.UNLOCK_OTP, payload
            )
        except UpstreamFailure as exc:
            AuditLog.record(
                db,
                testator.id,
                AuditAction.NOTIFICATION_FAILED,
                {
                    "kind": NotificationKind.UNLOCK_OTP.value,
                    "session_id": session.id,
                    "error": exc.detail,
                },
                at=now,
            )
            db.commit()
            raise

        AuditLog.record(
            db,
            testator.id,
            AuditAction.OTP_ISSUED,
            {"session_id": session.id, "request_id": request.id, "expires_at": expires_at},
            delivery_id=delivery_id,
            at=now,
        )
        db.commit()
        return expires_at

    def verify_otp(
        self, db: Session, session_id: str, code: str, now: datetime | None = None
    ) -> UnlockSession:
        now = now or self._clock.now()
        session = self._load_session(db, session_id)
        testator, _ = self._assert_releasable(db, session, now)
        audit = {"session_id": session.id}

        if session.stage != SessionStage.IDENTIFIED.value:
            raise InvalidCredential(f"Session {session.id} is not awaiting an OTP")

        otp = db.exec(
            select(UnlockOtp).where(
                UnlockOtp.session_id == session.id,
                UnlockOtp.used == False,  # noqa: E712
            )
        ).first()
        if otp is None:
            raise self._failure(
                db,
                testator.id,
                AuditAction.OTP_FAILED,
                {**audit, "reason": "no_live_otp"},
                InvalidCredential("No unused OTP for session"),
                now,
            )

        if not self._codes.matches(code, otp.code_hash):
            otp.attempts += 1
            if otp.attempts >= self._settings.max_unlock_attempts:
                otp.used = True
            db.add(otp)
            raise self._failure(
                db,
                testator.id,
                AuditAction.OTP_FAILED,
                {**audit, "reason": "wrong_code", "attempts": otp.attempts},
                InvalidCredential("OTP does not match"),
                now,
            )
        if now > otp.expires_at:
            raise self._failure(
                db,
                testator.id,
                AuditAction.OTP_FAILED,
                {**audit, "reason": "expired"},
                Expired("OTP expired"),
                now,
            )

        result = db.execute(
            update(UnlockOtp)
            .where(UnlockOtp.id == otp.id, UnlockOtp.used == False)  # noqa: E712
            .values(used=True)
        )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidCredential("OTP was consumed concurrently")

        self._set_stage(session, SessionStage.OTP_VERIFIED, now)
        session.otp_verified_at = now
        db.add(session)
        AuditLog.record(db, testator.id, AuditAction.OTP_VERIFIED, audit, at=now)
        db.commit()
        db.refresh(session)
        return session

    # --- Step 3: knowledge of the other recipients ---

    def verify_contacts(
        self, db: Session, session_id: str, names: list[str], now: datetime | None = None
    ) -> UnlockSession:
        now = now or self._clock.now()
        session = self._load_session(db, session_id)
        testator, request = self._assert_releasable(db, session, now)

        if session.stage != SessionStage.OTP_VERIFIED.value:
            raise InvalidCredential(f"Session {session.id} is not awaiting contact names")
        self._require_fresh_otp(db, session, testator.id, now)

        claimed = [n.strip() for n in names if n and n.strip()]
        known = [
            c.party_name
            for c in self._verification.credentials_for(db, request.id)
            if c.id != session.credential_id
        ]
        pairs = match_contacts(claimed, known, self._matcher)
        audit = {
            "session_id": session.id,
            "claimed": claimed,
            "matched": [k for _, k in pairs],
        }

        if (
            len(claimed) < self._settings.min_contact_names
            or len(pairs) < self._settings.min_contact_matches
        ):
            session.failed_attempts += 1
            if session.failed_attempts >= self._settings.max_unlock_attempts:
                self._set_stage(session, SessionStage.ABORTED, now)
            db.add(session)
            raise self._failure(
                db,
                testator.id,
                AuditAction.CONTACTS_FAILED,
                {**audit, "failed_attempts": session.failed_attempts},
                InvalidCredential(
                    f"{len(pairs)} of {len(claimed)} names matched other recipients"
                ),
                now,
            )

        self._set_stage(session, SessionStage.CONTACTS_VERIFIED, now)
        session.contacts_verified_at = now
        db.add(session)
        AuditLog.record(db, testator.id, AuditAction.CONTACTS_VERIFIED, audit, at=now)
        db.commit()
        db.refresh(session)
        return session

    # --- Step 4: release ---

    def finalize(
        self, db: Session, session_id: str, now: datetime | None = None
    ) -> ReleasePackage:
        """Release the will to this session's recipient and freeze the testator.

        A single fully verified recipient releases for everyone. Repeating
        the call on the releasing session returns the same package.
        """
        now = now or self._clock.now()
        session = self._load_session(db, session_id, allow_completed=True)
        if session.stage == SessionStage.COMPLETED.value:
            return self.get_release_package(db, session.id)

        testator, request = self._assert_releasable(db, session, now)
        if session.stage != SessionStage.CONTACTS_VERIFIED.value:
            raise InvalidCredential(f"Session {session.id} has not verified contacts")
        self._require_fresh_otp(db, session, testator.id, now)

        credential = self._credential(db, session)
        sealed = self._will_store.get_sealed_content(testator.id)
        package = self._commit_release(db, session, credential, testator, request, sealed, now)
        self._announce_release(db, testator, request, credential, now)
        return package

    def get_release_package(self, db: Session, session_id: str) -> ReleasePackage:
        session = self._load_session(db, session_id, allow_completed=True)
        if session.stage != SessionStage.COMPLETED.value:
            raise NotFound(f"Session {session.id} did not release a will")
        package = db.exec(
            select(ReleasePackage).where(
                ReleasePackage.request_id == session.request_id,
                ReleasePackage.released_to_credential_id == session.credential_id,
            )
        ).first()
        if package is None:
            raise NotFound(f"No release package for request {session.request_id}")
        return package

    def _commit_release(
        self,
        db: Session,
        session: UnlockSession,
        credential: UnlockCredential,
        testator: Testator,
        request: VerificationRequest,
        sealed: SealedWill,
        now: datetime,
    ) -> ReleasePackage:
        """Complete the request, freeze the testator and burn the credential atomically."""
        completed = transition_request(
            db, request, VerificationStatus.COMPLETED, now, reason="will_released"
        )
        frozen = db.execute(
            update(Testator)
            .where(Testator.id == testator.id, Testator.frozen == False)  # noqa: E712
            .values(frozen=True, frozen_at=now, updated_at=now)
        ).rowcount == 1
        burned = db.execute(
            update(UnlockCredential)
            .where(UnlockCredential.id == credential.id, UnlockCredential.used == False)  # noqa: E712
            .values(used=True, used_at=now)
        ).rowcount == 1

        if not (completed and frozen and burned):
            db.rollback()
            detail = {
                "session_id": session.id,
                "request_completed": completed,
                "testator_frozen": frozen,
                "credential_burned": burned,
            }
            raise self._failure(
                db,
                testator.id,
                AuditAction.UNLOCK_FINALIZE_FAILED,
                detail,
                Conflict(f"Release of request {request.id} lost a concurrent update"),
                now,
            )

        manifest = {
            "testator_id": testator.id,
            "testator_name": testator.full_name,
            "request_id": request.id,
            "released_to": {
                "name": credential.party_name,
                "email": credential.party_email,
                "role": credential.party_role,
            },
            "released_at": now.isoformat(),
            "attachments": list(sealed.attachments),
        }
        package = ReleasePackage(
            request_id=request.id,
            testator_id=testator.id,
            released_to_credential_id=credential.id,
            content=sealed.content,
            content_sha256=sha256_hash(sealed.content),
            media_type=sealed.media_type,
            manifest_json=json.dumps(manifest, sort_keys=True),
            created_at=now,
        )
        db.add(package)
        self._set_stage(session, SessionStage.COMPLETED, now)
        db.add(session)
        AuditLog.record(
            db,
            testator.id,
            AuditAction.WILL_RELEASED,
            {
                "request_id": request.id,
                "session_id": session.id,
                "credential_id": credential.id,
                "party_role": credential.party_role,
                "content_sha256": package.content_sha256,
            },
            at=now,
        )
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise Conflict(f"Release package already exists for {request.id}") from exc
        db.refresh(package)
        logger.info(
            "Will for testator %s released via request %s", testator.id, request.id
        )
        return package

    def _announce_release(
        self,
        db: Session,
        testator: Testator,
        request: VerificationRequest,
        released_to: UnlockCredential,
        now: datetime,
    ) -> None:
        payload = {
            "testator_name": testator.full_name,
            "released_to": released_to.party_name,
            "released_at": now.isoformat(),
        }
        for credential in self._verification.credentials_for(db, request.id):
            try:
                delivery_id = self._notifier.send(
                    credential.party_email, NotificationKind.WILL_RELEASED, payload
                )
            except UpstreamFailure as exc:
                logger.warning(
                    "Release notice to %s for request %s failed: %s",
                    credential.party_role,
                    request.id,
                    exc.detail,
                )
                AuditLog.record(
                    db,
                    testator.id,
                    AuditAction.NOTIFICATION_FAILED,
                    {
                        "kind": NotificationKind.WILL_RELEASED.value,
                        "credential_id": credential.id,
                        "error": exc.detail,
                    },
                    at=now,
                )
            else:
                AuditLog.record(
                    db,
                    testator.id,
                    AuditAction.NOTIFICATION_SENT,
                    {
                        "kind": NotificationKind.WILL_RELEASED.value,
                        "credential_id": credential.id,
                    },
                    delivery_id=delivery_id,
                    at=now,
                )
            db.commit()

    # --- Guards ---

    def _assert_releasable(
        self, db: Session, session: UnlockSession, now: datetime
    ) -> tuple[Testator, VerificationRequest]:
        testator = db.get(Testator, session.testator_id)
        request = db.get(VerificationRequest, session.request_id)
        if testator is None or request is None:
            raise NotFound(f"Session {session.id} refers to missing records")
        if testator.frozen:
            raise AlreadyReleased(f"Testator {testator.id} is frozen")

        self._verification.expire_if_due(db, request, now)
        status = VerificationStatus(request.status)
        if status is VerificationStatus.CANCELLED:
            raise Conflict(
                f"Request {request.id} was cancelled", public_message=NO_LONGER_ACTIVE
            )
        if status is VerificationStatus.COMPLETED:
            raise AlreadyReleased(f"Request {request.id} already completed")
        if status is VerificationStatus.EXPIRED:
            raise Expired(f"Request {request.id} expired")
        return testator, request

    def _require_fresh_otp(
        self, db: Session, session: UnlockSession, testator_id: str, now: datetime
    ) -> None:
        """OTP verification lapses after the OTP window; a new OTP is then required."""
        window = timedelta(minutes=self._settings.otp_ttl_minutes)
        if session.otp_verified_at is not None and now <= session.otp_verified_at + window:
            return
        self._reset_to_identified(session, now)
        db.add(session)
        raise self._failure(
            db,
            testator_id,
            AuditAction.OTP_FAILED,
            {"session_id": session.id, "reason": "verification_stale"},
            Expired("OTP verification is stale, a new OTP is required"),
            now,
        )

    def _load_session(
        self, db: Session, session_id: str, allow_completed: bool = False
    ) -> UnlockSession:
        session = db.get(UnlockSession, session_id)
        if session is None:
            raise NotFound(f"Unknown unlock session {session_id}")
        if session.stage == SessionStage.ABORTED.value:
            raise InvalidCredential(f"Unlock session {session_id} was aborted")
        if session.stage == SessionStage.COMPLETED.value and not allow_completed:
            raise AlreadyReleased(f"Unlock session {session_id} already completed")
        return session

    def _credential(self, db: Session, session: UnlockSession) -> UnlockCredential:
        credential = db.get(UnlockCredential, session.credential_id)
        if credential is None:
            raise NotFound(f"Unknown credential {session.credential_id}")
        if credential.used:
            raise InvalidCredential(f"Credential {credential.id} already used")
        return credential

    @staticmethod
    def _set_stage(session: UnlockSession, target: SessionStage, now: datetime) -> None:
        current = SessionStage(session.stage)
        if not current.can_transition_to(target):
            raise ValueError(
                f"Illegal unlock session transition {current.value} -> {target.value}"
            )
        session.stage = target.value
        session.updated_at = now

    def _reset_to_identified(self, session: UnlockSession, now: datetime) -> None:
        if session.stage != SessionStage.IDENTIFIED.value:
            self._set_stage(session, SessionStage.IDENTIFIED, now)
        session.otp_verified_at = None
        session.contacts_verified_at = None

    @staticmethod
    def _failure(
        db: Session,
        testator_id: str,
        action: AuditAction,
        details: dict,
        error: ProtocolError,
        now: datetime,
    ) -> ProtocolError:
        """Commit the audit entry (and any pending counters) for a failed step."""
        AuditLog.record(db, testator_id, action, {**details, "error": error.detail}, at=now)
        db.commit()
        logger.info("%s for testator %s: %s", action.value, testator_id, error.detail)
        return error

