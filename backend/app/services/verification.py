"""Verification request state machine.

One request is one escalation episode for one testator:
``pending -> completed | expired | cancelled``. All status changes go
through ``transition_request`` so legality is checked in one place and
every change is a conditional update that a concurrent writer can lose.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.config import Settings
from app.errors import AlreadyReleased, Conflict, UpstreamFailure
from app.models.audit import AuditAction
from app.models.checkin import CheckIn
from app.models.testator import Testator
from app.models.verification import (
    UnlockCredential,
    VerificationRequest,
    VerificationStatus,
)
from app.services.audit import AuditLog
from app.services.codes import CodeIssuer
from app.services.matching import exact_name_match
from app.services.notifier import NotificationKind, Notifier
from app.services.registry import ContactRegistry
from app.utils.clock import Clock

logger = logging.getLogger(__name__)

_TRANSITION_ACTIONS: dict[VerificationStatus, AuditAction] = {
    VerificationStatus.COMPLETED: AuditAction.VERIFICATION_COMPLETED,
    VerificationStatus.EXPIRED: AuditAction.VERIFICATION_EXPIRED,
    VerificationStatus.CANCELLED: AuditAction.VERIFICATION_CANCELLED,
}


def transition_request(
    db: Session,
    request: VerificationRequest,
    target: VerificationStatus,
    now: datetime,
    reason: str | None = None,
) -> bool:
    """Close a pending request. Returns False if it was no longer pending.

    Does not commit; the caller commits together with whatever caused
    the transition.
    """
    current = VerificationStatus(request.status)
    if not current.can_transition_to(target):
        return False

    result = db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.id == request.id,
            VerificationRequest.status == VerificationStatus.PENDING.value,
        )
        .values(status=target.value, closed_at=now, close_reason=reason)
    )
    if result.rowcount != 1:
        db.refresh(request)
        return False

    db.refresh(request)
    AuditLog.record(
        db,
        request.testator_id,
        _TRANSITION_ACTIONS[target],
        {"request_id": request.id, "reason": reason},
        at=now,
    )
    logger.info("Verification request %s -> %s (%s)", request.id, target.value, reason)
    return True


class VerificationService:
    """Opens verification requests and hands out per-recipient unlock codes."""

    def __init__(
        self,
        settings: Settings,
        registry: ContactRegistry,
        notifier: Notifier,
        clock: Clock,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._notifier = notifier
        self._clock = clock
        self._codes = CodeIssuer(settings)

    @property
    def registry(self) -> ContactRegistry:
        return self._registry

    def open_request(
        self,
        db: Session,
        testator: Testator,
        now: datetime | None = None,
        checkin: CheckIn | None = None,
    ) -> VerificationRequest:
        """Open a request for *testator*, or return the one already pending.

        Recipients are snapshotted from the registry at this instant. The
        request and its credentials are committed before any notification
        goes out; recipients whose notification fails are retried by
        ``redeliver_credentials`` on a later sweep.
        """
        now = now or self._clock.now()
        if testator.frozen:
            raise AlreadyReleased(f"Testator {testator.id} is frozen")

        existing = self.get_active_request(db, testator.id, now)
        if existing is not None:
            return existing

        snapshot = self._registry.list_parties(db, testator.id)
        request = VerificationRequest(
            testator_id=testator.id,
            checkin_id=checkin.id if checkin is not None else None,
            initiated_at=now,
            expires_at=self._codes.request_expiry(now),
        )
        db.add(request)
        try:
            # Credentials reference the request row, so it goes in first.
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            if self._pending_request_id(db, testator.id) is None:
                raise
            raise Conflict(
                f"Testator {testator.id} already has a pending verification request"
            ) from exc

        issued: list[tuple[UnlockCredential, str]] = []
        for party in snapshot.all():
            code, code_hash = self._codes.new_unlock_code()
            credential = UnlockCredential(
                request_id=request.id,
                testator_id=testator.id,
                party_id=party.party_id,
                party_name=party.name,
                party_email=party.email,
                party_role=party.role.value,
                code_hash=code_hash,
                expires_at=request.expires_at,
                created_at=now,
            )
            db.add(credential)
            AuditLog.record(
                db,
                testator.id,
                AuditAction.CREDENTIAL_ISSUED,
                {
                    "request_id": request.id,
                    "credential_id": credential.id,
                    "party_id": party.party_id,
                    "party_role": party.role.value,
                },
                at=now,
            )
            issued.append((credential, code))

        AuditLog.record(
            db,
            testator.id,
            AuditAction.VERIFICATION_TRIGGERED,
            {
                "request_id": request.id,
                "expires_at": request.expires_at,
                "executor_count": len(snapshot.executors),
                "beneficiary_count": len(snapshot.beneficiaries),
                "trusted_contact_count": len(snapshot.trusted_contacts),
            },
            at=now,
        )
        db.commit()
        db.refresh(request)

        if not issued:
            logger.warning(
                "Verification request %s opened with no recipients for testator %s",
                request.id,
                testator.id,
            )
        self._dispatch_credentials(db, testator, request, issued, now)
        return request

    def get_active_request(
        self, db: Session, testator_id: str, now: datetime | None = None
    ) -> VerificationRequest | None:
        """The testator's pending request, expiring it first if its time is up."""
        now = now or self._clock.now()
        request = db.exec(
            select(VerificationRequest).where(
                VerificationRequest.testator_id == testator_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
            )
        ).first()
        if request is None:
            return None
        if self.expire_if_due(db, request, now):
            return None
        return request

    def expire_if_due(
        self, db: Session, request: VerificationRequest, now: datetime | None = None
    ) -> bool:
        """Lazily expire a pending request. Commits when it expires it."""
        now = now or self._clock.now()
        if request.status != VerificationStatus.PENDING.value or now <= request.expires_at:
            return False
        if transition_request(db, request, VerificationStatus.EXPIRED, now, reason="ttl_elapsed"):
            db.commit()
        return request.status == VerificationStatus.EXPIRED.value

    @staticmethod
    def _pending_request_id(db: Session, testator_id: str) -> str | None:
        return db.exec(
            select(VerificationRequest.id).where(
                VerificationRequest.testator_id == testator_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
            )
        ).first()

    def list_requests(self, db: Session, testator_id: str) -> list[VerificationRequest]:
        return list(
            db.exec(
                select(VerificationRequest)
                .where(VerificationRequest.testator_id == testator_id)
                .order_by(VerificationRequest.initiated_at.desc())  # type: ignore[union-attr]
            ).all()
        )

    def credentials_for(self, db: Session, request_id: str) -> list[UnlockCredential]:
        return list(
            db.exec(
                select(UnlockCredential)
                .where(UnlockCredential.request_id == request_id)
                .order_by(UnlockCredential.created_at)  # type: ignore[arg-type]
            ).all()
        )

    def find_credential(
        self, db: Session, testator_id: str, name: str, email: str
    ) -> UnlockCredential | None:
        """Newest credential issued to this name and address for the testator."""
        candidates = db.exec(
            select(UnlockCredential)
            .where(
                UnlockCredential.testator_id == testator_id,
                func.lower(UnlockCredential.party_email) == email.strip().lower(),
            )
            .order_by(UnlockCredential.created_at.desc())  # type: ignore[union-attr]
        ).all()
        for credential in candidates:
            if exact_name_match(name, credential.party_name):
                return credential
        return None

    def redeliver_credentials(
        self, db: Session, testator: Testator, request: VerificationRequest, now: datetime
    ) -> int:
        """Re-send codes to recipients never successfully notified.

        Only hashes are stored, so each retry rotates the recipient's code.
        Returns the number of recipients retried.
        """
        undelivered = [
            c
            for c in self.credentials_for(db, request.id)
            if c.notified_at is None and not c.used
        ]
        if not undelivered:
            return 0

        issued: list[tuple[UnlockCredential, str]] = []
        for credential in undelivered:
            code, code_hash = self._codes.new_unlock_code()
            credential.code_hash = code_hash
            db.add(credential)
            issued.append((credential, code))
        db.commit()

        self._dispatch_credentials(db, testator, request, issued, now)
        return len(issued)

    def _dispatch_credentials(
        self,
        db: Session,
        testator: Testator,
        request: VerificationRequest,
        issued: list[tuple[UnlockCredential, str]],
        now: datetime,
    ) -> None:
        roster = self.credentials_for(db, request.id)
        for credential, code in issued:
            others = [
                {"name": c.party_name, "email": c.party_email, "role": c.party_role}
                for c in roster
                if c.id != credential.id
            ]
            payload = {
                "testator_name": testator.full_name,
                "unlock_code": code,
                "party_role": credential.party_role,
                "expires_at": request.expires_at.isoformat(),
                "other_recipients": others,
                "unlock_url": f"{self._settings.frontend_url}/unlock",
            }
            try:
                delivery_id = self._notifier.send(
                    credential.party_email, NotificationKind.VERIFICATION_OPENED, payload
                )
            except UpstreamFailure as exc:
                logger.warning(
                    "Could not notify %s for verification request %s: %s",
                    credential.party_role,
                    request.id,
                    exc.detail,
                )
                AuditLog.record(
                    db,
                    testator.id,
                    AuditAction.NOTIFICATION_FAILED,
                    {
                        "kind": NotificationKind.VERIFICATION_OPENED.value,
                        "request_id": request.id,
                        "credential_id": credential.id,
                        "error": exc.detail,
                    },
                    at=now,
                )
                db.commit()
                continue

            credential.notified_at = now
            db.add(credential)
            AuditLog.record(
                db,
                testator.id,
                AuditAction.NOTIFICATION_SENT,
                {
                    "kind": NotificationKind.VERIFICATION_OPENED.value,
                    "request_id": request.id,
                    "credential_id": credential.id,
                    "party_role": credential.party_role,
                },
                delivery_id=delivery_id,
                at=now,
            )
            db.commit()
