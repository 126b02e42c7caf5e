"""Recipients answering "is the testator alive?" while a request is pending.

A recipient authenticates with the same name, address and unlock code as
the unlock chain. ``alive`` cancels the request and records a check-in on
the testator's behalf; ``deceased`` is logged against the request and
leaves release to the unlock chain.
"""

from __future__ import annotations

import logging
from datetime import datetime

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
)
from app.models.audit import AuditAction
from app.models.testator import Testator
from app.models.verification import (
    ResponseKind,
    UnlockCredential,
    VerificationRequest,
    VerificationResponse,
    VerificationStatus,
)
from app.services.audit import AuditLog
from app.services.checkin import CheckInTracker
from app.services.codes import CodeIssuer
from app.services.unlock import NO_LONGER_ACTIVE
from app.services.verification import VerificationService, transition_request
from app.utils.clock import Clock

logger = logging.getLogger(__name__)

ALREADY_RESPONDED = "A response has already been recorded for you."


class ResponseLog:
    def __init__(
        self,
        settings: Settings,
        verification: VerificationService,
        tracker: CheckInTracker,
        clock: Clock,
    ) -> None:
        self._verification = verification
        self._tracker = tracker
        self._clock = clock
        self._codes = CodeIssuer(settings)

    def record_response(
        self,
        db: Session,
        name: str,
        email: str,
        testator_email: str,
        unlock_code: str,
        response: ResponseKind,
        message: str | None = None,
        now: datetime | None = None,
    ) -> tuple[VerificationResponse, VerificationRequest]:
        """Record one recipient's answer. Returns the row and the request after it."""
        now = now or self._clock.now()
        testator = db.exec(
            select(Testator).where(Testator.email == testator_email.strip().lower())
        ).first()
        if testator is None:
            raise NotFound("No testator with that email")

        credential, request = self._authenticate(db, testator, name, email, unlock_code, now)

        existing = db.exec(
            select(VerificationResponse.id).where(
                VerificationResponse.request_id == request.id,
                VerificationResponse.credential_id == credential.id,
            )
        ).first()
        if existing is not None:
            raise Conflict(
                f"Credential {credential.id} already responded to {request.id}",
                public_message=ALREADY_RESPONDED,
            )

        row = VerificationResponse(
            request_id=request.id,
            credential_id=credential.id,
            testator_id=testator.id,
            party_role=credential.party_role,
            response=response.value,
            message=(message or "").strip() or None,
            created_at=now,
        )
        db.add(row)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise Conflict(
                f"Credential {credential.id} already responded to {request.id}",
                public_message=ALREADY_RESPONDED,
            ) from exc

        AuditLog.record(
            db,
            testator.id,
            AuditAction.RESPONSE_RECORDED,
            {
                "request_id": request.id,
                "credential_id": credential.id,
                "party_role": credential.party_role,
                "response": response.value,
            },
            at=now,
        )

        if response is ResponseKind.ALIVE:
            if not transition_request(
                db,
                request,
                VerificationStatus.CANCELLED,
                now,
                reason="recipient_confirmed_alive",
            ):
                db.rollback()
                raise Conflict(
                    f"Request {request.id} closed before the response landed",
                    public_message=NO_LONGER_ACTIVE,
                )
            # Restarts the cadence; commits the response and cancellation with it.
            self._tracker.record_check_in(db, testator.id, now)
            logger.info(
                "Recipient (%s) confirmed testator %s alive, request %s cancelled",
                credential.party_role,
                testator.id,
                request.id,
            )
        else:
            logger.info(
                "Recipient (%s) reported testator %s deceased on request %s",
                credential.party_role,
                testator.id,
                request.id,
            )
        db.commit()
        db.refresh(row)
        db.refresh(request)
        return row, request

    def responses_for(self, db: Session, request_id: str) -> list[VerificationResponse]:
        return list(
            db.exec(
                select(VerificationResponse)
                .where(VerificationResponse.request_id == request_id)
                .order_by(VerificationResponse.created_at)  # type: ignore[arg-type]
            ).all()
        )

    def _authenticate(
        self,
        db: Session,
        testator: Testator,
        name: str,
        email: str,
        unlock_code: str,
        now: datetime,
    ) -> tuple[UnlockCredential, VerificationRequest]:
        credential = self._verification.find_credential(db, testator.id, name, email)
        if credential is None:
            raise self._reject(
                db,
                testator.id,
                {"reason": "unknown_party"},
                NotFound("Claimed party is not a recipient"),
                now,
            )
        audit = {"credential_id": credential.id, "request_id": credential.request_id}

        if not self._codes.matches(unlock_code, credential.code_hash):
            raise self._reject(
                db,
                testator.id,
                {**audit, "reason": "wrong_code"},
                InvalidCredential("Unlock code does not match"),
                now,
            )
        if credential.used or testator.frozen:
            raise self._reject(
                db,
                testator.id,
                {**audit, "reason": "already_released"},
                AlreadyReleased(f"Will for testator {testator.id} already released"),
                now,
            )

        active = self._verification.get_active_request(db, testator.id, now)
        if active is None or active.id != credential.request_id:
            request = db.get(VerificationRequest, credential.request_id)
            if request is not None and request.status == VerificationStatus.EXPIRED.value:
                error: ProtocolError = Expired("Verification request expired")
            else:
                error = NotFound("No active verification request for this credential")
            raise self._reject(
                db, testator.id, {**audit, "reason": "no_active_request"}, error, now
            )
        return credential, active

    @staticmethod
    def _reject(
        db: Session,
        testator_id: str,
        details: dict,
        error: ProtocolError,
        now: datetime,
    ) -> ProtocolError:
        AuditLog.record(
            db,
            testator_id,
            AuditAction.RESPONSE_REJECTED,
            {**details, "error": error.detail},
            at=now,
        )
        db.commit()
        logger.info("Response rejected for testator %s: %s", testator_id, error.detail)
        return error
