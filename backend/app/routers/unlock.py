"""Unlock router: the recipient-facing side of will release.

Recipients are not users of this service; they hold an unlock code from
their notification email and, after identify, an unlock session token.

Identity, OTP and contact failures are reported with one status and one
message per step regardless of which check failed, so the API cannot be
used to discover who the recipients are or whether a code merely expired.
The audit trail keeps the precise reason.
"""

from __future__ import annotations

import base64

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from app.db import get_session
from app.dependencies import get_unlock_service, get_unlock_session_id
from app.errors import Expired, InvalidCredential, NotFound, ProtocolError
from app.models.verification import (
    ContactsVerifyRequest,
    OtpVerifyRequest,
    ReleasePackage,
    ReleasePackageRead,
    SessionStage,
    UnlockIdentifyRequest,
    UnlockSessionResponse,
)
from app.services.unlock import UnlockService
from app.tokens import create_unlock_session_token

router = APIRouter(prefix="/api/unlock", tags=["unlock"])

IDENTIFY_FAILED = (
    "We could not verify those details. Check the information in your "
    "notification email and try again."
)
OTP_FAILED = "That code is invalid or has expired. Request a new code and try again."
CONTACTS_FAILED = "The names provided could not be verified."

_INDISTINGUISHABLE = (NotFound, InvalidCredential, Expired)


def _http_error(exc: ProtocolError, generic: str | None = None) -> HTTPException:
    if generic is not None and isinstance(exc, _INDISTINGUISHABLE):
        return HTTPException(status_code=400, detail=generic)
    return HTTPException(status_code=exc.status_code, detail=exc.public_message)


def _package_read(package: ReleasePackage) -> ReleasePackageRead:
    return ReleasePackageRead(
        id=package.id,
        request_id=package.request_id,
        testator_id=package.testator_id,
        created_at=package.created_at,
        media_type=package.media_type,
        content_sha256=package.content_sha256,
        content_b64=base64.b64encode(package.content).decode("ascii"),
        manifest=package.manifest,
    )


@router.post("/identify", response_model=UnlockSessionResponse)
async def identify(
    body: UnlockIdentifyRequest,
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> UnlockSessionResponse:
    """Check the recipient's unlock code and email them a one-time code."""
    try:
        session, otp_expires_at = service.request_unlock(
            db,
            name=body.name,
            email=body.email,
            testator_email=body.testator_email,
            unlock_code=body.unlock_code,
        )
    except ProtocolError as exc:
        raise _http_error(exc, IDENTIFY_FAILED)
    return UnlockSessionResponse(
        session_token=create_unlock_session_token(session.id),
        stage=SessionStage(session.stage),
        otp_expires_at=otp_expires_at,
        message="A one-time code has been sent to your email address.",
    )


@router.post("/otp/resend", response_model=UnlockSessionResponse)
async def resend_otp(
    session_id: str = Depends(get_unlock_session_id),
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> UnlockSessionResponse:
    """Send a new one-time code. The previous code stops working."""
    try:
        otp_expires_at = service.issue_otp(db, session_id)
    except ProtocolError as exc:
        raise _http_error(exc)
    return UnlockSessionResponse(
        stage=SessionStage.IDENTIFIED,
        otp_expires_at=otp_expires_at,
        message="A new one-time code has been sent to your email address.",
    )


@router.post("/otp/verify", response_model=UnlockSessionResponse)
async def verify_otp(
    body: OtpVerifyRequest,
    session_id: str = Depends(get_unlock_session_id),
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> UnlockSessionResponse:
    try:
        session = service.verify_otp(db, session_id, body.code)
    except ProtocolError as exc:
        raise _http_error(exc, OTP_FAILED)
    return UnlockSessionResponse(
        stage=SessionStage(session.stage),
        message="Code accepted. Name the other people listed in your email.",
    )


@router.post("/contacts", response_model=UnlockSessionResponse)
async def verify_contacts(
    body: ContactsVerifyRequest,
    session_id: str = Depends(get_unlock_session_id),
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> UnlockSessionResponse:
    try:
        session = service.verify_contacts(db, session_id, body.names)
    except Expired as exc:
        # Stale OTP verification: the caller has to request a new code.
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)
    except ProtocolError as exc:
        raise _http_error(exc, CONTACTS_FAILED)
    return UnlockSessionResponse(
        stage=SessionStage(session.stage),
        message="Contacts verified. You can now release the will.",
    )


@router.post("/finalize", response_model=ReleasePackageRead)
async def finalize(
    session_id: str = Depends(get_unlock_session_id),
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> ReleasePackageRead:
    """Release the will. Only the first fully verified recipient succeeds."""
    try:
        package = service.finalize(db, session_id)
    except ProtocolError as exc:
        raise _http_error(exc)
    return _package_read(package)


@router.get("/package", response_model=ReleasePackageRead)
async def get_package(
    session_id: str = Depends(get_unlock_session_id),
    db: Session = Depends(get_session),
    service: UnlockService = Depends(get_unlock_service),
) -> ReleasePackageRead:
    try:
        package = service.get_release_package(db, session_id)
    except ProtocolError as exc:
        raise _http_error(exc)
    return _package_read(package)
