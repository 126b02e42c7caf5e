from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from app.db import get_session
from app.dependencies import (
    get_current_testator_id,
    get_response_log,
    get_verification_service,
)
from app.errors import Expired, InvalidCredential, NotFound, ProtocolError
from app.models.verification import (
    ResponseKind,
    VerificationRequest,
    VerificationRequestRead,
    VerificationResponseAck,
    VerificationResponseCreate,
    VerificationResponseRead,
    VerificationStatus,
)
from app.services.responses import ResponseLog
from app.services.verification import VerificationService

router = APIRouter(prefix="/api/verification", tags=["verification"])

RESPOND_FAILED = (
    "We could not verify those details. Check the information in your "
    "notification email and try again."
)


@router.get("/requests", response_model=list[VerificationRequestRead])
async def list_requests(
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    service: VerificationService = Depends(get_verification_service),
) -> list[VerificationRequestRead]:
    """The testator's verification history, newest first."""
    # Touch the active request first so an overdue one shows as expired.
    service.get_active_request(db, testator_id)
    return [
        VerificationRequestRead.model_validate(r)
        for r in service.list_requests(db, testator_id)
    ]


@router.get(
    "/requests/{request_id}/responses", response_model=list[VerificationResponseRead]
)
async def list_responses(
    request_id: str,
    testator_id: str = Depends(get_current_testator_id),
    db: Session = Depends(get_session),
    responses: ResponseLog = Depends(get_response_log),
) -> list[VerificationResponseRead]:
    request = db.get(VerificationRequest, request_id)
    if request is None or request.testator_id != testator_id:
        raise HTTPException(status_code=404, detail="Verification request not found")
    return [
        VerificationResponseRead.model_validate(r)
        for r in responses.responses_for(db, request_id)
    ]


@router.post("/respond", response_model=VerificationResponseAck)
async def respond(
    body: VerificationResponseCreate,
    db: Session = Depends(get_session),
    responses: ResponseLog = Depends(get_response_log),
) -> VerificationResponseAck:
    """A recipient says whether the testator is alive, using their unlock code.

    Unknown recipients, wrong codes and closed requests all get the same
    answer, as on the unlock identify step.
    """
    try:
        _, request = responses.record_response(
            db,
            name=body.name,
            email=body.email,
            testator_email=body.testator_email,
            unlock_code=body.unlock_code,
            response=body.response,
            message=body.message,
        )
    except (NotFound, InvalidCredential, Expired):
        raise HTTPException(status_code=400, detail=RESPOND_FAILED)
    except ProtocolError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.public_message)

    if body.response is ResponseKind.ALIVE:
        message = "Thank you for confirming. The verification has been cancelled."
    else:
        message = "Thank you. Your response has been recorded."
    return VerificationResponseAck(
        response=body.response,
        request_status=VerificationStatus(request.status),
        message=message,
    )
