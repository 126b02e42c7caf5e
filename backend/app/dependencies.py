"""FastAPI dependency injection for token verification and protocol services."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import get_settings
from app.services.checkin import CheckInTracker
from app.services.escalation import EscalationScheduler
from app.services.responses import ResponseLog
from app.services.unlock import UnlockService
from app.services.verification import VerificationService
from app.tokens import ACCESS, UNLOCK_SESSION, decode_token
from app.utils.crypto import constant_time_equals

_bearer_scheme = HTTPBearer(auto_error=True)


def get_current_testator_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Extract the testator id (sub claim) from a valid access token.

    Raises HTTPException 401 if the token is missing, expired, or invalid.
    """
    return decode_token(credentials.credentials, ACCESS)["sub"]


def get_unlock_session_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Extract the unlock session id from a session token issued at identify."""
    return decode_token(credentials.credentials, UNLOCK_SESSION)["sub"]


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Guard for operator endpoints. Disabled (503) until ADMIN_TOKEN is set."""
    settings = get_settings()
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")
    if not x_admin_token or not constant_time_equals(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _from_state(request: Request, name: str, label: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{label} unavailable")
    return svc


def get_checkin_tracker(request: Request) -> CheckInTracker:
    """Inject the CheckInTracker singleton from app state."""
    return _from_state(request, "checkin_tracker", "Check-in service")


def get_verification_service(request: Request) -> VerificationService:
    """Inject the VerificationService singleton from app state."""
    return _from_state(request, "verification_service", "Verification service")


def get_escalation_scheduler(request: Request) -> EscalationScheduler:
    """Inject the EscalationScheduler singleton from app state."""
    return _from_state(request, "escalation_scheduler", "Escalation scheduler")


def get_unlock_service(request: Request) -> UnlockService:
    """Inject the UnlockService singleton from app state."""
    return _from_state(request, "unlock_service", "Unlock service")


def get_response_log(request: Request) -> ResponseLog:
    return _from_state(request, "response_log", "Response log")
