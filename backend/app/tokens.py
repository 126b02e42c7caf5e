"""JWT helpers for testator access tokens and unlock session tokens.

Testators authenticate elsewhere; this service only verifies the access
tokens it is handed. Unlock session tokens are minted here at the
identify step and carry nothing but the session id.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException
from jose import JWTError, jwt

from app.config import get_settings

JWT_ALGORITHM = "HS256"
ACCESS = "access"
UNLOCK_SESSION = "unlock_session"


def _encode(subject: str, token_type: str, ttl: timedelta) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": token_type,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def create_access_token(testator_id: str) -> str:
    settings = get_settings()
    return _encode(
        testator_id, ACCESS, timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )


def create_unlock_session_token(session_id: str) -> str:
    settings = get_settings()
    return _encode(
        session_id,
        UNLOCK_SESSION,
        timedelta(minutes=settings.unlock_session_ttl_minutes),
    )


def decode_token(token: str, expected_type: str) -> dict:
    """Decode and validate a JWT. Raises HTTPException 401 on failure."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail="Invalid token type")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return payload
