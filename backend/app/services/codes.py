"""Unguessable codes for the unlock protocol.

Codes leave the service exactly once (in a notification); only their
HMAC is persisted, so a database read does not hand out working codes.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta

from app.config import Settings
from app.utils.crypto import constant_time_equals, hmac_sha256

# No 0/O or 1/I/L: codes are read aloud and retyped from email.
UNLOCK_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
_SEPARATORS = re.compile(r"[\s\-]+")


def generate_otp(digits: int = 6) -> str:
    """Uniformly random decimal code, zero-padded to *digits*."""
    if digits < 4:
        raise ValueError("OTP must have at least 4 digits")
    return str(secrets.randbelow(10**digits)).zfill(digits)


def generate_unlock_code(length: int = 10) -> str:
    """Random unlock code formatted in dash-separated groups of five."""
    if length < 8:
        raise ValueError("Unlock code must be at least 8 characters")
    raw = "".join(secrets.choice(UNLOCK_ALPHABET) for _ in range(length))
    return "-".join(raw[i : i + 5] for i in range(0, length, 5))


def normalize_code(code: str) -> str:
    return _SEPARATORS.sub("", code).upper()


def hash_code(code: str, key: bytes) -> str:
    return hmac_sha256(key, normalize_code(code).encode("utf-8"))


def codes_match(code: str, stored_hash: str, key: bytes) -> bool:
    if not code or not code.strip():
        return False
    return constant_time_equals(hash_code(code, key), stored_hash)


class CodeIssuer:
    """Binds code generation to the configured lengths, windows and hashing key."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def key(self) -> bytes:
        return self._settings.hashing_key

    def new_otp(self, now: datetime) -> tuple[str, str, datetime]:
        """Return ``(code, code_hash, expires_at)`` for a fresh OTP."""
        code = generate_otp(self._settings.otp_digits)
        expires_at = now + timedelta(minutes=self._settings.otp_ttl_minutes)
        return code, hash_code(code, self.key), expires_at

    def new_unlock_code(self) -> tuple[str, str]:
        code = generate_unlock_code(self._settings.unlock_code_length)
        return code, hash_code(code, self.key)

    def request_expiry(self, now: datetime) -> datetime:
        return now + timedelta(hours=self._settings.verification_request_ttl_hours)

    def matches(self, code: str, stored_hash: str) -> bool:
        return codes_match(code, stored_hash, self.key)
