"""Verification episodes and the unlock protocol's persisted state.

A VerificationRequest owns one UnlockCredential per recipient (the
recipient list is snapshotted onto the credential rows when the request
opens), the OTPs and unlock sessions that hang off those credentials, the
recipients' alive/deceased responses, and at most one ReleasePackage.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VerificationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not VerificationStatus.PENDING

    def can_transition_to(self, target: VerificationStatus) -> bool:
        return self is VerificationStatus.PENDING and target.is_terminal


class ResponseKind(str, Enum):
    ALIVE = "alive"
    DECEASED = "deceased"


class SessionStage(str, Enum):
    IDENTIFIED = "identified"
    OTP_VERIFIED = "otp_verified"
    CONTACTS_VERIFIED = "contacts_verified"
    COMPLETED = "completed"
    ABORTED = "aborted"

    def can_transition_to(self, target: SessionStage) -> bool:
        return target in _SESSION_TRANSITIONS[self]


_SESSION_TRANSITIONS: dict[SessionStage, set[SessionStage]] = {
    SessionStage.IDENTIFIED: {SessionStage.OTP_VERIFIED, SessionStage.ABORTED},
    SessionStage.OTP_VERIFIED: {
        SessionStage.CONTACTS_VERIFIED,
        SessionStage.IDENTIFIED,
        SessionStage.ABORTED,
    },
    SessionStage.CONTACTS_VERIFIED: {
        SessionStage.COMPLETED,
        SessionStage.IDENTIFIED,
        SessionStage.ABORTED,
    },
    SessionStage.COMPLETED: set(),
    SessionStage.ABORTED: set(),
}


class VerificationRequest(SQLModel, table=True):
    __tablename__ = "verification_requests"
    __table_args__ = (
        # At most one pending request per testator.
        Index(
            "uq_verification_requests_pending",
            "testator_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    testator_id: str = Field(foreign_key="testators.id", index=True)
    checkin_id: str | None = Field(default=None, foreign_key="checkins.id")
    initiated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    status: str = Field(default=VerificationStatus.PENDING.value)
    closed_at: datetime | None = Field(default=None)
    close_reason: str | None = Field(default=None)


class UnlockCredential(SQLModel, table=True):
    __tablename__ = "unlock_credentials"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    request_id: str = Field(foreign_key="verification_requests.id", index=True)
    testator_id: str = Field(foreign_key="testators.id", index=True)
    party_id: str
    party_name: str
    party_email: str
    party_role: str
    code_hash: str
    used: bool = Field(default=False)
    used_at: datetime | None = Field(default=None)
    expires_at: datetime
    notified_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)


class UnlockOtp(SQLModel, table=True):
    __tablename__ = "unlock_otps"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    credential_id: str = Field(foreign_key="unlock_credentials.id", index=True)
    session_id: str = Field(foreign_key="unlock_sessions.id")
    code_hash: str
    expires_at: datetime
    used: bool = Field(default=False)
    attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)


class UnlockSession(SQLModel, table=True):
    __tablename__ = "unlock_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    request_id: str = Field(foreign_key="verification_requests.id", index=True)
    credential_id: str = Field(foreign_key="unlock_credentials.id")
    testator_id: str = Field(foreign_key="testators.id")
    stage: str = Field(default=SessionStage.IDENTIFIED.value)
    otp_verified_at: datetime | None = Field(default=None)
    contacts_verified_at: datetime | None = Field(default=None)
    failed_attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ReleasePackage(SQLModel, table=True):
    __tablename__ = "release_packages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    request_id: str = Field(
        foreign_key="verification_requests.id", unique=True, index=True
    )
    testator_id: str = Field(foreign_key="testators.id", index=True)
    released_to_credential_id: str = Field(foreign_key="unlock_credentials.id")
    content: bytes
    content_sha256: str
    media_type: str = Field(default="application/octet-stream")
    manifest_json: str
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def manifest(self) -> dict:
        return json.loads(self.manifest_json)


class VerificationResponse(SQLModel, table=True):
    """A recipient's answer to "is the testator alive?". One per credential per request."""

    __tablename__ = "verification_responses"
    __table_args__ = (
        UniqueConstraint(
            "request_id", "credential_id", name="uq_verification_responses_credential"
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    request_id: str = Field(foreign_key="verification_requests.id", index=True)
    credential_id: str = Field(foreign_key="unlock_credentials.id")
    testator_id: str = Field(foreign_key="testators.id")
    party_role: str
    response: str
    message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)


# --- Pydantic request/response schemas ---


class VerificationRequestRead(BaseModel):
    id: str
    testator_id: str
    initiated_at: datetime
    expires_at: datetime
    status: VerificationStatus
    closed_at: datetime | None
    close_reason: str | None

    model_config = {"from_attributes": True}


class UnlockIdentifyRequest(BaseModel):
    name: str
    email: str
    testator_email: str
    unlock_code: str


class UnlockSessionResponse(BaseModel):
    session_token: str | None = None  # Only returned by identify
    stage: SessionStage
    otp_expires_at: datetime | None = None
    message: str


class OtpVerifyRequest(BaseModel):
    code: str


class ContactsVerifyRequest(BaseModel):
    names: list[str]


class ReleasePackageRead(BaseModel):
    id: str
    request_id: str
    testator_id: str
    created_at: datetime
    media_type: str
    content_sha256: str
    content_b64: str
    manifest: dict


class VerificationResponseCreate(BaseModel):
    name: str
    email: str
    testator_email: str
    unlock_code: str
    response: ResponseKind
    message: str | None = None


class VerificationResponseAck(BaseModel):
    response: ResponseKind
    request_status: VerificationStatus
    message: str


class VerificationResponseRead(BaseModel):
    id: str
    request_id: str
    party_role: str
    response: ResponseKind
    message: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
