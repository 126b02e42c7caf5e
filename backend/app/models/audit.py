"""Append-only audit trail of every state transition and dispatched side effect."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class AuditAction(str, Enum):
    TESTATOR_ENROLLED = "testator_enrolled"
    SETTINGS_UPDATED = "settings_updated"
    CHECKIN_RECORDED = "checkin_recorded"
    CHECKIN_STATUS_ADVANCED = "checkin_status_advanced"
    VERIFICATION_TRIGGERED = "verification_triggered"
    VERIFICATION_EXPIRED = "verification_expired"
    VERIFICATION_CANCELLED = "verification_cancelled"
    VERIFICATION_COMPLETED = "verification_completed"
    CREDENTIAL_ISSUED = "credential_issued"
    RESPONSE_RECORDED = "response_recorded"
    RESPONSE_REJECTED = "response_rejected"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    UNLOCK_IDENTIFY_FAILED = "unlock_identify_failed"
    UNLOCK_SESSION_STARTED = "unlock_session_started"
    OTP_ISSUED = "otp_issued"
    OTP_VERIFIED = "otp_verified"
    OTP_FAILED = "otp_failed"
    CONTACTS_VERIFIED = "contacts_verified"
    CONTACTS_FAILED = "contacts_failed"
    UNLOCK_FINALIZE_FAILED = "unlock_finalize_failed"
    WILL_RELEASED = "will_released"
    SWEEP_FAILED = "sweep_failed"


class AuditLogEntry(SQLModel, table=True):
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_testator_created_at", "testator_id", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    testator_id: str = Field(index=True)
    action: str
    detail_json: str | None = Field(default=None)
    delivery_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None)
    )

    @property
    def details(self) -> dict:
        return json.loads(self.detail_json) if self.detail_json else {}


class AuditLogRead(BaseModel):
    id: str
    action: str
    details: dict
    delivery_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
