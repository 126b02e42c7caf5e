from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class CheckInStatus(str, Enum):
    """Escalation stage of a check-in. Declaration order is escalation order."""

    ALIVE = "alive"
    PENDING = "pending"
    TRUSTED_CONTACTS_NOTIFIED = "trusted_contacts_notified"
    VERIFICATION_TRIGGERED = "verification_triggered"

    @property
    def rank(self) -> int:
        return list(CheckInStatus).index(self)

    def can_advance_to(self, target: CheckInStatus) -> bool:
        # Going back to ALIVE only happens through a new check-in row.
        return target.rank > self.rank


class CheckIn(SQLModel, table=True):
    __tablename__ = "checkins"
    __table_args__ = (
        Index("ix_checkins_testator_checked_in_at", "testator_id", "checked_in_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    testator_id: str = Field(foreign_key="testators.id")
    checked_in_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None)
    )
    status: str = Field(default=CheckInStatus.ALIVE.value)
    next_due: datetime
    status_changed_at: datetime | None = Field(default=None)


class TrustedContactAlert(SQLModel, table=True):
    """One delivered welfare alert. Presence means the contact is not alerted again."""

    __tablename__ = "trusted_contact_alerts"
    __table_args__ = (
        UniqueConstraint(
            "checkin_id", "contact_email", name="uq_trusted_contact_alerts_checkin_email"
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    checkin_id: str = Field(foreign_key="checkins.id", index=True)
    testator_id: str = Field(foreign_key="testators.id")
    contact_email: str
    delivery_id: str
    sent_at: datetime


# --- Pydantic schemas for request/response validation ---


class CheckInRead(BaseModel):
    id: str
    testator_id: str
    checked_in_at: datetime
    status: CheckInStatus
    next_due: datetime
    status_changed_at: datetime | None

    model_config = {"from_attributes": True}


class CheckInStatusResponse(BaseModel):
    last_checkin: datetime | None
    next_due: datetime | None
    grace_deadline: datetime | None
    is_overdue: bool
    status: CheckInStatus | None
    active_request_id: str | None
    frozen: bool
