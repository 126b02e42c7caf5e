"""Testator account and the parties named in their will.

``will_parties`` is the store behind the contact registry; this service
only reads it (contact management lives with the will editor).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PartyRole(str, Enum):
    EXECUTOR = "executor"
    BENEFICIARY = "beneficiary"
    TRUSTED_CONTACT = "trusted_contact"


class Testator(SQLModel, table=True):
    __tablename__ = "testators"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    checkin_enabled: bool = Field(default=True)
    checkin_interval_days: int = Field(default=7)
    grace_period_days: int = Field(default=7)
    notify_by_email: bool = Field(default=True)
    trusted_contact_email: str | None = Field(default=None)
    frozen: bool = Field(default=False)
    frozen_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class WillParty(SQLModel, table=True):
    __tablename__ = "will_parties"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    testator_id: str = Field(foreign_key="testators.id", index=True)
    name: str
    email: str
    role: str = Field(default=PartyRole.BENEFICIARY.value)
    is_primary: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow)


# --- Pydantic request/response schemas ---


class TestatorRead(BaseModel):
    id: str
    email: str
    full_name: str
    checkin_enabled: bool
    checkin_interval_days: int
    grace_period_days: int
    notify_by_email: bool
    trusted_contact_email: str | None
    frozen: bool
    frozen_at: datetime | None

    model_config = {"from_attributes": True}


class TestatorSettingsUpdate(BaseModel):
    checkin_enabled: bool | None = None
    checkin_interval_days: int | None = Field(default=None, ge=1, le=365)
    grace_period_days: int | None = Field(default=None, ge=1, le=90)
    notify_by_email: bool | None = None
    trusted_contact_email: str | None = None
