from __future__ import annotations

from app.models.testator import Testator, WillParty  # noqa: F401
from app.models.checkin import CheckIn, TrustedContactAlert  # noqa: F401
from app.models.verification import (  # noqa: F401
    ReleasePackage,
    UnlockCredential,
    UnlockOtp,
    UnlockSession,
    VerificationRequest,
    VerificationResponse,
)
from app.models.audit import AuditLogEntry  # noqa: F401
