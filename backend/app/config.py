from __future__ import annotations

import warnings
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    domain: str = "localhost"
    jwt_secret: str = ""  # Signs testator access tokens and unlock session tokens
    allow_insecure_jwt: bool = False
    admin_token: str = ""  # Required by the escalation sweep endpoint; empty disables it
    code_pepper: str = ""  # HMAC key for OTP / unlock code hashes; falls back to jwt_secret

    @model_validator(mode="after")
    def _check_jwt_secret(self) -> Settings:
        self.jwt_secret = self.jwt_secret.strip()
        if not self.jwt_secret:
            if self.allow_insecure_jwt:
                warnings.warn(
                    "JWT_SECRET is empty but ALLOW_INSECURE_JWT is set, "
                    "this is INSECURE and should only be used for development.",
                    stacklevel=2,
                )
            else:
                raise ValueError(
                    "JWT_SECRET is not set. An empty JWT secret allows attackers to "
                    "forge session tokens. Set JWT_SECRET in .env or set "
                    "ALLOW_INSECURE_JWT=1 for development."
                )
        return self

    @model_validator(mode="after")
    def _check_windows(self) -> Settings:
        if not 68 <= self.verification_request_ttl_hours <= 72:
            raise ValueError(
                "VERIFICATION_REQUEST_TTL_HOURS must be between 68 and 72"
            )
        if self.otp_ttl_minutes < 1:
            raise ValueError("OTP_TTL_MINUTES must be at least 1")
        if self.min_contact_matches > self.min_contact_names:
            raise ValueError(
                "MIN_CONTACT_MATCHES cannot exceed MIN_CONTACT_NAMES"
            )
        return self

    @property
    def hashing_key(self) -> bytes:
        return (self.code_pepper or self.jwt_secret).encode("utf-8")

    data_dir: Path = Path("/app/data")
    db_url: str = "sqlite:////app/data/wills.db"
    will_store_dir: Path = Path("/app/data/wills")

    # Liveness defaults applied to newly enrolled testators
    default_checkin_interval_days: int = 7
    default_grace_period_days: int = 7

    # Verification / unlock windows
    verification_request_ttl_hours: int = 72
    otp_ttl_minutes: int = 15
    otp_digits: int = 6
    unlock_code_length: int = 10
    unlock_session_ttl_minutes: int = 60
    min_contact_names: int = 2
    min_contact_matches: int = 2
    max_unlock_attempts: int = 5  # Wrong OTPs or contact answers before a session is aborted

    # In-process sweep trigger; 0 leaves triggering to cron via the admin endpoint
    escalation_sweep_interval_minutes: int = 0

    # SMTP (for all outbound notifications)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    notification_from: str = ""  # Defaults to smtp_user when empty
    frontend_url: str = "http://localhost:5173"

    jwt_access_token_expire_minutes: int = 15


@lru_cache
def get_settings() -> Settings:
    return Settings()
