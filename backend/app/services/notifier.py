from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import make_msgid
from enum import Enum
from typing import Protocol

from app.config import Settings
from app.errors import UpstreamFailure

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    CHECKIN_REMINDER = "checkin_reminder"
    TRUSTED_CONTACT_ALERT = "trusted_contact_alert"
    VERIFICATION_OPENED = "verification_opened"
    UNLOCK_OTP = "unlock_otp"
    WILL_RELEASED = "will_released"


class Notifier(Protocol):
    def send(self, address: str, kind: NotificationKind, payload: dict) -> str:
        """Hand a message to the delivery service and return its delivery id.

        Raises UpstreamFailure when the message could not be handed over.
        """
        ...


def compose_message(kind: NotificationKind, payload: dict) -> tuple[str, str]:
    """Compose email subject and body for a notification kind."""
    testator = payload.get("testator_name", "the will holder")
    if kind is NotificationKind.CHECKIN_REMINDER:
        subject = "Check-in reminder: please confirm you are well"
        body = (
            f"Your scheduled check-in was due on {payload.get('next_due')}.\n\n"
            f"Please sign in and check in before {payload.get('grace_deadline')}.\n"
            f"If you do not, your trusted contacts will be asked to check on "
            f"you and will verification will begin."
        )
    elif kind is NotificationKind.TRUSTED_CONTACT_ALERT:
        subject = f"Welfare check requested for {testator}"
        body = (
            f"You are receiving this message because {testator} listed you as a "
            f"trusted contact.\n\n"
            f"They have missed their scheduled check-in (due {payload.get('next_due')}).\n"
            f"Please check on them and encourage them to sign in. If no check-in "
            f"happens by {payload.get('grace_deadline')}, will verification begins."
        )
    elif kind is NotificationKind.VERIFICATION_OPENED:
        others = payload.get("other_recipients", [])
        roster = "\n".join(
            f"  - {o['name']} ({o['role']}): {o['email']}" for o in others
        ) or "  (none)"
        subject = f"Will verification started for {testator}"
        body = (
            f"{testator} has not checked in and the verification period has ended.\n\n"
            f"Your personal unlock code is: {payload['unlock_code']}\n"
            f"It is valid until {payload.get('expires_at')} and can only be used once.\n\n"
            f"The other people notified are:\n{roster}\n\n"
            f"To access the will you will need your unlock code, a one-time code "
            f"sent to this address, and the names of other people on this list.\n"
            f"Continue at {payload.get('unlock_url', '')}"
        )
    elif kind is NotificationKind.UNLOCK_OTP:
        subject = f"Will access code for {testator}, expires in {payload.get('ttl_minutes', 15)} minutes"
        body = (
            f"Your one-time access code is: {payload['otp']}\n\n"
            f"This code expires at {payload.get('expires_at')} and can only be used once.\n"
            f"The will can only be released once; after release, access is "
            f"permanently frozen.\n\n"
            f"If you did not request this code, contact support immediately."
        )
    elif kind is NotificationKind.WILL_RELEASED:
        subject = f"The will of {testator} has been released"
        body = (
            f"The will of {testator} was released to {payload.get('released_to')} "
            f"at {payload.get('released_at')}.\n\n"
            f"Access is now permanently frozen. Please coordinate with the "
            f"executor for next steps."
        )
    else:
        subject = f"Notification: {kind.value}"
        body = f"Notification kind: {kind.value}"
    return subject, body


class SmtpNotifier:
    """Sends notifications as plain-text email over SMTP with STARTTLS."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, address: str, kind: NotificationKind, payload: dict) -> str:
        if not self._settings.smtp_host:
            logger.warning("SMTP not configured, cannot send %s to %s", kind.value, address)
            raise UpstreamFailure("SMTP is not configured")

        subject, body = compose_message(kind, payload)
        sender = self._settings.notification_from or self._settings.smtp_user
        message_id = make_msgid(domain=self._settings.domain)

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = address
        msg["Message-ID"] = message_id

        try:
            with smtplib.SMTP(self._settings.smtp_host, self._settings.smtp_port) as server:
                server.starttls()
                if self._settings.smtp_user:
                    server.login(self._settings.smtp_user, self._settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.exception("Failed to send %s email to %s", kind.value, address)
            raise UpstreamFailure(f"SMTP delivery failed: {exc}") from exc

        logger.info("Sent %s email to %s (%s)", kind.value, address, message_id)
        return message_id
