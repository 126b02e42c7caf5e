"""Tests for the SMTP notifier and the on-disk will store."""

from __future__ import annotations

import smtplib
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from app.config import Settings
from app.errors import UpstreamFailure
from app.services.notifier import NotificationKind, SmtpNotifier, compose_message
from app.services.will_store import FileWillStore


# ── compose_message ───────────────────────────────────────────────────


class TestComposeMessage:
    def test_verification_email_lists_others_and_own_code(self):
        subject, body = compose_message(
            NotificationKind.VERIFICATION_OPENED,
            {
                "testator_name": "Henry Vance",
                "unlock_code": "ABCDE-FGHJK",
                "expires_at": "2026-03-19T09:01:00",
                "other_recipients": [
                    {"name": "Marcus Vance", "email": "marcus@example.com", "role": "beneficiary"}
                ],
            },
        )
        assert "Henry Vance" in subject
        assert "ABCDE-FGHJK" in body
        assert "Marcus Vance (beneficiary)" in body

    def test_otp_email(self):
        subject, body = compose_message(
            NotificationKind.UNLOCK_OTP,
            {"testator_name": "Henry Vance", "otp": "123456", "ttl_minutes": 15},
        )
        assert "15 minutes" in subject
        assert "123456" in body


# ── SmtpNotifier ──────────────────────────────────────────────────────


class TestSmtpNotifier:
    def test_unconfigured_raises(self):
        notifier = SmtpNotifier(Settings(smtp_host=""))
        with pytest.raises(UpstreamFailure):
            notifier.send("a@example.com", NotificationKind.CHECKIN_REMINDER, {})

    @patch("app.services.notifier.smtplib.SMTP")
    def test_sends_and_returns_message_id(self, mock_smtp_cls):
        server = MagicMock()
        mock_smtp_cls.return_value.__enter__.return_value = server
        notifier = SmtpNotifier(
            Settings(smtp_host="smtp.example.com", smtp_user="wills@example.com")
        )

        delivery_id = notifier.send(
            "tom@example.com",
            NotificationKind.TRUSTED_CONTACT_ALERT,
            {"testator_name": "Henry Vance"},
        )

        assert delivery_id.startswith("<") and delivery_id.endswith(">")
        server.starttls.assert_called_once()
        server.login.assert_called_once()
        sent = server.send_message.call_args[0][0]
        assert sent["To"] == "tom@example.com"
        assert sent["Message-ID"] == delivery_id

    @patch("app.services.notifier.smtplib.SMTP")
    def test_smtp_error_becomes_upstream_failure(self, mock_smtp_cls):
        mock_smtp_cls.return_value.__enter__.return_value.send_message.side_effect = (
            smtplib.SMTPRecipientsRefused({})
        )
        notifier = SmtpNotifier(Settings(smtp_host="smtp.example.com"))
        with pytest.raises(UpstreamFailure):
            notifier.send("x@example.com", NotificationKind.WILL_RELEASED, {})


# ── FileWillStore ─────────────────────────────────────────────────────


class TestFileWillStore:
    def test_reads_will_and_lists_attachments(self, tmp_path: Path):
        testator_dir = tmp_path / "t-1"
        (testator_dir / "attachments" / "photos").mkdir(parents=True)
        (testator_dir / "will.sealed").write_bytes(b"sealed bytes")
        (testator_dir / "attachments" / "letter.pdf").write_bytes(b"%PDF")
        (testator_dir / "attachments" / "photos" / "house.jpg").write_bytes(b"\xff\xd8")

        sealed = FileWillStore(tmp_path).get_sealed_content("t-1")
        assert sealed.content == b"sealed bytes"
        assert sealed.attachments == [
            "attachments/letter.pdf",
            "attachments/photos/house.jpg",
        ]

    def test_missing_will(self, tmp_path: Path):
        with pytest.raises(UpstreamFailure):
            FileWillStore(tmp_path).get_sealed_content("nobody")

    def test_path_traversal_rejected(self, tmp_path: Path):
        with pytest.raises(UpstreamFailure):
            FileWillStore(tmp_path / "store").get_sealed_content("../elsewhere")
