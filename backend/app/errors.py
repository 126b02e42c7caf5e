"""Error taxonomy for the verification and unlock protocol.

Every error carries two messages: ``public_message`` is safe to show to
whoever is calling (it never names the field that failed), ``detail`` is
for operators and ends up in logs and the audit trail.
"""

from __future__ import annotations


class ProtocolError(Exception):
    status_code: int = 400
    default_message: str = "The request could not be completed."

    def __init__(self, detail: str = "", public_message: str | None = None) -> None:
        self.detail = detail or self.default_message
        self.public_message = public_message or self.default_message
        super().__init__(self.detail)


class NotFound(ProtocolError):
    status_code = 404
    default_message = "No matching record was found."


class InvalidCredential(ProtocolError):
    status_code = 400
    default_message = "The details provided could not be verified. Please try again."


class Expired(ProtocolError):
    status_code = 410
    default_message = "This code or request has expired. Please request a new code."


class AlreadyReleased(ProtocolError):
    status_code = 409
    default_message = "This will has already been released."


class Conflict(ProtocolError):
    status_code = 409
    default_message = "This will has already been released."


class UpstreamFailure(ProtocolError):
    status_code = 502
    default_message = "A delivery service is unavailable. Please try again later."
