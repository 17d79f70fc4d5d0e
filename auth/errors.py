"""
auth/errors.py -- Domain error taxonomy.

Every error the lifecycle raises carries a stable HTTP status, a machine
readable code and a client-safe message. api/main.py renders them into the
standard {"error": {...}} envelope; nothing here knows about FastAPI.

AuthenticationError never says which check failed (unknown account vs wrong
password, bad signature vs expired token) -- the code and message are the
same for every cause that shares a code.
"""

from __future__ import annotations


class AuthGateError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationError(AuthGateError):
    """Malformed input. The client must fix the request and resubmit."""

    status_code = 400
    code = "invalid_input"
    message = "Invalid input."


class AuthenticationError(AuthGateError):
    status_code = 401
    code = "bad_credentials"
    message = "Invalid email or password."


class ConflictError(AuthGateError):
    status_code = 409
    code = "duplicate_account"
    message = "An account with this email already exists."


class ExpiredError(AuthGateError):
    """OTP expired. Recoverable by requesting a new code."""

    status_code = 410
    code = "otp_expired"
    message = "Verification code expired. Request a new one."


class RateLimitError(AuthGateError):
    """Too many wrong OTP guesses. The challenge is gone; a new one must be issued."""

    status_code = 429
    code = "too_many_attempts"
    message = "Too many incorrect attempts. Request a new verification code."


class DeliveryError(AuthGateError):
    """Outbound email failed after all retries."""

    status_code = 500
    code = "delivery_failed"
    message = "Failed to send verification email."


class InternalError(AuthGateError):
    """Store or unexpected failure. api/main.py maps SQLAlchemyError to it; no detail reaches the client."""
