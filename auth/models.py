"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, OTP engine, token service and lifecycle do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OtpPurpose(str, Enum):
    """What an OTP challenge proves. Only email verification is in scope."""

    EMAIL_VERIFICATION = "email_verification"


@dataclass
class Account:
    """A registered identity.

    email is the natural key: always trimmed and lowercased before it reaches
    the store. password_hash is set once at creation and never rewritten.
    verified flips False -> True exactly once, on a successful OTP match.
    """

    email: str
    name: str
    password_hash: str
    role: str = "user"
    verified: bool = False
    id: str | None = None
    created_at: str | None = None
    verified_at: str | None = None


@dataclass
class OtpChallenge:
    """A pending one-time code for (account_id, purpose).

    Security design:
    - code_hash is SHA-256 of the plaintext code. The plaintext is returned
      ONCE by OtpEngine.issue() for delivery and is never persisted.
    - At most one challenge exists per (account_id, purpose); the store enforces
      this with a UNIQUE index and upserts replace the previous record.
    - attempts counts failed verifications and is reset to 0 on every reissue.
    """

    account_id: str
    purpose: OtpPurpose
    code_hash: str
    expires_at: datetime  # timezone-aware UTC
    attempts: int = 0
    id: int | None = None
