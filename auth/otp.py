"""
auth/otp.py -- One-time code issuance and verification.

Security design decisions:
  Generation: each digit is drawn with secrets.randbelow(10), an unbiased
       bounded-random primitive over the OS CSPRNG. No modulo bias, no
       random.randint(). Codes may start with 0 -- the space is the full
       10**length range.

  Storage: only SHA-256(code) is persisted. A plain digest (not bcrypt) is
       enough here because the code is short-lived, attempt-limited and
       replaced on every reissue; brute force is bounded by max_attempts,
       not by hash cost.

  Verification order is load-bearing:
       1. no challenge          -> NOT_SET
       2. now >= expires_at     -> delete, EXPIRED
       3. attempts >= max       -> delete, TOO_MANY_ATTEMPTS
       4. constant-time compare
       5. match -> delete, SUCCESS; mismatch -> attempts += 1, INVALID
  Expiry and exhaustion are decided before the hash is looked at, so a stale
  or locked code is never reported as merely "incorrect", and every call
  performs exactly one state mutation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from auth.models import OtpChallenge, OtpPurpose

if TYPE_CHECKING:
    from auth.store import CredentialStore

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 10


class OtpOutcome(str, Enum):
    SUCCESS = "success"
    NOT_SET = "not_set"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID = "invalid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_numeric_code(length: int = DEFAULT_LENGTH) -> str:
    """Return a uniformly random string of `length` decimal digits."""
    if length < 1:
        raise ValueError("OTP length must be positive")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_code(code: str) -> str:
    """SHA-256 hex digest of a code. Surrounding whitespace is not significant."""
    return hashlib.sha256(str(code).strip().encode("utf-8")).hexdigest()


class OtpEngine:
    """Issues and verifies OTP challenges against a CredentialStore.

    The engine keeps no state of its own; every decision is made from the
    stored challenge. Use using(tx) to run against a transaction-bound store.
    """

    def __init__(
        self,
        store: CredentialStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        length: int = DEFAULT_LENGTH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.length = length
        self.max_attempts = max_attempts
        self.clock = clock

    def using(self, store: CredentialStore) -> OtpEngine:
        """Return an engine with the same policy bound to another store (e.g. a transaction)."""
        return OtpEngine(
            store,
            ttl_seconds=self.ttl_seconds,
            length=self.length,
            max_attempts=self.max_attempts,
            clock=self.clock,
        )

    def issue(
        self,
        account_id: str,
        purpose: OtpPurpose = OtpPurpose.EMAIL_VERIFICATION,
        ttl_seconds: int | None = None,
        length: int | None = None,
    ) -> str:
        """Create or replace the challenge for (account_id, purpose).

        Returns the plaintext code exactly once for out-of-band delivery.
        The caller must not log or persist it.
        """
        code = generate_numeric_code(length or self.length)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        self.store.upsert_challenge(
            OtpChallenge(
                account_id=account_id,
                purpose=purpose,
                code_hash=hash_code(code),
                expires_at=self.clock() + timedelta(seconds=ttl),
            )
        )
        return code

    def verify(
        self,
        account_id: str,
        purpose: OtpPurpose,
        candidate: str,
        max_attempts: int | None = None,
    ) -> OtpOutcome:
        """Check a candidate code. See the module docstring for the exact ordering."""
        limit = max_attempts if max_attempts is not None else self.max_attempts
        challenge = self.store.find_challenge(account_id, purpose)
        if challenge is None:
            return OtpOutcome.NOT_SET

        if self.clock() >= challenge.expires_at:
            self.store.delete_challenge(challenge.id)
            return OtpOutcome.EXPIRED

        if challenge.attempts >= limit:
            self.store.delete_challenge(challenge.id)
            return OtpOutcome.TOO_MANY_ATTEMPTS

        if hmac.compare_digest(hash_code(candidate), challenge.code_hash):
            # A concurrent caller that consumed the same code first wins.
            if not self.store.delete_challenge(challenge.id):
                return OtpOutcome.NOT_SET
            return OtpOutcome.SUCCESS

        self.store.increment_attempts(challenge.id)
        return OtpOutcome.INVALID

    def has_live_challenge(self, account_id: str, purpose: OtpPurpose = OtpPurpose.EMAIL_VERIFICATION) -> bool:
        """True if an unexpired challenge exists. Used to avoid re-sending codes."""
        challenge = self.store.find_challenge(account_id, purpose)
        return challenge is not None and self.clock() < challenge.expires_at
