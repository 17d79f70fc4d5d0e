"""
auth/passwords.py -- Account password hashing (bcrypt).

Bcrypt is the right choice for low-entropy secrets (passwords) because its
cost factor makes brute-force expensive. The work factor comes from
Settings.bcrypt_rounds (default 10) and can be overridden per call.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import bcrypt

from core.config import get_settings

# bcrypt only looks at the first 72 bytes of input; the lifecycle rejects
# longer passwords instead of letting them be silently truncated.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Fails closed: a missing or malformed stored hash returns False instead of
    raising. bcrypt.checkpw compares digests in constant time.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email is unknown -- bcrypt's constant work factor equalizes timing and
# prevents account enumeration via response-time differences.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")
