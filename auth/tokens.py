"""
auth/tokens.py -- Signed, time-bounded tokens for verification, access and refresh.

Security design decisions:
  JWT: python-jose with HS256. Every token carries the minimal claim set
       {sub, email?, kind, iat, exp, jti}. Verification returns None on any
       failure -- bad signature, other algorithm, expiry, missing claim, or a
       token of the wrong kind. Callers turn None into 401; nothing is ever
       partially trusted.

  Keys: one key per kind, supplied by a SigningKeyProvider injected at
       construction. The verification key is never used for access/refresh
       tokens, so a leaked verification-flow secret cannot mint sessions.
       Settings rejects configurations that reuse it [K1].

  Rotation: rotate() accepts a valid refresh token and mints a brand-new
       access + refresh pair for the same account. The presented refresh token
       is not revoked -- tokens are stateless. jti is emitted on every token so
       a server-side allowlist can be added without changing the format.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from jose import JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.tokens")

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    VERIFICATION = "verification"
    ACCESS = "access"
    REFRESH = "refresh"


DEFAULT_LIFETIMES: dict[TokenKind, int] = {
    TokenKind.VERIFICATION: 60 * 60,
    TokenKind.ACCESS: 15 * 60,
    TokenKind.REFRESH: 7 * 24 * 60 * 60,
}


@dataclass(frozen=True)
class TokenClaims:
    subject: str  # account id
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str
    email: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class RotatedTokens:
    access_token: str
    refresh_token: str
    account_id: str


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


class SigningKeyProvider(Protocol):
    def key_for(self, kind: TokenKind) -> str: ...


class SettingsKeyProvider:
    """Reads the three signing keys from validated Settings."""

    def __init__(self, settings: Settings) -> None:
        self._keys = {
            TokenKind.VERIFICATION: settings.verification_secret_key,
            TokenKind.ACCESS: settings.access_secret_key,
            TokenKind.REFRESH: settings.refresh_secret_key,
        }

    def key_for(self, kind: TokenKind) -> str:
        return self._keys[TokenKind(kind)]


class StaticKeyProvider:
    """Fixed keys, for tests and embedding."""

    def __init__(self, keys: Mapping[TokenKind, str]) -> None:
        missing = set(TokenKind) - set(keys)
        if missing:
            raise ValueError(f"missing signing keys for: {sorted(k.value for k in missing)}")
        self._keys = dict(keys)

    def key_for(self, kind: TokenKind) -> str:
        return self._keys[TokenKind(kind)]


def lifetimes_from_settings(settings: Settings) -> dict[TokenKind, int]:
    return {
        TokenKind.VERIFICATION: settings.verification_token_expire_seconds,
        TokenKind.ACCESS: settings.access_token_expire_seconds,
        TokenKind.REFRESH: settings.refresh_token_expire_seconds,
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, verifies and rotates tokens.

    Usage:
        tokens = TokenService(SettingsKeyProvider(get_settings()))
        t = tokens.issue(TokenKind.ACCESS, account.id, account.email)
        claims = tokens.verify(TokenKind.ACCESS, t)   # TokenClaims or None
    """

    def __init__(
        self,
        keys: SigningKeyProvider,
        lifetimes: Mapping[TokenKind, int] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.keys = keys
        self.lifetimes = {**DEFAULT_LIFETIMES, **(lifetimes or {})}
        self.clock = clock

    def lifetime(self, kind: TokenKind) -> int:
        """Lifetime in seconds for a token kind. Cookie max_age uses the same value."""
        return self.lifetimes[TokenKind(kind)]

    def issue(self, kind: TokenKind, account_id: str, email: str | None = None) -> str:
        kind = TokenKind(kind)
        now = self.clock()
        payload = {
            "sub": str(account_id),
            "kind": kind.value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.lifetimes[kind])).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        if email is not None:
            payload["email"] = email
        return jwt.encode(payload, self.keys.key_for(kind), algorithm=_ALGORITHM)

    def verify(self, kind: TokenKind, token: str | None) -> TokenClaims | None:
        """Decode and verify a token of the given kind. Returns claims or None on any failure."""
        if not token:
            return None
        kind = TokenKind(kind)
        try:
            payload = jwt.decode(token, self.keys.key_for(kind), algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("kind") != kind.value:
            return None
        try:
            return TokenClaims(
                subject=str(payload["sub"]),
                kind=kind,
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                token_id=str(payload["jti"]),
                email=payload.get("email"),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def issue_pair(self, account_id: str, email: str | None = None) -> TokenPair:
        return TokenPair(
            access_token=self.issue(TokenKind.ACCESS, account_id, email),
            refresh_token=self.issue(TokenKind.REFRESH, account_id, email),
        )

    def rotate(self, refresh_token: str | None) -> RotatedTokens | None:
        """Exchange a valid refresh token for a new access + refresh pair.

        Returns None if the refresh token fails verification for any reason;
        no tokens are issued in that case.
        """
        claims = self.verify(TokenKind.REFRESH, refresh_token)
        if claims is None:
            return None
        pair = self.issue_pair(claims.subject, claims.email)
        logger.debug("Rotated refresh token %s for account %s", claims.token_id, claims.subject)
        return RotatedTokens(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            account_id=claims.subject,
        )
