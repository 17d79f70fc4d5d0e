"""Unit tests for auth/tokens.py -- TokenService issue / verify / rotate.

Covers:
- each kind round-trips its claims
- a token is only accepted as the kind it was issued as (key separation)
- expired, tampered, wrong-algorithm and garbage tokens are rejected
- rotate() mints a fresh pair for a valid refresh token and nothing for an expired one
- SettingsKeyProvider / StaticKeyProvider wiring
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.tokens import (
    SettingsKeyProvider,
    StaticKeyProvider,
    TokenKind,
    TokenService,
    lifetimes_from_settings,
)
from core.config import Settings
from tests.conftest import TEST_KEYS, FakeClock


class TestIssueVerify:
    @pytest.mark.parametrize("kind", list(TokenKind))
    def test_round_trip(self, tokens, kind):
        token = tokens.issue(kind, "acct123", "a@x.com")
        claims = tokens.verify(kind, token)
        assert claims is not None
        assert claims.subject == "acct123"
        assert claims.email == "a@x.com"
        assert claims.kind is kind
        assert (claims.expires_at - claims.issued_at).total_seconds() == tokens.lifetime(kind)

    def test_default_lifetimes(self, tokens):
        assert tokens.lifetime(TokenKind.VERIFICATION) == 3600
        assert tokens.lifetime(TokenKind.ACCESS) == 900
        assert tokens.lifetime(TokenKind.REFRESH) == 7 * 24 * 3600

    def test_email_is_optional(self, tokens):
        claims = tokens.verify(TokenKind.ACCESS, tokens.issue(TokenKind.ACCESS, "acct123"))
        assert claims is not None
        assert claims.email is None

    def test_every_token_has_unique_id(self, tokens):
        a = tokens.verify(TokenKind.ACCESS, tokens.issue(TokenKind.ACCESS, "x"))
        b = tokens.verify(TokenKind.ACCESS, tokens.issue(TokenKind.ACCESS, "x"))
        assert a.token_id != b.token_id

    @pytest.mark.parametrize(
        "issued,checked",
        [
            (TokenKind.VERIFICATION, TokenKind.ACCESS),
            (TokenKind.VERIFICATION, TokenKind.REFRESH),
            (TokenKind.ACCESS, TokenKind.VERIFICATION),
            (TokenKind.ACCESS, TokenKind.REFRESH),
            (TokenKind.REFRESH, TokenKind.ACCESS),
        ],
    )
    def test_wrong_kind_rejected(self, tokens, issued, checked):
        assert tokens.verify(checked, tokens.issue(issued, "acct123")) is None

    def test_kind_claim_checked_even_with_shared_key(self):
        """If two kinds were ever configured with one key, the kind claim still separates them."""
        shared = StaticKeyProvider({k: "s" * 40 for k in TokenKind})
        svc = TokenService(shared)
        assert svc.verify(TokenKind.ACCESS, svc.issue(TokenKind.REFRESH, "acct123")) is None

    def test_expired_rejected(self, tokens):
        past = FakeClock(datetime.now(timezone.utc) - timedelta(hours=2))
        old = TokenService(StaticKeyProvider(TEST_KEYS), clock=past)
        token = old.issue(TokenKind.ACCESS, "acct123")
        assert tokens.verify(TokenKind.ACCESS, token) is None

    def test_tampered_signature_rejected(self, tokens):
        token = tokens.issue(TokenKind.ACCESS, "acct123")
        head, payload, sig = token.split(".")
        forged = ".".join([head, payload, ("A" if sig[0] != "A" else "B") + sig[1:]])
        assert tokens.verify(TokenKind.ACCESS, forged) is None

    def test_foreign_key_rejected(self, tokens):
        token = jwt.encode(
            {"sub": "acct123", "kind": "access", "iat": 0, "exp": 4102444800, "jti": "x"},
            "z" * 40,
            algorithm="HS256",
        )
        assert tokens.verify(TokenKind.ACCESS, token) is None

    def test_other_algorithm_rejected(self, tokens):
        token = jwt.encode(
            {"sub": "acct123", "kind": "access", "iat": 0, "exp": 4102444800, "jti": "x"},
            TEST_KEYS[TokenKind.ACCESS],
            algorithm="HS512",
        )
        assert tokens.verify(TokenKind.ACCESS, token) is None

    def test_missing_claim_rejected(self, tokens):
        token = jwt.encode(
            {"sub": "acct123", "kind": "access", "exp": 4102444800},
            TEST_KEYS[TokenKind.ACCESS],
            algorithm="HS256",
        )
        assert tokens.verify(TokenKind.ACCESS, token) is None

    @pytest.mark.parametrize("garbage", [None, "", "not-a-jwt", "a.b.c"])
    def test_garbage_rejected(self, tokens, garbage):
        assert tokens.verify(TokenKind.ACCESS, garbage) is None


class TestRotate:
    def test_valid_refresh_mints_new_pair(self, tokens):
        refresh = tokens.issue(TokenKind.REFRESH, "acct123", "a@x.com")
        rotated = tokens.rotate(refresh)
        assert rotated is not None
        assert rotated.account_id == "acct123"
        assert rotated.refresh_token != refresh
        access_claims = tokens.verify(TokenKind.ACCESS, rotated.access_token)
        refresh_claims = tokens.verify(TokenKind.REFRESH, rotated.refresh_token)
        assert access_claims.subject == refresh_claims.subject == "acct123"
        assert access_claims.email == "a@x.com"

    def test_expired_refresh_returns_none(self):
        """An expired refresh token yields nothing -- no new tokens are issued."""
        past = FakeClock(datetime.now(timezone.utc) - timedelta(days=8))
        old = TokenService(StaticKeyProvider(TEST_KEYS), clock=past)
        expired = old.issue(TokenKind.REFRESH, "acct123")
        assert TokenService(StaticKeyProvider(TEST_KEYS)).rotate(expired) is None

    def test_access_token_cannot_rotate(self, tokens):
        assert tokens.rotate(tokens.issue(TokenKind.ACCESS, "acct123")) is None

    def test_none_returns_none(self, tokens):
        assert tokens.rotate(None) is None


class TestKeyProviders:
    def test_static_requires_every_kind(self):
        with pytest.raises(ValueError, match="missing signing keys"):
            StaticKeyProvider({TokenKind.ACCESS: "a" * 40})

    def test_settings_provider_and_lifetimes(self):
        settings = Settings(
            verification_secret_key="v" * 32,
            access_secret_key="a" * 32,
            refresh_secret_key="r" * 32,
            access_token_expire_seconds=60,
        )
        keys = SettingsKeyProvider(settings)
        assert keys.key_for(TokenKind.VERIFICATION) == "v" * 32
        assert keys.key_for(TokenKind.ACCESS) == "a" * 32
        assert keys.key_for(TokenKind.REFRESH) == "r" * 32
        assert lifetimes_from_settings(settings)[TokenKind.ACCESS] == 60
