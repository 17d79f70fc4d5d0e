"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - FakeClock: controllable UTC clock for OTP / token expiry boundaries
  - store / otp / tokens / mailer / lifecycle: unit-level components wired
    to an in-memory SQLite store and a MagicMock mailer
  - client: TestClient against the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient fixture because sync route handlers run in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit fixtures run on one thread, so :memory: is fine there.

Environment must be set before any auth/core/api import: DEBUG lets
get_settings() auto-generate signing keys, BCRYPT_ROUNDS=4 keeps hashing fast,
RATE_LIMIT_ENABLED=false stops slowapi from throttling repeated logins.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_lifecycle
from auth.lifecycle import AccountLifecycle
from auth.otp import OtpEngine
from auth.store import CredentialStore
from auth.tokens import StaticKeyProvider, TokenKind, TokenService
from core.config import get_settings

TEST_KEYS = {
    TokenKind.VERIFICATION: "v" * 40,
    TokenKind.ACCESS: "a" * 40,
    TokenKind.REFRESH: "r" * 40,
}


class FakeClock:
    """Callable clock pinned to a whole second so epoch round-trips are exact."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def sent_codes(mailer: MagicMock) -> list[str]:
    """Plaintext codes handed to the mock mailer, oldest first."""
    return [c.args[1] for c in mailer.send_otp.call_args_list]


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def otp(store: CredentialStore, clock: FakeClock) -> OtpEngine:
    return OtpEngine(store, ttl_seconds=3600, length=6, max_attempts=10, clock=clock)


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(StaticKeyProvider(TEST_KEYS))


@pytest.fixture
def mailer() -> MagicMock:
    return MagicMock()


@pytest.fixture
def lifecycle(store, otp, tokens, mailer) -> AccountLifecycle:
    return AccountLifecycle(store, otp, tokens, mailer, password_min_length=8)


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, mailer: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-created test store and a mock mailer into app.state so routes
    never touch the production DB or an SMTP server. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.lifecycle = build_lifecycle(get_settings(), store, mailer=mailer)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def client() -> Generator[tuple[TestClient, MagicMock, CredentialStore], None, None]:
    """Yield (client, mailer, store) backed by a fresh shared-memory database.

    Function-scoped so the cookie jar and the database start empty for every
    test -- auth flows depend on exactly which cookies are present.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    test_store = CredentialStore(db_url)
    mock_mailer = MagicMock()

    app.router.lifespan_context = _patch_lifespan(test_store, mock_mailer)

    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, mock_mailer, test_store

    test_store.close()
