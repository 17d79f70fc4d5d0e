"""
tests/test_purge_loop.py -- The background expired-OTP sweep in api/main.py.

_purge_loop takes its sleep as a parameter; the tests pass an AsyncMock that
returns immediately a few times and then raises CancelledError, which is how
the lifespan stops the real task on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.main import _purge_loop
from auth.models import Account, OtpChallenge, OtpPurpose

_PURPOSE = OtpPurpose.EMAIL_VERIFICATION


def _ticks(n: int) -> AsyncMock:
    """A sleep that lets the loop run n sweeps, then cancels it."""
    return AsyncMock(side_effect=[None] * n + [asyncio.CancelledError()])


def _seed_challenge(store, email: str, expires_in: int) -> str:
    account = store.create_account(Account(email=email, name="N", password_hash="h"))
    store.upsert_challenge(
        OtpChallenge(
            account_id=account.id,
            purpose=_PURPOSE,
            code_hash="a" * 64,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
    )
    return account.id


def test_sweep_removes_only_expired(store, caplog):
    expired_id = _seed_challenge(store, "old@x.com", -60)
    live_id = _seed_challenge(store, "new@x.com", 600)
    app = SimpleNamespace(state=SimpleNamespace(store=store))
    sleep = _ticks(1)

    with caplog.at_level(logging.INFO, logger="authgate.api"):
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(_purge_loop(app, 600, sleep=sleep))

    sleep.assert_awaited_with(600)
    assert store.find_challenge(expired_id, _PURPOSE) is None
    assert store.find_challenge(live_id, _PURPOSE) is not None
    assert "Purged 1 expired OTP challenge(s)" in caplog.text


def test_failed_sweep_is_logged_and_loop_continues(caplog):
    failing_store = MagicMock()
    failing_store.purge_expired_challenges.side_effect = [RuntimeError("database is locked"), 2]
    app = SimpleNamespace(state=SimpleNamespace(store=failing_store))

    with caplog.at_level(logging.INFO, logger="authgate.api"):
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(_purge_loop(app, 600, sleep=_ticks(2)))

    assert failing_store.purge_expired_challenges.call_count == 2
    assert "Expired OTP sweep failed" in caplog.text
    assert "Purged 2 expired OTP challenge(s)" in caplog.text


def test_nothing_logged_when_nothing_expired(store, caplog):
    _seed_challenge(store, "new@x.com", 600)
    app = SimpleNamespace(state=SimpleNamespace(store=store))

    with caplog.at_level(logging.INFO, logger="authgate.api"):
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(_purge_loop(app, 600, sleep=_ticks(1)))

    assert "Purged" not in caplog.text
    assert store.count_challenges() == 1
