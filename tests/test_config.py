"""
Tests for core/config.py -- signing key policy and setting validation.

Settings is constructed directly with keyword arguments so the cached
get_settings() singleton used by the rest of the suite is never disturbed.
Keyword arguments take precedence over the DEBUG=true environment variable
set in conftest.py.
"""

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings

_KEYS = dict(
    verification_secret_key="v" * 32,
    access_secret_key="a" * 32,
    refresh_secret_key="r" * 32,
)


def test_production_requires_keys():
    with pytest.raises(ValidationError, match="VERIFICATION_SECRET_KEY is required"):
        Settings(debug=False)


def test_production_accepts_explicit_keys():
    settings = Settings(debug=False, **_KEYS)
    assert settings.access_secret_key == "a" * 32


def test_debug_generates_distinct_keys():
    settings = Settings(debug=True)
    keys = {settings.verification_secret_key, settings.access_secret_key, settings.refresh_secret_key}
    assert len(keys) == 3
    assert all(len(k) >= 32 for k in keys)


def test_short_key_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=False, **{**_KEYS, "access_secret_key": "short"})


def test_verification_key_must_not_be_reused():
    with pytest.raises(ValidationError, match="must differ"):
        Settings(debug=False, **{**_KEYS, "refresh_secret_key": "v" * 32})


def test_samesite_normalized_and_checked():
    assert Settings(debug=True, cookie_samesite="Lax").cookie_samesite == "lax"
    with pytest.raises(ValidationError):
        Settings(debug=True, cookie_samesite="none")


@pytest.mark.parametrize(
    "field,value",
    [("otp_length", 3), ("otp_length", 11), ("bcrypt_rounds", 3), ("otp_max_attempts", 0)],
)
def test_bounds(field, value):
    with pytest.raises(ValidationError):
        Settings(debug=True, **{field: value})


def test_defaults():
    settings = Settings(debug=True)
    assert settings.otp_ttl_seconds == 3600
    assert settings.otp_length == 6
    assert settings.otp_max_attempts == 10
    assert settings.access_token_expire_seconds == 900
    assert settings.refresh_token_expire_seconds == 7 * 24 * 3600
    assert settings.cookie_samesite == "strict"


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
