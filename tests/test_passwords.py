"""Unit tests for auth/passwords.py -- bcrypt hashing and fail-closed verification."""

import bcrypt
import pytest

from auth.passwords import _DUMMY_HASH, hash_password, verify_password


def test_hash_is_salted_bcrypt():
    a = hash_password("correct horse", rounds=4)
    b = hash_password("correct horse", rounds=4)
    assert a != b
    assert a.startswith("$2")
    assert verify_password("correct horse", a)
    assert verify_password("correct horse", b)


def test_rounds_are_applied():
    assert hash_password("pw123456", rounds=5).split("$")[2] == "05"


def test_default_rounds_come_from_settings():
    # conftest sets BCRYPT_ROUNDS=4
    assert hash_password("pw123456").split("$")[2] == "04"


def test_wrong_password_rejected():
    assert verify_password("wrong", hash_password("right-password", rounds=4)) is False


@pytest.mark.parametrize("stored", [None, "", "not-a-bcrypt-hash", "$2b$04$short"])
def test_malformed_stored_hash_fails_closed(stored):
    assert verify_password("anything", stored) is False


def test_dummy_hash_is_valid_bcrypt():
    """The timing dummy must be a real hash or unknown-email checks would short-circuit."""
    assert bcrypt.checkpw(b"authgate_timing_dummy", _DUMMY_HASH.encode())
    assert verify_password("some-user-password", _DUMMY_HASH) is False
