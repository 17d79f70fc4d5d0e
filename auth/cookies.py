"""
auth/cookies.py -- Cookie helpers for the verification and session tokens.

Every auth cookie is written the same way:
  httponly=True   JS cannot read the cookie (XSS mitigation).
  samesite        Settings.cookie_samesite ("strict" by default, "lax" allowed).
  secure          only sent over HTTPS when SECURE_COOKIES=true (production).
  path="/"        one scope for every endpoint.
  max_age         matches the token lifetime so cookie and token expire together.

The response argument is any Starlette/FastAPI response object.
"""

from __future__ import annotations

from auth.tokens import TokenKind, TokenPair, TokenService
from core.config import get_settings

VERIFICATION_COOKIE = "verificationToken"
ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def _set(response, name: str, value: str, max_age: int) -> None:
    settings = get_settings()
    response.set_cookie(
        name,
        value=value,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=max_age,
        path="/",
    )


def _clear(response, name: str) -> None:
    settings = get_settings()
    response.delete_cookie(
        name,
        path="/",
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
    )


def set_verification_cookie(response, token: str, tokens: TokenService) -> None:
    _set(response, VERIFICATION_COOKIE, token, tokens.lifetime(TokenKind.VERIFICATION))


def clear_verification_cookie(response) -> None:
    _clear(response, VERIFICATION_COOKIE)


def set_session_cookies(response, pair: TokenPair, tokens: TokenService) -> None:
    """Write the access (short) and refresh (long) cookies."""
    _set(response, ACCESS_COOKIE, pair.access_token, tokens.lifetime(TokenKind.ACCESS))
    _set(response, REFRESH_COOKIE, pair.refresh_token, tokens.lifetime(TokenKind.REFRESH))


def clear_session_cookies(response) -> None:
    _clear(response, ACCESS_COOKIE)
    _clear(response, REFRESH_COOKIE)
