"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is looked up in priority order:
  1. accessToken cookie -- set by login / verify.
  2. Authorization: Bearer <token> header -- API clients.

If the access token is missing or invalid and a refreshToken cookie is
present, the lifecycle rotates it. The new pair is written onto the outgoing
response here, so any route that depends on the current account propagates
rotated cookies automatically.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

auth/dependencies.py may import from fastapi because this module is part of
the FastAPI dependency injection system. It reads the lifecycle from
request.app.state, never from api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, Response

from auth.cookies import ACCESS_COOKIE, REFRESH_COOKIE, set_session_cookies
from auth.lifecycle import AccountLifecycle
from auth.models import Account

logger = logging.getLogger("authgate.auth")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None
    return None


def try_get_current_account(request: Request, response: Response) -> Account | None:
    """Authenticate the request from its tokens, rotating via refresh if needed.

    Returns the Account on success, None on any failure. Never raises --
    callers that need a hard 401 should use get_current_account().
    """
    lifecycle: AccountLifecycle = request.app.state.lifecycle

    access_token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(request)
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not access_token and not refresh_token:
        return None

    auth = lifecycle.authenticate(access_token=access_token, refresh_token=refresh_token)
    if auth is None:
        return None
    if auth.rotated is not None:
        set_session_cookies(response, auth.rotated, lifecycle.tokens)
        logger.info("Rotated session tokens for account %s", auth.account.id)
    return auth.account


def get_current_account(request: Request, response: Response) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request, response)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account
