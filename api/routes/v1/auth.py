"""
api/routes/v1/auth.py -- Registration, login, OTP verification and session endpoints.

Routes:
  POST /api/v1/auth/register        -- create account, email OTP; sets verificationToken cookie
  POST /api/v1/auth/login           -- password login; verification cookie or session cookies
  GET  /api/v1/auth/verify/info     -- email carried by the verificationToken cookie
  POST /api/v1/auth/verify          -- consume OTP; sets accessToken + refreshToken cookies
  POST /api/v1/auth/verify/resend   -- reissue OTP when none is live
  POST /api/v1/auth/logout          -- clears all auth cookies
  GET  /api/v1/auth/user/me         -- current account, or null (rotates via refresh cookie)

Security:
  [H2] register / login / verify are rate-limited per IP (limits from Settings).
  [C1] AccountLifecycle.authenticate_credentials() equalizes timing -- never inline
       a lookup + verify_password() here.
  [M5] Cache-Control: no-store on every response that sets or clears credentials.

Handlers are plain `def`: bcrypt and SMTP block, so Starlette runs them in
its threadpool. Domain errors propagate to the AuthGateError handler in
api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    VerifiedResponse,
    VerifyInfoResponse,
    VerifyRequest,
)
from auth.cookies import (
    VERIFICATION_COOKIE,
    clear_session_cookies,
    clear_verification_cookie,
    set_session_cookies,
    set_verification_cookie,
)
from auth.dependencies import try_get_current_account
from auth.lifecycle import AccountLifecycle
from auth.models import Account
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/register:       public, rate-limited
# - POST /api/v1/auth/login:          public, rate-limited
# - GET  /api/v1/auth/verify/info:    requires verificationToken cookie
# - POST /api/v1/auth/verify:         verificationToken cookie or email in body, rate-limited
# - POST /api/v1/auth/verify/resend:  requires verificationToken cookie, rate-limited
# - POST /api/v1/auth/logout:         public -- clearing cookies needs no prior auth
# - GET  /api/v1/auth/user/me:        soft auth -- returns null when unauthenticated
router = APIRouter()


def _lifecycle(request: Request) -> AccountLifecycle:
    return request.app.state.lifecycle


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _me(account: Account) -> MeResponse:
    return MeResponse(id=account.id, email=account.email, role=account.role)


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.register_rate_limit)  # [H2]
@router.post("/auth/register", response_model=MessageResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an unverified account and email its verification code.

    409 for an existing email (pre-check or unique-index race alike).
    500 if the email cannot be delivered -- the account is rolled back first.
    """
    lifecycle = _lifecycle(request)
    result = lifecycle.register(body.email, body.password, body.name)
    resp = JSONResponse(
        status_code=201,
        content=MessageResponse(message=f"Account created. Verification code sent to {result.account.email}").model_dump(
            exclude_none=True
        ),
    )
    set_verification_cookie(resp, result.verification_token, lifecycle.tokens)
    return _no_store(resp)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=MessageResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unverified accounts get a verificationToken cookie and redirect_to=/verify;
    an OTP is (re)sent only if no live one exists. Verified accounts get the
    access + refresh cookies. Wrong password and unknown email both return the
    same 401 "bad_credentials".
    """
    lifecycle = _lifecycle(request)
    result = lifecycle.login(body.email, body.password)

    if result.verification_required:
        resp = JSONResponse(
            status_code=200,
            content=MessageResponse(message="Verification required", redirect_to=result.redirect_to).model_dump(),
        )
        set_verification_cookie(resp, result.verification_token, lifecycle.tokens)
        return _no_store(resp)

    resp = JSONResponse(
        status_code=200,
        content=MessageResponse(message="Login successful").model_dump(exclude_none=True),
    )
    set_session_cookies(resp, result.tokens, lifecycle.tokens)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout() -> JSONResponse:
    """Clear every auth cookie. Tokens are stateless, so this is client-side only."""
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump(exclude_none=True))
    clear_session_cookies(resp)
    clear_verification_cookie(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# OTP verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify/info", response_model=VerifyInfoResponse)
def verify_info(request: Request) -> VerifyInfoResponse:
    """Return the email embedded in the verificationToken cookie (401 if missing/invalid)."""
    email = _lifecycle(request).verification_info(request.cookies.get(VERIFICATION_COOKIE))
    return VerifyInfoResponse(email=email)


@limiter.limit(_settings.verify_rate_limit)  # [H2]
@router.post("/auth/verify", response_model=VerifiedResponse)
def verify(request: Request, body: VerifyRequest) -> JSONResponse:
    """Consume an OTP. On success the account is verified and a session starts.

    400 malformed / no code issued / already verified, 401 incorrect code or
    bad token, 410 expired, 429 too many attempts.
    """
    lifecycle = _lifecycle(request)
    result = lifecycle.verify_otp(
        body.otp,
        verification_token=request.cookies.get(VERIFICATION_COOKIE),
        email=body.email,
    )
    resp = JSONResponse(
        status_code=200,
        content=VerifiedResponse(message="Account verified and logged in", user=_me(result.account)).model_dump(),
    )
    set_session_cookies(resp, result.tokens, lifecycle.tokens)
    clear_verification_cookie(resp)
    return _no_store(resp)


@limiter.limit(_settings.verify_rate_limit)  # [H2]
@router.post("/auth/verify/resend", response_model=MessageResponse)
def resend_verification(request: Request) -> MessageResponse:
    """Send a fresh code if the previous one expired or was consumed; otherwise do nothing."""
    sent = _lifecycle(request).resend_otp(request.cookies.get(VERIFICATION_COOKIE))
    if sent:
        return MessageResponse(message="Verification code sent.")
    return MessageResponse(message="A verification code is still active. Check your inbox.")


# ---------------------------------------------------------------------------
# Current account
# ---------------------------------------------------------------------------


@router.get("/auth/user/me", response_model=Optional[MeResponse])
def me(account: Optional[Account] = Depends(try_get_current_account)) -> Optional[MeResponse]:
    """Return the current account, or null when unauthenticated.

    Rotated cookies (expired access token + valid refresh token) are written
    by the dependency onto this response.
    """
    if account is None:
        return None
    return _me(account)
