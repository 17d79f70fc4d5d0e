"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the credential core once (store, OTP engine, token service,
mailer, lifecycle), starts the expired-OTP sweep, and tears both down
symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_account
from auth.errors import AuthGateError, InternalError
from auth.lifecycle import AccountLifecycle
from auth.mailer import SmtpOtpMailer
from auth.models import Account
from auth.otp import OtpEngine
from auth.store import CredentialStore
from auth.tokens import SettingsKeyProvider, TokenService, lifetimes_from_settings
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_lifecycle(settings: Settings, store: CredentialStore, mailer=None) -> AccountLifecycle:
    """Wire the credential core from Settings.

    mailer defaults to SMTP; tests pass a mock so no network is touched.
    """
    otp = OtpEngine(
        store,
        ttl_seconds=settings.otp_ttl_seconds,
        length=settings.otp_length,
        max_attempts=settings.otp_max_attempts,
    )
    tokens = TokenService(SettingsKeyProvider(settings), lifetimes=lifetimes_from_settings(settings))
    return AccountLifecycle(
        store,
        otp,
        tokens,
        mailer if mailer is not None else SmtpOtpMailer.from_settings(settings),
        password_min_length=settings.password_min_length,
    )


# ---------------------------------------------------------------------------
# Background OTP sweep
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int, sleep=asyncio.sleep) -> None:
    """Delete expired OTP challenges every interval_seconds.

    Advisory cleanup only: OtpEngine.verify() re-checks expiry on every call.
    A failed sweep is logged and retried on the next tick. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await sleep(interval_seconds)
        try:
            purged = app.state.store.purge_expired_challenges()
        except Exception:
            logger.exception("Expired OTP sweep failed")
            continue
        if purged:
            logger.info("Purged %d expired OTP challenge(s)", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Store first (everything depends on it), lifecycle second, sweep
    last (references app.state.store).
    """
    logger.info("AuthGate API starting up")
    app.state.store = CredentialStore(_settings.database_url)
    app.state.lifecycle = build_lifecycle(_settings, app.state.store)
    logger.info("Credential store and lifecycle initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.otp_cleanup_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Registration, password login, OTP email verification and access/refresh sessions.",
    version=__version__,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below with auth-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # Cookies carry every credential, so the browser must be allowed to send them.
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(account: Account = Depends(get_current_account)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AuthGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account: Account = Depends(get_current_account)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="AuthGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthGateError)
async def domain_error_handler(request: Request, exc: AuthGateError) -> JSONResponse:
    """Map a lifecycle error to its stable status + code + message.

    Messages are written to be client-safe; nothing from the underlying cause
    is echoed. 5xx domain errors are still logged with their traceback.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path, exc_info=exc)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when the request body fails schema validation."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Report a credential store failure as InternalError.

    The driver message can carry SQL and bound values, so it is logged only.
    """
    internal = InternalError()
    internal.__cause__ = exc
    return await domain_error_handler(request, internal)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    internal = InternalError()
    return JSONResponse(
        status_code=internal.status_code,
        content=ErrorResponse(error=ErrorDetail(code=internal.code, message=internal.message)).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Not rate limited -- load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    db_ok = request.app.state.store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
