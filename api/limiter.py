"""
api/limiter.py -- Shared slowapi rate limiter for the auth endpoints.

Per-route limits (login, register, verify) come from Settings and are applied
with @limiter.limit() in api/routes/v1/auth.py; api/main.py mounts the
middleware and the 429 handler. One shared instance means one counter store --
separate instances per module would each count in isolation and never trip.

Keyed by client IP. OTP brute force is bounded independently by the
per-challenge attempt counter, so this limit is about request volume, not
correctness.

RATE_LIMIT_ENABLED=false turns limiting off (test suites that log in many
times from one TestClient address).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
