"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_secret_key -> ACCESS_SECRET_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Implements the DEBUG-conditional signing key policy: dev
      mode generates keys with a warning, production mode refuses to start.

Security notes:
  [K1] Three separate signing keys. The verification key never signs access
       or refresh tokens, so a leaked verification-flow secret cannot forge an
       authenticated session. Reusing the verification key for either session
       key is rejected at startup.

  [K2] Keys shorter than 32 chars are rejected outright. HS256 signing relies
       on key entropy -- a short key weakens every token kind.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'authgate.db'}"

_KEY_FIELDS = ("verification_secret_key", "access_secret_key", "refresh_secret_key")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing keys [K1]
    # Empty string is the sentinel for "not configured".
    # ------------------------------------------------------------------

    verification_secret_key: str = ""
    access_secret_key: str = ""
    refresh_secret_key: str = ""

    # ------------------------------------------------------------------
    # Token lifetimes (seconds)
    # ------------------------------------------------------------------

    verification_token_expire_seconds: int = 60 * 60
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_samesite: str = "strict"

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = 60 * 60
    otp_length: int = Field(default=6, ge=4, le=10)
    otp_max_attempts: int = Field(default=10, ge=1)
    otp_cleanup_interval_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    password_min_length: int = 8

    # ------------------------------------------------------------------
    # Outbound mail (SMTP)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 10.0
    email_from: str = ""
    # Public origin of the frontend, used to build the "open verification page" link.
    app_origin: str = ""
    smtp_max_retries: int = Field(default=3, ge=1)
    smtp_retry_delay_ms: int = 500

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    verify_rate_limit: str = "20/minute"
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K1][K2].

        Dev mode (DEBUG=true): auto-generate any missing key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if any key
            is missing.

        Both modes: reject keys shorter than 32 characters, and reject a
            verification key that is reused as an access or refresh key.
        """
        for name in _KEY_FIELDS:
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.verification_secret_key in (self.access_secret_key, self.refresh_secret_key):
            raise ValueError("VERIFICATION_SECRET_KEY must differ from ACCESS_SECRET_KEY and REFRESH_SECRET_KEY.")
        if self.cookie_samesite.lower() not in ("strict", "lax"):
            raise ValueError("COOKIE_SAMESITE must be 'strict' or 'lax'.")
        self.cookie_samesite = self.cookie_samesite.lower()
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
