"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound sizes and strip whitespace. Format rules (email
shape, password policy, OTP digits) live in auth/lifecycle.py so every entry
point shares them and they surface as 400 ValidationError.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    No str_strip_whitespace here: passwords are taken verbatim. The lifecycle
    trims email and name itself.
    """

    email: str = Field(max_length=320)
    password: str = Field(max_length=255)
    name: str = Field(max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(max_length=320)
    password: str = Field(max_length=255)


class VerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify.

    email is only consulted when no verificationToken cookie is present.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    otp: str = Field(max_length=16)
    email: Optional[str] = Field(default=None, max_length=320)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    redirect_to: Optional[str] = None


class VerifyInfoResponse(BaseModel):
    """Response for GET /api/v1/auth/verify/info -- lets the client pre-fill the verify form."""

    model_config = ConfigDict(frozen=True)

    email: str


class MeResponse(BaseModel):
    """Identity of the authenticated account."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str


class VerifiedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: MeResponse


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
