"""
API request and response models for the Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SecondFactorEnum(str, Enum):
    TOTP = "TOTP"
    EMAIL = "EMAIL"


class ChannelEnum(str, Enum):
    EMAIL = "EMAIL"


class TwoFactorSettingEnum(str, Enum):
    NONE = "NONE"
    EMAIL = "EMAIL"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No whitespace stripping here: passwords are compared exactly as sent.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class TwoFactorRequest(BaseModel):
    """Request body for POST /api/v1/auth/two-factor.

    ticket is the pending_token for TOTP and the request_id for EMAIL.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    method: SecondFactorEnum
    code: str = Field(min_length=1, max_length=16)
    ticket: str = Field(min_length=1, max_length=2048)


class PasswordlessRequest(BaseModel):
    """Request body for POST /api/v1/auth/passwordless. login is a username or email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    login: str = Field(min_length=1, max_length=255)
    channel: ChannelEnum = ChannelEnum.EMAIL


class PasswordlessCompleteRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    request_id: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=1, max_length=16)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=256)


class SecondFactorUpdate(BaseModel):
    """Request body for PUT /api/v1/users/me/two-factor. TOTP is enrolled via its own route."""

    method: TwoFactorSettingEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Access/refresh pair returned by every successful authentication path."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    roles: list[str]


class TwoFactorChallengeResponse(BaseModel):
    """Password or login code accepted; the client must complete a second factor.

    For TOTP, ticket is a short-lived pending token and expires_in is its TTL.
    For EMAIL, ticket is the request id of the code that was just sent.
    """

    model_config = ConfigDict(frozen=True)

    two_factor_required: bool = True
    method: SecondFactorEnum
    ticket: str
    channel: Optional[ChannelEnum] = None
    expires_in: Optional[int] = None


class PasswordlessStartedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    channel: ChannelEnum


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: str
    roles: list[str]
    two_factor_enabled: bool
    two_factor_method: str
    metadata: dict[str, Optional[str | int | float | bool]] = Field(default_factory=dict)


class TotpEnrollmentResponse(BaseModel):
    """Shown once: the secret and the otpauth:// URI to load into an authenticator app."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


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
