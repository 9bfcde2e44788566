"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import IssuedTokens, User

# Deliberately loose: the user store is the authority on addresses. This only
# rejects obvious garbage before it reaches bcrypt or the database.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    # max_length keeps inputs below bcrypt's 72-byte truncation point.
    password: str = Field(min_length=1, max_length=64)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class RegisterRequest(LoginRequest):
    """Request body for POST /api/v1/auth/register."""

    password: str = Field(min_length=8, max_length=64)
    full_name: Optional[str] = Field(default=None, max_length=255)


class RefreshTokenBody(BaseModel):
    """Optional body for refresh/logout when the client cannot send cookies."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PairingInitiateRequest(BaseModel):
    """Request body for POST /api/v1/auth/desktop/initiate."""

    model_config = ConfigDict(str_strip_whitespace=True)

    device_name: str = Field(min_length=1, max_length=255)
    device_id: str = Field(min_length=1, max_length=255)


class PairingAuthorizeRequest(BaseModel):
    """Request body for POST /api/v1/auth/desktop/authorize."""

    model_config = ConfigDict(str_strip_whitespace=True)

    auth_code: str = Field(min_length=1, max_length=64)


class PairingExchangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/desktop/exchange."""

    model_config = ConfigDict(str_strip_whitespace=True)

    auth_code: str = Field(min_length=1, max_length=64)
    device_id: str = Field(min_length=1, max_length=255)


class CredentialCreate(BaseModel):
    """Request body for POST /api/v1/admin/credentials."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    api_key: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Live snapshot of a user record. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: Optional[str]
    role: str
    subscription_tier: str
    last_sign_in_at: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            subscription_tier=user.subscription_tier,
            last_sign_in_at=user.last_sign_in_at,
            created_at=user.created_at,
        )


class TokenBundle(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # access token lifetime, seconds
    refresh_expires_at: datetime


class LoginResponse(BaseModel):
    """Response for login, register, refresh and device token exchange."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse
    tokens: TokenBundle
    session_id: int

    @classmethod
    def from_issued(cls, issued: IssuedTokens, now: datetime) -> "LoginResponse":
        return cls(
            user=UserResponse.from_user(issued.user),
            tokens=TokenBundle(
                access_token=issued.access_token,
                refresh_token=issued.refresh_token,
                expires_in=max(0, int((issued.access_expires_at - now).total_seconds())),
                refresh_expires_at=issued.refresh_expires_at,
            ),
            session_id=issued.session.id,
        )


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class SessionInfo(BaseModel):
    """One active session. The refresh token itself is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    created_at: datetime
    expires_at: datetime


class PairingInitiateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    auth_code: str
    expires_at: datetime
    authorization_url: str


class PairingAuthorizeResponse(BaseModel):
    """The device collects its tokens through /auth/desktop/exchange."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    session_id: int
    expires_at: datetime


class CleanupCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    expired: int
    old: int
    total: int


class CleanupResponse(BaseModel):
    """Response for the session cleanup maintenance endpoint."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    cleaned: CleanupCounts


class CredentialResponse(BaseModel):
    """A stored provider API key, masked. The plaintext never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    masked_key: str
    created_at: Optional[datetime]
