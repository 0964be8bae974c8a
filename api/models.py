"""
API request and response models for identity-core REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
password_hash never appears in any response model.
"""

import re
from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthTokens, Identity, UserSettings

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the verification flow, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[str, Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)]
_Name = Annotated[str, Field(max_length=100)]


def _check_password_strength(value: str) -> str:
    """Require 8-72 bytes with at least one letter and one digit.

    72 bytes is bcrypt's input limit; longer passwords are rejected here so
    the hasher never sees them.
    """
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long.")
    if len(value.encode("utf-8")) > 72:
        raise ValueError("Password cannot be longer than 72 bytes.")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
        raise ValueError("Password must contain at least one letter and one digit.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only the email is trimmed before validation. Passwords are taken byte for
    byte -- leading or trailing spaces are part of the secret.
    """

    email: _Email
    password: str
    first_name: Optional[_Name] = None
    last_name: Optional[_Name] = None

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No strength rules here: a login must fail with the generic 401, not a
    422 that hints at the password policy.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class UpdateProfileRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/me.

    Only fields present in the JSON body are applied (model_fields_set);
    an explicit null clears a name.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[_Email] = None
    first_name: Optional[_Name] = None
    last_name: Optional[_Name] = None


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokensResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "TokensResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )


class SettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    currency: str
    timezone: str
    notification_email: bool
    notification_portfolio_changes: bool

    @classmethod
    def from_settings(cls, settings: UserSettings) -> "SettingsResponse":
        return cls(
            currency=settings.currency,
            timezone=settings.timezone,
            notification_email=settings.notification_email,
            notification_portfolio_changes=settings.notification_portfolio_changes,
        )


class IdentityResponse(BaseModel):
    """Public view of an Identity. Built via from_identity(); never exposes the hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    is_active: bool
    email_verified: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    last_login_at: Optional[datetime]

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            is_active=identity.is_active,
            email_verified=identity.email_verified,
            created_at=identity.created_at,
            updated_at=identity.updated_at,
            last_login_at=identity.last_login_at,
        )


class ProfileResponse(IdentityResponse):
    settings: Optional[SettingsResponse] = None


class AuthResponse(BaseModel):
    """Response for register and login: the identity plus its token pair."""

    model_config = ConfigDict(frozen=True)

    user: IdentityResponse
    tokens: TokensResponse
    warnings: list[str] = []


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    warnings: list[str] = []


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
    components: dict[str, str]
