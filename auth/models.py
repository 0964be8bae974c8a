"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work; these classes own the domain shape only.

Identity.email is always stored in normalized form (see normalize_email). The
store's UNIQUE constraint on that column is the final authority on duplicate
accounts.

TokenClaims are never persisted -- they exist only as signed strings in
transit and as the parsed result of TokenCodec.parse().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def normalize_email(email: str) -> str:
    """Trim and lowercase an email so uniqueness checks are case-insensitive."""
    return email.strip().lower()


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password-reset"
    EMAIL_VERIFICATION = "email-verification"


class AuditAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_CHANGE = "password_change"


@dataclass
class Identity:
    """The persisted user/account record.

    id is None until IdentityStore.insert() assigns a UUID. password_hash is a
    bcrypt digest and must never be serialized to a response.
    """

    email: str
    password_hash: str
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class UserSettings:
    """Per-identity preferences, created with defaults at registration."""

    identity_id: str
    currency: str = "USD"
    timezone: str = "America/New_York"
    notification_email: bool = True
    notification_portfolio_changes: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    purpose: TokenPurpose
    issued_at: datetime
    expires_at: datetime
    token_id: str
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of a security-relevant action.

    id is assigned by the sink on append; the core never updates or deletes
    an event once written.
    """

    action: AuditAction
    identity_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict | None = None
    created_at: datetime | None = None
    id: str | None = None


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"


@dataclass
class AuthResult:
    """Successful register/login outcome.

    warnings carries degraded-mode notices (e.g. "audit_degraded") that the
    adapter may surface; an empty list means a clean run.
    """

    identity: Identity
    tokens: AuthTokens
    warnings: list[str] = field(default_factory=list)


@dataclass
class Profile:
    identity: Identity
    settings: UserSettings | None = None
