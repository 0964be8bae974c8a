"""
auth/errors.py -- Error taxonomy for the authentication core.

Caller-facing errors (AuthError subclasses) carry a stable machine-readable
code. The HTTP adapter maps each class to a status code; the core itself knows
nothing about transports.

Internal errors (HashingError, TokenError, AuditWriteError) are raised by the
leaf components. AuthService translates them to the nearest caller-facing
error and never lets them escape raw -- the one exception is AuditWriteError
when the service runs with audit_fail_open=False.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class AuthError(Exception):
    """Base class for errors returned to callers of AuthService."""

    code = "auth_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(AuthError):
    """Duplicate email on registration or profile update."""

    code = "conflict"


class UnauthorizedError(AuthError):
    """Bad credentials, disabled account, or wrong current password."""

    code = "unauthorized"


class NotFoundError(AuthError):
    """No identity exists for an id-keyed operation."""

    code = "not_found"


class BadRequestError(AuthError):
    """Invalid, expired or wrong-purpose token; already-verified email."""

    code = "bad_request"


# ---------------------------------------------------------------------------
# Internal errors
# ---------------------------------------------------------------------------


class HashingError(Exception):
    """A password could not be hashed, or a stored hash is corrupt."""


class TokenErrorKind(str, Enum):
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"
    WRONG_PURPOSE = "wrong_purpose"


class TokenError(Exception):
    """A token failed verification. kind says why."""

    def __init__(self, kind: TokenErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class AuditWriteError(Exception):
    """The audit sink could not persist an event."""
