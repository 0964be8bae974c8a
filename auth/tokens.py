"""
auth/tokens.py -- Purpose-tagged JWT issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Every token carries sub (identity id), typ
       (purpose), iat, exp, jti and an optional ext mapping (e.g. the email
       snapshot a reset link was issued for).

  One secret per purpose [S1]: the codec signs and verifies with the secret
       of the purpose the caller names. A password-reset token presented to
       the access verifier fails the signature check before its claims are
       even trusted. The typ claim is checked as well, so the codec still
       fails closed if two purposes were ever configured with one secret.

  Expiry against the injected Clock: jose's own exp check reads the wall
       clock, so it is disabled and expiry is evaluated against Clock.now().
       A token is expired once now >= exp.

  Error kinds: a token whose segments or claims cannot be decoded is
       MALFORMED; one that decodes but fails verification under the
       expected secret is BAD_SIGNATURE. Callers get a TokenError and decide
       how to surface it -- AuthService maps every kind to the same
       BadRequestError text.

  No server-side token table. jti is included so a revocation set keyed by
       token id can be added without changing the token format.

Layer rule: no imports from api/. core/ may be imported for typing only.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.clock import Clock, SystemClock
from auth.errors import TokenError, TokenErrorKind
from auth.models import TokenClaims, TokenPurpose

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"
_MIN_SECRET_LENGTH = 32

DEFAULT_TTLS: dict[TokenPurpose, timedelta] = {
    TokenPurpose.ACCESS: timedelta(minutes=15),
    TokenPurpose.REFRESH: timedelta(days=7),
    TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
    TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
}


# ---------------------------------------------------------------------------
# Policy -- explicit configuration object, built once at startup
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPolicy:
    """Signing secret and lifetime for every token purpose."""

    secrets: dict[TokenPurpose, str]
    ttls: dict[TokenPurpose, timedelta]

    def __post_init__(self) -> None:
        missing = [p.value for p in TokenPurpose if p not in self.secrets or p not in self.ttls]
        if missing:
            raise ValueError(f"TokenPolicy is missing purposes: {missing}")
        values = list(self.secrets.values())
        if any(len(v) < _MIN_SECRET_LENGTH for v in values):
            raise ValueError(f"Token secrets must be at least {_MIN_SECRET_LENGTH} characters.")
        if len(set(values)) != len(values):
            raise ValueError("Each token purpose needs its own signing secret.")

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenPolicy:
        return cls(
            secrets={
                TokenPurpose.ACCESS: settings.access_token_secret,
                TokenPurpose.REFRESH: settings.refresh_token_secret,
                TokenPurpose.PASSWORD_RESET: settings.password_reset_token_secret,
                TokenPurpose.EMAIL_VERIFICATION: settings.email_verification_token_secret,
            },
            ttls={
                TokenPurpose.ACCESS: timedelta(seconds=settings.access_token_expire_seconds),
                TokenPurpose.REFRESH: timedelta(seconds=settings.refresh_token_expire_seconds),
                TokenPurpose.PASSWORD_RESET: timedelta(seconds=settings.password_reset_token_expire_seconds),
                TokenPurpose.EMAIL_VERIFICATION: timedelta(
                    seconds=settings.email_verification_token_expire_seconds
                ),
            },
        )


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Stateless signer/verifier. Safe to share across threads."""

    def __init__(self, policy: TokenPolicy, clock: Clock | None = None) -> None:
        self.policy = policy
        self.clock = clock or SystemClock()

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        return self.policy.ttls[purpose]

    def issue(
        self,
        subject: str,
        purpose: TokenPurpose,
        extra: dict[str, str] | None = None,
        ttl: timedelta | None = None,
    ) -> str:
        """Encode a signed token for subject, valid for ttl (default: the purpose's TTL)."""
        lifetime = ttl if ttl is not None else self.ttl_for(purpose)
        issued = int(self.clock.now().timestamp())
        payload = {
            "sub": subject,
            "typ": purpose.value,
            "iat": issued,
            "exp": issued + int(lifetime.total_seconds()),
            "jti": uuid.uuid4().hex,
            "ext": dict(extra or {}),
        }
        return jwt.encode(payload, self.policy.secrets[purpose], algorithm=_ALGORITHM)

    def parse(self, token: str, expected_purpose: TokenPurpose) -> TokenClaims:
        """Verify token as expected_purpose and return its claims.

        Raises TokenError with kind MALFORMED, BAD_SIGNATURE, WRONG_PURPOSE or
        EXPIRED, checked in that order. jwt.decode() reports undecodable input
        and a failed signature alike as JWTError, so the unverified decode
        runs first only to tell the two apart. No claim is read before the
        signature verifies. The kind is for logs; callers map every kind to
        a single client-facing error.
        """
        try:
            jwt.get_unverified_claims(token)
        except (JWTError, AttributeError, TypeError) as exc:
            raise TokenError(TokenErrorKind.MALFORMED, "token could not be decoded") from exc

        try:
            payload = jwt.decode(
                token,
                self.policy.secrets[expected_purpose],
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTClaimsError as exc:
            raise TokenError(TokenErrorKind.MALFORMED, str(exc)) from exc
        except JWTError as exc:
            raise TokenError(TokenErrorKind.BAD_SIGNATURE, "signature verification failed") from exc

        if payload.get("typ") != expected_purpose.value:
            raise TokenError(TokenErrorKind.WRONG_PURPOSE, f"expected a {expected_purpose.value} token")

        try:
            subject = str(payload["sub"])
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
            token_id = str(payload["jti"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError(TokenErrorKind.MALFORMED, "token is missing required claims") from exc

        if self.clock.now().timestamp() >= expires_at:
            raise TokenError(TokenErrorKind.EXPIRED, "token has expired")

        ext = payload.get("ext") or {}
        return TokenClaims(
            subject=subject,
            purpose=expected_purpose,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            token_id=token_id,
            extra={str(k): str(v) for k, v in ext.items()} if isinstance(ext, dict) else {},
        )
