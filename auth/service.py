"""
auth/service.py -- AuthService: registration, login and credential lifecycle.

AuthService composes the leaf components into the user-facing operations.
Collaborators are passed to the constructor explicitly; nothing is looked up
from module state, so tests can swap any of them.

Data flow is one-way: AuthService -> {IdentityStore, SettingsStore,
PasswordHasher, TokenCodec, AuditRecorder, Notifier, Clock}. No collaborator
calls back into the service.

Security:
  [C1] login() runs bcrypt even when the email is unknown, and returns the
       same "Invalid credentials" message for unknown email and wrong
       password, so neither the response body nor its timing reveals which
       accounts exist.

  forgot_password() returns silently for unknown emails for the same reason.

  Reset and verification tokens embed the email the link was sent to. Both
  redeem paths compare it with the identity's current email, so changing the
  email invalidates links issued for the old address.

Audit policy:
  REGISTER, LOGIN, LOGOUT and PASSWORD_CHANGE are audited. refresh(),
  update_profile(), forgot_password(), reset_password() and the verification
  flow are not. A failed audit write either degrades (audit_fail_open=True:
  warning logged, "audit_degraded" returned in the warnings list) or aborts
  the operation with AuditWriteError (audit_fail_open=False).

Known limitation: logout() records the event but does not revoke tokens.
Access tokens expire after their short TTL; refresh tokens remain usable
until their own expiry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from auth.audit import AuditRecorder
from auth.clock import Clock, SystemClock
from auth.errors import (
    AuditWriteError,
    BadRequestError,
    ConflictError,
    HashingError,
    NotFoundError,
    TokenError,
    UnauthorizedError,
)
from auth.models import (
    AuditAction,
    AuditEvent,
    AuthResult,
    AuthTokens,
    Identity,
    Profile,
    TokenPurpose,
    normalize_email,
)
from auth.notifier import Notifier
from auth.passwords import PasswordHasher
from auth.store import IdentityStore, SettingsStore
from auth.tokens import TokenCodec

logger = logging.getLogger("identitycore.auth")

AUDIT_DEGRADED = "audit_degraded"

# Fields update_profile() accepts. Anything else is a programming error.
_PROFILE_FIELDS = frozenset({"email", "first_name", "last_name"})

_INVALID_CREDENTIALS = "Invalid credentials"
_INVALID_RESET_TOKEN = "Invalid or expired reset token"
_INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"


class AuthService:
    def __init__(
        self,
        identities: IdentityStore,
        settings: SettingsStore,
        audit: AuditRecorder,
        tokens: TokenCodec,
        hasher: PasswordHasher,
        notifier: Notifier,
        clock: Clock | None = None,
        audit_fail_open: bool = True,
    ) -> None:
        self.identities = identities
        self.settings = settings
        self.audit = audit
        self.tokens = tokens
        self.hasher = hasher
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.audit_fail_open = audit_fail_open

    # ------------------------------------------------------------------
    # Registration and sessions
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Create an identity and return it with a fresh token pair.

        The find_by_email() pre-check only gives a fast, friendly answer. The
        store's unique constraint decides races: insert() raises ConflictError
        for the loser of two concurrent registrations.
        """
        normalized = normalize_email(email)
        if self.identities.find_by_email(normalized) is not None:
            raise ConflictError("User with this email already exists")

        now = self.clock.now()
        identity = self.identities.insert(
            Identity(
                email=normalized,
                password_hash=self._hash(password),
                first_name=first_name,
                last_name=last_name,
                email_verified=False,
                created_at=now,
                updated_at=now,
            )
        )
        self.settings.create_default(identity.id)
        logger.info("Registered identity %s", identity.id)

        warnings = self._audit(AuditAction.REGISTER, identity.id, ip_address, user_agent)
        return AuthResult(identity=identity, tokens=self._issue_tokens(identity), warnings=warnings)

    def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Verify credentials, stamp last_login_at and return a token pair [C1]."""
        identity = self.identities.find_by_email(normalize_email(email))
        if identity is None:
            self.hasher.dummy_verify(password)
            raise UnauthorizedError(_INVALID_CREDENTIALS)

        try:
            matched = self.hasher.verify(password, identity.password_hash)
        except HashingError:
            logger.error("Stored password hash for identity %s is corrupt", identity.id)
            raise UnauthorizedError(_INVALID_CREDENTIALS) from None
        if not matched:
            raise UnauthorizedError(_INVALID_CREDENTIALS)

        if not identity.is_active:
            raise UnauthorizedError("Account is disabled")

        identity = self.identities.update_last_login(identity.id, self.clock.now())

        warnings = self._audit(AuditAction.LOGIN, identity.id, ip_address, user_agent)
        return AuthResult(identity=identity, tokens=self._issue_tokens(identity), warnings=warnings)

    def refresh(self, identity: Identity) -> AuthTokens:
        """Issue a new token pair.

        The caller must already have verified a refresh token for identity.
        Rotation is not audited and changes no state.
        """
        return self._issue_tokens(identity)

    def logout(
        self,
        identity_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[str]:
        """Record the logout. Outstanding tokens stay valid until they expire."""
        return self._audit(AuditAction.LOGOUT, identity_id, ip_address, user_agent)

    # ------------------------------------------------------------------
    # Profile and credentials
    # ------------------------------------------------------------------

    def get_profile(self, identity_id: str) -> Profile:
        identity = self._require(identity_id)
        return Profile(identity=identity, settings=self.settings.get(identity_id))

    def update_profile(self, identity_id: str, fields: Mapping[str, str | None]) -> Identity:
        """Apply email/first_name/last_name changes.

        A changed email must be free and resets email_verified. Name keys
        present in fields are applied as given (None clears the name); absent
        keys are left alone.
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)!r}")

        identity = self._require(identity_id)
        changes: dict = {}

        new_email = fields.get("email")
        if new_email:
            normalized = normalize_email(new_email)
            if normalized != identity.email:
                existing = self.identities.find_by_email(normalized)
                if existing is not None and existing.id != identity.id:
                    raise ConflictError("Email is already in use")
                changes["email"] = normalized
                changes["email_verified"] = False

        for name in ("first_name", "last_name"):
            if name in fields:
                changes[name] = fields[name]

        return self.identities.update(identity.id, updated_at=self.clock.now(), **changes)

    def change_password(
        self,
        identity_id: str,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[str]:
        """Replace the credential after checking the current one.

        A wrong current password leaves the stored hash untouched.
        """
        identity = self._require(identity_id)
        try:
            matched = self.hasher.verify(current_password, identity.password_hash)
        except HashingError:
            logger.error("Stored password hash for identity %s is corrupt", identity.id)
            matched = False
        if not matched:
            raise UnauthorizedError("Current password is incorrect")

        self.identities.update(identity.id, password_hash=self._hash(new_password), updated_at=self.clock.now())
        logger.info("Password changed for identity %s", identity.id)

        return self._audit(AuditAction.PASSWORD_CHANGE, identity.id, ip_address, user_agent)

    # ------------------------------------------------------------------
    # Password reset (two-phase)
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Send a reset link if the email belongs to an identity; otherwise do nothing."""
        identity = self.identities.find_by_email(normalize_email(email))
        if identity is None:
            return
        token = self.tokens.issue(identity.id, TokenPurpose.PASSWORD_RESET, extra={"email": identity.email})
        self._notify(self.notifier.send_reset_link, identity.email, token)

    def reset_password(self, token: str, new_password: str) -> None:
        try:
            claims = self.tokens.parse(token, TokenPurpose.PASSWORD_RESET)
        except TokenError as exc:
            logger.info("Rejected password reset token (%s)", exc.kind.value)
            raise BadRequestError(_INVALID_RESET_TOKEN) from None

        identity = self._require(claims.subject)
        if claims.extra.get("email") != identity.email:
            raise BadRequestError(_INVALID_RESET_TOKEN)

        self.identities.update(identity.id, password_hash=self._hash(new_password), updated_at=self.clock.now())
        logger.info("Password reset for identity %s", identity.id)

    # ------------------------------------------------------------------
    # Email verification (two-phase)
    # ------------------------------------------------------------------

    def send_verification_email(self, identity_id: str) -> None:
        identity = self._require(identity_id)
        if identity.email_verified:
            raise BadRequestError("Email is already verified")
        token = self.tokens.issue(identity.id, TokenPurpose.EMAIL_VERIFICATION, extra={"email": identity.email})
        self._notify(self.notifier.send_verification_link, identity.email, token)

    def verify_email(self, token: str) -> None:
        try:
            claims = self.tokens.parse(token, TokenPurpose.EMAIL_VERIFICATION)
        except TokenError as exc:
            logger.info("Rejected email verification token (%s)", exc.kind.value)
            raise BadRequestError(_INVALID_VERIFICATION_TOKEN) from None

        identity = self._require(claims.subject)
        if claims.extra.get("email") != identity.email:
            raise BadRequestError(_INVALID_VERIFICATION_TOKEN)

        self.identities.update(identity.id, email_verified=True, updated_at=self.clock.now())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, identity_id: str) -> Identity:
        identity = self.identities.find_by_id(identity_id)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    def _hash(self, password: str) -> str:
        try:
            return self.hasher.hash(password)
        except HashingError as exc:
            raise BadRequestError("Password cannot be longer than 72 bytes") from exc

    def _issue_tokens(self, identity: Identity) -> AuthTokens:
        extra = {"email": identity.email}
        return AuthTokens(
            access_token=self.tokens.issue(identity.id, TokenPurpose.ACCESS, extra=extra),
            refresh_token=self.tokens.issue(identity.id, TokenPurpose.REFRESH, extra=extra),
            expires_in=int(self.tokens.ttl_for(TokenPurpose.ACCESS).total_seconds()),
        )

    def _audit(
        self,
        action: AuditAction,
        identity_id: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> list[str]:
        """Record an event against the users resource; return degraded-mode warnings."""
        event = AuditEvent(
            action=action,
            identity_id=identity_id,
            resource_type="users",
            resource_id=identity_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self.clock.now(),
        )
        try:
            self.audit.record(event)
        except AuditWriteError:
            if not self.audit_fail_open:
                raise
            logger.warning(
                "Audit write failed for %s on identity %s; continuing without an audit record",
                action.value,
                identity_id,
                exc_info=True,
            )
            return [AUDIT_DEGRADED]
        return []

    def _notify(self, send: Callable[[str, str], None], email: str, token: str) -> None:
        try:
            send(email, token)
        except Exception:
            logger.exception("Notifier failed to deliver a link to %s", email)
