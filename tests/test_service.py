"""Unit tests for auth/service.py -- AuthService operations and invariants.

Runs against InMemoryAuthStore with a FrozenClock and a RecordingNotifier
(see conftest.py), so token expiry and link delivery are deterministic.

Covers:
- register / login round trip, case-insensitive email, duplicate rejection
  (sequential, concurrent, and with the pre-check bypassed)
- login never distinguishes unknown email from wrong password
- refresh and logout: token issuance without state change; logout audited
- change_password, update_profile, get_profile
- forgot/reset password and send/verify email, including expiry,
  cross-purpose replay and email-change invalidation
- audit fail-open vs fail-closed
- notifier failures never reach the caller
- a write committed between login's read and its own write survives
"""

from __future__ import annotations

import logging
import threading

import pytest

from auth.errors import (
    AuditWriteError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from auth.memory import InMemoryAuthStore
from auth.models import AuditAction, AuditEvent, TokenPurpose
from auth.service import AUDIT_DEGRADED, AuthService
from auth.tokens import TokenCodec

EMAIL = "a@x.com"
PASSWORD = "Sup3rSecret!"


class BrokenSink:
    def append(self, event: AuditEvent) -> AuditEvent:
        raise ConnectionError("audit database unreachable")


class ExplodingNotifier:
    def send_reset_link(self, email: str, token: str) -> None:
        raise RuntimeError("smtp down")

    def send_verification_link(self, email: str, token: str) -> None:
        raise RuntimeError("smtp down")


def _actions(store: InMemoryAuthStore, identity_id: str) -> list[AuditAction]:
    return [e.action for e in store.list_events(identity_id)]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_creates_unverified_identity(self, service: AuthService, store, codec: TokenCodec) -> None:
        result = service.register("  A@X.com ", PASSWORD, first_name="Ada", last_name="Lovelace")

        assert result.identity.email == EMAIL
        assert result.identity.email_verified is False
        assert result.identity.first_name == "Ada"
        assert result.identity.password_hash != PASSWORD
        assert result.warnings == []
        assert store.get(result.identity.id).currency == "USD"

        claims = codec.parse(result.tokens.access_token, TokenPurpose.ACCESS)
        assert claims.subject == result.identity.id
        assert codec.parse(result.tokens.refresh_token, TokenPurpose.REFRESH).subject == result.identity.id
        assert result.tokens.expires_in == 15 * 60

    def test_register_is_audited(self, service: AuthService, store) -> None:
        result = service.register(EMAIL, PASSWORD, ip_address="10.0.0.1", user_agent="pytest")
        [event] = store.list_events(result.identity.id)
        assert event.action is AuditAction.REGISTER
        assert event.resource_type == "users"
        assert event.resource_id == result.identity.id
        assert event.ip_address == "10.0.0.1"
        assert event.user_agent == "pytest"

    def test_duplicate_email_differing_in_case(self, service: AuthService) -> None:
        service.register(EMAIL, PASSWORD)
        with pytest.raises(ConflictError) as excinfo:
            service.register("A@X.COM", "An0therPass!")
        assert "already exists" in excinfo.value.message

    def test_store_rejects_duplicate_when_precheck_misses(
        self, service: AuthService, store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Simulate the check-then-act gap: the lookup sees nothing, the insert must still fail."""
        service.register(EMAIL, PASSWORD)
        monkeypatch.setattr(store, "find_by_email", lambda email: None)
        with pytest.raises(ConflictError):
            service.register(EMAIL, PASSWORD)

    def test_concurrent_registration_yields_one_success(self, service: AuthService) -> None:
        attempts = 5
        barrier = threading.Barrier(attempts)
        outcomes: list[str] = []
        lock = threading.Lock()

        def attempt(i: int) -> None:
            barrier.wait()
            try:
                service.register("Race@X.com" if i % 2 else "race@x.com", PASSWORD)
                outcome = "ok"
            except ConflictError:
                outcome = "conflict"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == attempts - 1

    def test_overlong_password_is_bad_request(self, service: AuthService) -> None:
        with pytest.raises(BadRequestError):
            service.register(EMAIL, "x1" * 40)


# ---------------------------------------------------------------------------
# Login, refresh, logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_round_trip_case_insensitive(self, service: AuthService, store, clock) -> None:
        registered = service.register(EMAIL, PASSWORD)
        clock.advance(minutes=5)

        result = service.login("A@X.com", PASSWORD, ip_address="10.0.0.2")

        assert result.identity.id == registered.identity.id
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert store.find_by_id(registered.identity.id).last_login_at == clock.now()
        assert _actions(store, registered.identity.id) == [AuditAction.REGISTER, AuditAction.LOGIN]

    def test_unknown_email_and_wrong_password_look_identical(self, service: AuthService) -> None:
        service.register(EMAIL, PASSWORD)
        with pytest.raises(UnauthorizedError) as wrong_password:
            service.login(EMAIL, "Wr0ngPassword!")
        with pytest.raises(UnauthorizedError) as unknown_email:
            service.login("nobody@x.com", PASSWORD)
        assert wrong_password.value.message == unknown_email.value.message == "Invalid credentials"

    def test_disabled_account(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        store.update(identity.id, is_active=False)

        with pytest.raises(UnauthorizedError) as excinfo:
            service.login(EMAIL, PASSWORD)
        assert excinfo.value.message == "Account is disabled"

        # Without the right password the generic message still wins.
        with pytest.raises(UnauthorizedError) as excinfo:
            service.login(EMAIL, "Wr0ngPassword!")
        assert excinfo.value.message == "Invalid credentials"

    def test_corrupt_stored_hash_is_generic_unauthorized(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        store.update(identity.id, password_hash="corrupted")
        with pytest.raises(UnauthorizedError) as excinfo:
            service.login(EMAIL, PASSWORD)
        assert excinfo.value.message == "Invalid credentials"

    def test_failed_login_is_not_audited(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        with pytest.raises(UnauthorizedError):
            service.login(EMAIL, "Wr0ngPassword!")
        assert _actions(store, identity.id) == [AuditAction.REGISTER]


class TestRefreshAndLogout:
    def test_refresh_issues_new_pair_without_audit(self, service: AuthService, store, codec: TokenCodec) -> None:
        result = service.register(EMAIL, PASSWORD)
        tokens = service.refresh(result.identity)

        assert tokens.refresh_token != result.tokens.refresh_token
        assert codec.parse(tokens.access_token, TokenPurpose.ACCESS).subject == result.identity.id
        assert _actions(store, result.identity.id) == [AuditAction.REGISTER]

    def test_logout_records_event_but_does_not_revoke(
        self, service: AuthService, store, codec: TokenCodec
    ) -> None:
        result = service.register(EMAIL, PASSWORD)
        assert service.logout(result.identity.id, ip_address="10.0.0.3") == []

        assert _actions(store, result.identity.id) == [AuditAction.REGISTER, AuditAction.LOGOUT]
        # Stateless tokens: the refresh token still verifies until it expires.
        assert codec.parse(result.tokens.refresh_token, TokenPurpose.REFRESH).subject == result.identity.id


# ---------------------------------------------------------------------------
# Profile and password change
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_wrong_current_password_leaves_credential(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        with pytest.raises(UnauthorizedError) as excinfo:
            service.change_password(identity.id, "Wr0ngPassword!", "NewPass1!")
        assert excinfo.value.message == "Current password is incorrect"
        assert service.login(EMAIL, PASSWORD).identity.id == identity.id
        assert AuditAction.PASSWORD_CHANGE not in _actions(store, identity.id)

    def test_unknown_identity(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.change_password("missing", PASSWORD, "NewPass1!")

    def test_example_scenario(self, service: AuthService, store) -> None:
        """register -> login with different case -> change password -> only the new password works."""
        identity = service.register("a@x.com", "Sup3rSecret!").identity
        service.login("A@X.com", "Sup3rSecret!")

        assert service.change_password(identity.id, "Sup3rSecret!", "NewPass1!") == []

        with pytest.raises(UnauthorizedError):
            service.login("a@x.com", "Sup3rSecret!")
        assert service.login("a@x.com", "NewPass1!").identity.id == identity.id
        assert AuditAction.PASSWORD_CHANGE in _actions(store, identity.id)


class TestProfile:
    def test_get_profile_includes_settings(self, service: AuthService) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        profile = service.get_profile(identity.id)
        assert profile.identity.email == EMAIL
        assert profile.settings.timezone == "America/New_York"

    def test_get_profile_unknown(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.get_profile("missing")

    def test_email_change_resets_verification(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        store.update(identity.id, email_verified=True)

        updated = service.update_profile(identity.id, {"email": " New@X.com "})

        assert updated.email == "new@x.com"
        assert updated.email_verified is False
        assert service.login("new@x.com", PASSWORD).identity.id == identity.id

    def test_same_email_in_other_case_keeps_verification(self, service: AuthService, store) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        store.update(identity.id, email_verified=True)
        assert service.update_profile(identity.id, {"email": "A@X.COM"}).email_verified is True

    def test_email_taken_by_another_identity(self, service: AuthService) -> None:
        service.register("b@x.com", PASSWORD)
        identity = service.register(EMAIL, PASSWORD).identity
        with pytest.raises(ConflictError) as excinfo:
            service.update_profile(identity.id, {"email": "B@x.com"})
        assert excinfo.value.message == "Email is already in use"

    def test_names_applied_only_when_present(self, service: AuthService) -> None:
        identity = service.register(EMAIL, PASSWORD, first_name="Ada", last_name="Lovelace").identity
        updated = service.update_profile(identity.id, {"first_name": "Augusta"})
        assert (updated.first_name, updated.last_name) == ("Augusta", "Lovelace")
        cleared = service.update_profile(identity.id, {"last_name": None})
        assert (cleared.first_name, cleared.last_name) == ("Augusta", None)

    def test_unknown_field_rejected(self, service: AuthService) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        with pytest.raises(ValueError):
            service.update_profile(identity.id, {"is_active": "false"})


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_unknown_email_is_silent(self, service: AuthService, notifier) -> None:
        assert service.forgot_password("nobody@x.com") is None
        assert notifier.reset_links == []

    def test_reset_flow(self, service: AuthService, store, notifier, clock) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.forgot_password("A@X.com")
        [(sent_to, token)] = notifier.reset_links
        assert sent_to == EMAIL

        clock.advance(minutes=30)
        service.reset_password(token, "NewPass1!")

        with pytest.raises(UnauthorizedError):
            service.login(EMAIL, PASSWORD)
        assert service.login(EMAIL, "NewPass1!").identity.id == identity.id
        # Reset is deliberately not audited; only register and the login above are.
        assert _actions(store, identity.id) == [AuditAction.REGISTER, AuditAction.LOGIN]

    def test_expired_reset_token(self, service: AuthService, notifier, clock) -> None:
        service.register(EMAIL, PASSWORD)
        service.forgot_password(EMAIL)
        [(_, token)] = notifier.reset_links

        clock.advance(hours=1, seconds=1)
        with pytest.raises(BadRequestError) as excinfo:
            service.reset_password(token, "NewPass1!")
        assert excinfo.value.message == "Invalid or expired reset token"
        assert service.login(EMAIL, PASSWORD)

    def test_verification_token_cannot_reset_password(self, service: AuthService, notifier) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.send_verification_email(identity.id)
        [(_, token)] = notifier.verification_links
        with pytest.raises(BadRequestError):
            service.reset_password(token, "NewPass1!")

    def test_access_token_cannot_reset_password(self, service: AuthService) -> None:
        result = service.register(EMAIL, PASSWORD)
        with pytest.raises(BadRequestError):
            service.reset_password(result.tokens.access_token, "NewPass1!")

    def test_garbage_token(self, service: AuthService) -> None:
        with pytest.raises(BadRequestError):
            service.reset_password("garbage", "NewPass1!")

    def test_rejection_kind_is_logged_but_message_is_uniform(self, service: AuthService, codec, caplog) -> None:
        forged_purpose = codec.issue("user-1", TokenPurpose.EMAIL_VERIFICATION)
        with caplog.at_level(logging.INFO, logger="identitycore.auth"):
            with pytest.raises(BadRequestError) as garbage:
                service.reset_password("garbage", "NewPass1!")
            with pytest.raises(BadRequestError) as wrong_secret:
                service.reset_password(forged_purpose, "NewPass1!")
        assert garbage.value.message == wrong_secret.value.message
        assert "Rejected password reset token (malformed)" in caplog.text
        assert "Rejected password reset token (bad_signature)" in caplog.text

    def test_email_change_invalidates_reset_link(self, service: AuthService, notifier) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.forgot_password(EMAIL)
        [(_, token)] = notifier.reset_links
        service.update_profile(identity.id, {"email": "new@x.com"})
        with pytest.raises(BadRequestError):
            service.reset_password(token, "NewPass1!")

    def test_token_for_unknown_identity(self, service: AuthService, codec: TokenCodec) -> None:
        token = codec.issue("missing", TokenPurpose.PASSWORD_RESET, extra={"email": EMAIL})
        with pytest.raises(NotFoundError):
            service.reset_password(token, "NewPass1!")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestEmailVerification:
    def test_verification_flow(self, service: AuthService, store, notifier, clock) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.send_verification_email(identity.id)
        [(sent_to, token)] = notifier.verification_links
        assert sent_to == EMAIL

        clock.advance(hours=23)
        service.verify_email(token)
        assert store.find_by_id(identity.id).email_verified is True

        with pytest.raises(BadRequestError) as excinfo:
            service.send_verification_email(identity.id)
        assert excinfo.value.message == "Email is already verified"

    def test_expired_verification_token(self, service: AuthService, store, notifier, clock) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.send_verification_email(identity.id)
        [(_, token)] = notifier.verification_links

        clock.advance(hours=24, seconds=1)
        with pytest.raises(BadRequestError) as excinfo:
            service.verify_email(token)
        assert excinfo.value.message == "Invalid or expired verification token"
        assert store.find_by_id(identity.id).email_verified is False

    def test_reset_token_cannot_verify_email(self, service: AuthService, store, notifier) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.forgot_password(EMAIL)
        [(_, token)] = notifier.reset_links
        with pytest.raises(BadRequestError):
            service.verify_email(token)
        assert store.find_by_id(identity.id).email_verified is False

    def test_link_for_old_email_does_not_verify_new_email(self, service: AuthService, store, notifier) -> None:
        identity = service.register(EMAIL, PASSWORD).identity
        service.send_verification_email(identity.id)
        [(_, token)] = notifier.verification_links
        service.update_profile(identity.id, {"email": "new@x.com"})
        with pytest.raises(BadRequestError):
            service.verify_email(token)
        assert store.find_by_id(identity.id).email_verified is False

    def test_send_to_unknown_identity(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.send_verification_email("missing")


# ---------------------------------------------------------------------------
# Degraded collaborators
# ---------------------------------------------------------------------------


class TestAuditPolicy:
    def test_fail_open_continues_with_warning(self, build_service) -> None:
        service = build_service(audit_sink=BrokenSink(), audit_fail_open=True)
        result = service.register(EMAIL, PASSWORD)
        assert result.warnings == [AUDIT_DEGRADED]
        assert result.tokens.access_token

        assert service.login(EMAIL, PASSWORD).warnings == [AUDIT_DEGRADED]
        assert service.logout(result.identity.id) == [AUDIT_DEGRADED]

    def test_fail_closed_raises(self, build_service, store) -> None:
        service = build_service(audit_sink=BrokenSink(), audit_fail_open=False)
        with pytest.raises(AuditWriteError):
            service.register(EMAIL, PASSWORD)
        with pytest.raises(AuditWriteError):
            service.login(EMAIL, PASSWORD)
        identity = store.find_by_email(EMAIL)
        with pytest.raises(AuditWriteError):
            service.logout(identity.id)


class TestNotifierFailure:
    def test_notifier_errors_are_swallowed(self, store, codec, hasher, clock, caplog) -> None:
        from auth.audit import AuditRecorder

        service = AuthService(
            identities=store,
            settings=store,
            audit=AuditRecorder(store),
            tokens=codec,
            hasher=hasher,
            notifier=ExplodingNotifier(),
            clock=clock,
        )
        identity = service.register(EMAIL, PASSWORD).identity

        assert service.forgot_password(EMAIL) is None
        assert service.send_verification_email(identity.id) is None
        assert "Notifier failed" in caplog.text


# ---------------------------------------------------------------------------
# Interleaved writes
# ---------------------------------------------------------------------------


class WriteBetweenReadAndUpdate:
    """Store wrapper that runs a callback once, right after the next find_by_email.

    Reproduces another request committing between login()'s read of the
    identity and its own write.
    """

    def __init__(self, inner) -> None:
        self.inner = inner
        self.after_read = None

    def find_by_email(self, email: str):
        found = self.inner.find_by_email(email)
        callback, self.after_read = self.after_read, None
        if callback is not None:
            callback()
        return found

    def __getattr__(self, name: str):
        return getattr(self.inner, name)


@pytest.fixture(params=["memory", "sql"])
def interleaved(request, codec, hasher, notifier, clock):
    from auth.audit import AuditRecorder
    from auth.store import AuthStore

    inner = InMemoryAuthStore() if request.param == "memory" else AuthStore("sqlite:///:memory:")
    wrapper = WriteBetweenReadAndUpdate(inner)
    service = AuthService(
        identities=wrapper,
        settings=wrapper,
        audit=AuditRecorder(inner),
        tokens=codec,
        hasher=hasher,
        notifier=notifier,
        clock=clock,
    )
    yield service, wrapper
    if isinstance(inner, AuthStore):
        inner.close()


class TestInterleavedWrites:
    def test_login_does_not_undo_concurrent_password_change(self, interleaved) -> None:
        service, wrapper = interleaved
        identity = service.register(EMAIL, PASSWORD).identity
        wrapper.after_read = lambda: service.change_password(identity.id, PASSWORD, "N3wSecret!")

        service.login(EMAIL, PASSWORD)

        with pytest.raises(UnauthorizedError):
            service.login(EMAIL, PASSWORD)
        assert service.login(EMAIL, "N3wSecret!").identity.id == identity.id

    def test_login_does_not_undo_concurrent_email_change(self, interleaved, clock) -> None:
        service, wrapper = interleaved
        identity = service.register(EMAIL, PASSWORD).identity
        wrapper.after_read = lambda: service.update_profile(identity.id, {"email": "b@x.com"})

        service.login(EMAIL, PASSWORD)

        stored = wrapper.find_by_id(identity.id)
        assert stored.email == "b@x.com"
        assert stored.last_login_at == clock.now()
