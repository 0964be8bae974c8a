"""
tests/conftest.py -- Shared test fixtures for identity-core.

This module provides:
  - FrozenClock: a Clock whose time only moves when a test calls advance()
  - RecordingNotifier: captures reset/verification links instead of logging
  - policy / codec / hasher / store / service: unit-level building blocks
  - build_service(): AuthService factory for tests that need a custom sink
    or audit policy
  - api_client: TestClient over the real FastAPI app with an isolated
    in-memory SQLite store wired in through a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. A uuid in the name isolates every test.

DEBUG must be set before any api/ or core/ import so get_settings() can
auto-generate the signing secrets instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "10")

import pytest
from fastapi.testclient import TestClient

from auth.audit import AuditRecorder
from auth.memory import InMemoryAuthStore
from auth.models import TokenPurpose
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.tokens import DEFAULT_TTLS, TokenCodec, TokenPolicy

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.reset_links: list[tuple[str, str]] = []
        self.verification_links: list[tuple[str, str]] = []

    def send_reset_link(self, email: str, token: str) -> None:
        self.reset_links.append((email, token))

    def send_verification_link(self, email: str, token: str) -> None:
        self.verification_links.append((email, token))


TEST_SECRETS = {purpose: f"{purpose.value}-signing-secret-for-tests-0123456789" for purpose in TokenPurpose}


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    """Minimum allowed cost keeps the suite fast without bypassing bcrypt."""
    return PasswordHasher(rounds=10)


@pytest.fixture
def policy() -> TokenPolicy:
    return TokenPolicy(secrets=dict(TEST_SECRETS), ttls=dict(DEFAULT_TTLS))


@pytest.fixture
def codec(policy: TokenPolicy, clock: FrozenClock) -> TokenCodec:
    return TokenCodec(policy, clock)


@pytest.fixture
def store() -> InMemoryAuthStore:
    return InMemoryAuthStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def build_service(store, codec, hasher, notifier, clock):
    """Return a factory so a test can override the audit sink or fail-open policy."""

    def _build(audit_sink=None, audit_fail_open: bool = True) -> AuthService:
        return AuthService(
            identities=store,
            settings=store,
            audit=AuditRecorder(audit_sink or store),
            tokens=codec,
            hasher=hasher,
            notifier=notifier,
            clock=clock,
            audit_fail_open=audit_fail_open,
        )

    return _build


@pytest.fixture
def service(build_service) -> AuthService:
    return build_service()


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    Rate limiting is switched off so tests can log in repeatedly; the
    notifier on the wired AuthService is replaced with a RecordingNotifier
    so tests can pick up reset and verification tokens.
    """
    from api.limiter import limiter
    from api.main import app, configure_app_state
    from auth.store import AuthStore
    from core.config import get_settings

    store = AuthStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    recording = RecordingNotifier()

    @asynccontextmanager
    async def test_lifespan(app):
        configure_app_state(app, get_settings(), store)
        app.state.auth_service.notifier = recording
        yield

    app.router.lifespan_context = test_lifespan
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, recording

    limiter.enabled = True
    store.close()
