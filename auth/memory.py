"""
auth/memory.py -- In-memory IdentityStore / SettingsStore / AuditSink.

Used by the unit tests and handy for local experiments. Records are copied
on the way in and on the way out so callers can never mutate stored state
by holding a reference, which mirrors the behaviour of the SQL store.

Uniqueness: insert() and update() check the email index and write under a
single lock, so the store rejects a duplicate email even when two threads
race past the service's pre-check.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from auth.errors import ConflictError, NotFoundError
from auth.models import AuditEvent, Identity, UserSettings
from auth.store import UPDATABLE_FIELDS


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAuthStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: dict[str, Identity] = {}
        self._by_email: dict[str, str] = {}
        self._settings: dict[str, UserSettings] = {}
        self._events: list[AuditEvent] = []

    # -- identities ------------------------------------------------------

    def find_by_email(self, email: str) -> Identity | None:
        with self._lock:
            identity_id = self._by_email.get(email)
            return replace(self._identities[identity_id]) if identity_id else None

    def find_by_id(self, identity_id: str) -> Identity | None:
        with self._lock:
            identity = self._identities.get(identity_id)
            return replace(identity) if identity else None

    def insert(self, identity: Identity) -> Identity:
        now = _now()
        saved = replace(
            identity,
            id=identity.id or str(uuid.uuid4()),
            created_at=identity.created_at or now,
            updated_at=identity.updated_at or now,
        )
        with self._lock:
            if saved.email in self._by_email:
                raise ConflictError("User with this email already exists")
            self._identities[saved.id] = saved
            self._by_email[saved.email] = saved.id
        return replace(saved)

    def update(self, identity_id: str, **fields) -> Identity:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {sorted(unknown)!r}")
        fields.setdefault("updated_at", _now())
        with self._lock:
            current = self._identities.get(identity_id)
            if current is None:
                raise NotFoundError("User not found")
            new_email = fields.get("email", current.email)
            if new_email != current.email:
                if new_email in self._by_email:
                    raise ConflictError("Email is already in use")
                del self._by_email[current.email]
                self._by_email[new_email] = identity_id
            saved = replace(current, **fields)
            self._identities[identity_id] = saved
        return replace(saved)

    def update_last_login(self, identity_id: str, at: datetime) -> Identity:
        return self.update(identity_id, last_login_at=at, updated_at=at)

    # -- settings --------------------------------------------------------

    def create_default(self, identity_id: str) -> UserSettings:
        now = _now()
        settings = UserSettings(identity_id=identity_id, created_at=now, updated_at=now)
        with self._lock:
            self._settings[identity_id] = settings
        return replace(settings)

    def get(self, identity_id: str) -> UserSettings | None:
        with self._lock:
            settings = self._settings.get(identity_id)
            return replace(settings) if settings else None

    # -- audit -----------------------------------------------------------

    def append(self, audit_event: AuditEvent) -> AuditEvent:
        saved = replace(
            audit_event,
            id=audit_event.id or str(uuid.uuid4()),
            created_at=audit_event.created_at or _now(),
        )
        with self._lock:
            self._events.append(saved)
        return saved

    def list_events(self, identity_id: str | None = None) -> list[AuditEvent]:
        with self._lock:
            return [e for e in self._events if identity_id is None or e.identity_id == identity_id]
