"""
auth/store.py -- Repository interfaces and the SQLAlchemy Core persistence layer.

Pattern: Repository + Data Mapper.
IdentityStore, SettingsStore and AuditSink are the narrow interfaces
AuthService depends on. AuthStore implements all three over one engine;
_row_to_identity / _row_to_settings / _row_to_event are the mappers.
Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is enforced by the UNIQUE constraint on users.email, not
  by the service's pre-check. Two concurrent registrations can both pass the
  pre-check; the second INSERT then fails with IntegrityError, which the store
  translates into ConflictError. The same applies to an UPDATE that moves an
  identity onto an email another identity already holds.

  audit_logs is append-only: this module has no UPDATE or DELETE for it.

Concurrency:
  update() writes only the columns it is given, never the whole row. A
  read-then-write such as stamping last_login_at therefore cannot undo a
  password or email change committed in between. Each method runs in its
  own transaction via engine.begin().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuditWriteError, ConflictError, NotFoundError
from auth.models import AuditAction, AuditEvent, Identity, UserSettings

# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class IdentityStore(Protocol):
    def find_by_email(self, email: str) -> Identity | None: ...

    def find_by_id(self, identity_id: str) -> Identity | None: ...

    def insert(self, identity: Identity) -> Identity: ...

    def update(self, identity_id: str, **fields) -> Identity: ...

    def update_last_login(self, identity_id: str, at: datetime) -> Identity: ...


class SettingsStore(Protocol):
    def create_default(self, identity_id: str) -> UserSettings: ...

    def get(self, identity_id: str) -> UserSettings | None: ...


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> AuditEvent: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("password_hash", String(255), nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

# Identity columns update() may write. id and created_at are fixed at insert.
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "is_active",
        "email_verified",
        "updated_at",
        "last_login_at",
    }
)

_user_settings = Table(
    "user_settings",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), nullable=False, unique=True),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("timezone", String(50), nullable=False, server_default="America/New_York"),
    Column("notification_email", Integer, nullable=False, server_default="1"),
    Column("notification_portfolio_changes", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36)),  # NULL for anonymous events
    Column("action", String(30), nullable=False),
    Column("resource_type", String(50)),
    Column("resource_id", String(36)),
    Column("ip_address", String(50)),
    Column("user_agent", Text),
    Column("metadata", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """SQLAlchemy Core implementation of IdentityStore, SettingsStore and AuditSink.

    Usage:
        store = AuthStore("sqlite:///identitycore.db")
        saved = store.insert(Identity(email="a@x.com", password_hash=hasher.hash("pw")))
        store.find_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///identitycore.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and "mode=memory" not in db_url and ":memory:" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> Identity | None:
        """Look up an identity by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_id(self, identity_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def insert(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with its assigned id.

        Raises ConflictError if the email is already taken. This is the
        authoritative duplicate check; any earlier lookup is only a fast path.
        """
        now = _now()
        saved = replace(
            identity,
            id=identity.id or str(uuid.uuid4()),
            created_at=identity.created_at or now,
            updated_at=identity.updated_at or now,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(_users.insert().values(id=saved.id, **_identity_values(saved)))
        except IntegrityError as exc:
            raise ConflictError("User with this email already exists") from exc
        return saved

    def update(self, identity_id: str, **fields) -> Identity:
        """Write only the given columns and return the identity as stored.

        Accepted fields: see UPDATABLE_FIELDS. updated_at defaults to now.

        Raises NotFoundError if the id does not exist and ConflictError if
        the new email belongs to another identity.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {sorted(unknown)!r}")
        fields.setdefault("updated_at", _now())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.update().where(_users.c.id == identity_id).values(**_column_values(fields))
                )
                if result.rowcount == 0:
                    raise NotFoundError("User not found")
                row = conn.execute(_users.select().where(_users.c.id == identity_id)).fetchone()
        except IntegrityError as exc:
            raise ConflictError("Email is already in use") from exc
        return _row_to_identity(row)

    def update_last_login(self, identity_id: str, at: datetime) -> Identity:
        """Stamp last_login_at without touching any other column."""
        return self.update(identity_id, last_login_at=at, updated_at=at)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def create_default(self, identity_id: str) -> UserSettings:
        """Create the default settings row for a freshly registered identity."""
        now = _now()
        settings = UserSettings(identity_id=identity_id, created_at=now, updated_at=now)
        with self.engine.begin() as conn:
            conn.execute(
                _user_settings.insert().values(
                    id=str(uuid.uuid4()),
                    identity_id=identity_id,
                    currency=settings.currency,
                    timezone=settings.timezone,
                    notification_email=1 if settings.notification_email else 0,
                    notification_portfolio_changes=1 if settings.notification_portfolio_changes else 0,
                    created_at=_to_iso(now),
                    updated_at=_to_iso(now),
                )
            )
        return settings

    def get(self, identity_id: str) -> UserSettings | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_settings.select().where(_user_settings.c.identity_id == identity_id)
            ).fetchone()
        return _row_to_settings(row) if row is not None else None

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def append(self, audit_event: AuditEvent) -> AuditEvent:
        """Insert an audit event and return it with id and created_at filled in.

        Raises AuditWriteError on any database failure.
        """
        saved = replace(
            audit_event,
            id=audit_event.id or str(uuid.uuid4()),
            created_at=audit_event.created_at or _now(),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        id=saved.id,
                        identity_id=saved.identity_id,
                        action=saved.action.value,
                        resource_type=saved.resource_type,
                        resource_id=saved.resource_id,
                        ip_address=saved.ip_address,
                        user_agent=saved.user_agent,
                        metadata=json.dumps(saved.metadata) if saved.metadata is not None else None,
                        created_at=_to_iso(saved.created_at),
                    )
                )
        except SQLAlchemyError as exc:
            raise AuditWriteError(f"could not persist {saved.action.value} event") from exc
        return saved

    def list_events(self, identity_id: str | None = None) -> list[AuditEvent]:
        """Return audit events oldest first, optionally for one identity."""
        query = _audit_logs.select().order_by(_audit_logs.c.created_at, _audit_logs.c.id)
        if identity_id is not None:
            query = query.where(_audit_logs.c.identity_id == identity_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _column_values(fields: dict) -> dict:
    """Convert Identity field values to their column form (bools as int, datetimes as ISO)."""
    values = {}
    for name, value in fields.items():
        if name in ("is_active", "email_verified"):
            value = 1 if value else 0
        elif name.endswith("_at"):
            value = _to_iso(value)
        values[name] = value
    return values


def _identity_values(identity: Identity) -> dict:
    return _column_values(
        {
            "email": identity.email,
            "password_hash": identity.password_hash,
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "is_active": identity.is_active,
            "email_verified": identity.email_verified,
            "created_at": identity.created_at,
            "updated_at": identity.updated_at,
            "last_login_at": identity.last_login_at,
        }
    )


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        last_login_at=_from_iso(row.last_login_at),
    )


def _row_to_settings(row) -> UserSettings:
    return UserSettings(
        identity_id=row.identity_id,
        currency=row.currency,
        timezone=row.timezone,
        notification_email=bool(row.notification_email),
        notification_portfolio_changes=bool(row.notification_portfolio_changes),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        identity_id=row.identity_id,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        metadata=json.loads(row._mapping["metadata"]) if row._mapping["metadata"] else None,
        created_at=_from_iso(row.created_at),
    )
