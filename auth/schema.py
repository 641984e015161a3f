"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for the auth stores.

The three stores (users, sessions, invites) are separate repositories but
share one engine and one MetaData. Multi-store atomic units -- logout-all's
counter bump plus session delete, invite redemption's flip plus user insert --
run on a single connection inside engine.begin(), so they commit or roll back
together. Every store write method accepts an optional `conn` for that
purpose; see transaction().

Timestamps are stored as fixed-width UTC ISO-8601 strings
("2026-01-01T00:00:00.000000+00:00"). Fixed width makes SQL string comparison
chronological, which the expiry predicates (expires_at > :now) rely on.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, StorageError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(254), nullable=False, unique=True),  # stored lowercased
    Column("hashed_password", Text),
    Column("role", String(20), nullable=False, server_default="terapeuta"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex of the raw token
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("user_agent", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_user_sessions_user_id", "user_id"),
    Index("ix_user_sessions_expires_at", "expires_at"),
)

invites = Table(
    "invites",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(20), nullable=False, unique=True),
    Column("email", String(254)),  # NULL = any address may redeem
    Column("role", String(20), nullable=False, server_default="terapeuta"),
    Column("used", Boolean, nullable=False, server_default="0"),
    Column("used_by", Integer),  # informational, not a foreign key
    Column("created_by", Integer),
    Column("expires_at", String(32), nullable=False),
    Column("last_email_sent", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    WAL lets readers proceed while a writer holds the lock. foreign_keys is
    off by default in SQLite and must be set per connection, otherwise the
    ON DELETE CASCADE from user_sessions to users is ignored.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_auth_engine(db_url: str) -> Engine:
    """Create the shared engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    metadata.create_all(engine)
    return engine


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield a connection inside a transaction.

    With conn=None a new transaction is opened and committed on exit. When the
    caller already holds a connection, it is reused as-is and the caller's
    transaction decides commit or rollback.
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as new_conn:
        yield new_conn


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into the auth error taxonomy.

    IntegrityError becomes ConflictError; anything else from the driver becomes
    StorageError. Taxonomy errors raised inside the block pass through.
    """
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(f"Conflicting write while trying to {action}.") from exc
    except SQLAlchemyError as exc:
        raise StorageError(f"Storage failure while trying to {action}.") from exc


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Render a datetime as the fixed-width UTC string stored in the database.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
