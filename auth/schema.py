"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for auth storage.

Every store (principals, roles, sessions, challenges, attempt counters) shares
one MetaData and one Engine, so a single DATABASE_URL points the whole core at
its shared external storage.

Timeouts: storage_timeout_seconds is passed to the driver (SQLite busy
timeout) and to the connection pool, so no storage call waits unboundedly.

Failures: storage_errors() converts connectivity/timeout errors into
StorageUnavailable and logs them. IntegrityError is NOT
converted -- it means a conflicting write (duplicate id), which callers
handle as a domain outcome.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StorageUnavailable

logger = logging.getLogger("gatehouse.store")

metadata = MetaData()

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

principals = Table(
    "principals",
    metadata,
    Column("identifier", String(255), primary_key=True),
    Column("credential_hash", Text),  # NULL = no password login
    Column("roles", Text, nullable=False, server_default="[]"),  # JSON list of role ids
    Column("status", String(16), nullable=False, server_default="active"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login", Float),
    Column("mfa_enabled", Boolean, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("identifier", String(255), primary_key=True),
    Column("description", Text, nullable=False, server_default=""),
)

roles = Table(
    "roles",
    metadata,
    Column("identifier", String(255), primary_key=True),
    Column("permissions", Text, nullable=False, server_default="[]"),  # ordered JSON list
)

# Single-row table (id = 1). version is bumped on every role/permission write
# so RBAC caches know when to reload.
role_catalog = Table(
    "role_catalog",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("version", Integer, nullable=False, server_default="1"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("principal_id", String(255), nullable=False),
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("fingerprint", String(64), nullable=False, server_default=""),
    Column("refresh_token_hash", String(64), unique=True),
    Column("revoked", Boolean, nullable=False, server_default="0"),
    Column("revoked_reason", String(64)),
    Column("mfa_pending", Boolean, nullable=False, server_default="0"),
    Index("ix_sessions_principal", "principal_id"),
    Index("ix_sessions_expires", "expires_at"),
)

# Hashes that were rotated out. Presenting one of these again is reuse.
rotated_refresh_tokens = Table(
    "rotated_refresh_tokens",
    metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("session_id", String(64), nullable=False),
    Column("rotated_at", Float, nullable=False),
    Index("ix_rotated_session", "session_id"),
)

challenges = Table(
    "challenges",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("principal_id", String(255), nullable=False),
    Column("purpose", String(16), nullable=False),
    Column("code_hash", String(64), nullable=False, unique=True),
    Column("expires_at", Float, nullable=False),
    Column("session_id", String(64)),
    Column("origin", String(255), nullable=False, server_default=""),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("consumed", Boolean, nullable=False, server_default="0"),
    Index("ix_challenges_principal", "principal_id", "purpose"),
)

# One row per (principal, origin) pair plus one per (principal, "*"). Holds the
# lock and its backoff history; updating the row is what serialises guard
# decisions for that key.
attempt_counters = Table(
    "attempt_counters",
    metadata,
    Column("principal_key", String(255), primary_key=True),
    Column("origin_key", String(255), primary_key=True),
    Column("last_attempt_at", Float, nullable=False, server_default="0"),
    Column("lockout_count", Integer, nullable=False, server_default="0"),
    Column("lockout_period_start", Float, nullable=False, server_default="0"),
    Column("locked_until", Float, nullable=False, server_default="0"),
)

# Timestamps of attempts that have not been cleared by a success. The sliding
# window is a count over this table.
attempt_events = Table(
    "attempt_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_key", String(255), nullable=False),
    Column("origin_key", String(255), nullable=False),
    Column("at", Float, nullable=False),
    Index("ix_attempt_events_key", "principal_key", "origin_key", "at"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create the shared engine and ensure the schema exists."""
    connect_args: dict = {}
    engine_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        engine_args["pool_timeout"] = timeout
        engine_args["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=connect_args, **engine_args)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver connectivity/timeout failures into StorageUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__)
        raise StorageUnavailable(operation) from exc
