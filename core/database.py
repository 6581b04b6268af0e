"""
core/database.py -- The injected store handle and the durable schema.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py and
audit/models.py remain the authoritative domain representation. Swapping
SQLite for PostgreSQL is a connection string change, not a rewrite.

Lifecycle: Database is NOT a module-level singleton. The application factory
(or the CLI) constructs one, calls open() at startup and close() at shutdown,
and passes it to every store at construction. Tests build their own.

Transactions: transaction() yields a connection inside one transaction. When
a caller already holds a connection it passes it in and the nested call joins
the outer transaction instead of opening a second one. That is how a
password change, its session revocation and its audit event commit or roll
back together.

Errors: every SQLAlchemyError (including SQLite "database is locked" after
the busy timeout) is translated to core.errors.StorageFailure at this
boundary. Nothing is swallowed.

Timestamps are stored as UTC ISO-8601 strings with fixed microsecond
precision, so lexical order in SQL equals chronological order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.errors import StorageFailure

logger = logging.getLogger("gatekeeper.database")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

operators = Table(
    "operators",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("secret_hash", Text, nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("role", String(30), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(32), primary_key=True),  # embedded in the token as jti
    Column("owner_id", String(32), nullable=False, index=True),
    Column("token_digest", String(64), nullable=False),  # SHA-256 hex, never the token
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

# Tombstones for rotated refresh tokens. Lets rotation tell "already used"
# (TokenReused) apart from "revoked or never existed" (TokenInvalid). Kept
# only until the consumed token would have expired anyway.
consumed_refresh_tokens = Table(
    "consumed_refresh_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("owner_id", String(32), nullable=False, index=True),
    Column("consumed_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),  # tie-breaker for equal created_at
    Column("id", String(32), nullable=False, unique=True),
    Column("action", String(20), nullable=False),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", String(64)),
    Column("old_values", Text),  # JSON object
    Column("new_values", Text),  # JSON object
    Column("actor_id", String(32), index=True),
    Column("client_ip", String(64)),
    Column("user_agent", String(512)),
    Column("description", Text),
    Column("created_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 (always with microseconds). Naive input is taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# SQLite tuning
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. The busy timeout itself comes from the
    driver's ``timeout`` connect argument.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class Database:
    """Store handle with an explicit open/close lifecycle.

    Usage:
        db = Database("sqlite:///gatekeeper.db").open()
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, url: str, *, timeout: float = 30.0) -> None:
        self.url = url
        self.timeout = timeout
        self._engine: Engine | None = None

    def open(self) -> "Database":
        if self._engine is not None:
            return self
        connect_args: dict = {}
        is_sqlite = self.url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = self.timeout
        try:
            engine = create_engine(self.url, connect_args=connect_args)
            if is_sqlite:
                event.listen(engine, "connect", _set_sqlite_pragmas)
            metadata.create_all(engine)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"could not open database: {exc.__class__.__name__}") from exc
        self._engine = engine
        logger.info("Database opened (%s)", engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Database closed")

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open. Call open() during startup.")
        return self._engine

    @contextmanager
    def transaction(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield a connection in a transaction, joining ``conn`` when given.

        A fresh transaction commits when the block exits cleanly and rolls
        back on any exception. Driver errors surface as StorageFailure.
        """
        if conn is not None:
            yield conn
            return
        try:
            with self.engine.begin() as new_conn:
                yield new_conn
        except IntegrityError:
            # Constraint violations are caller errors, not storage failures.
            raise
        except SQLAlchemyError as exc:
            logger.error("Storage error: %s", exc.__class__.__name__)
            raise StorageFailure(f"storage error: {exc.__class__.__name__}") from exc

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, RuntimeError):
            return False
        return True
