"""
Database Connection Layer

Supports SQLite (dev, tests) and PostgreSQL (production).

A Database is an explicit handle: callers construct one and pass it to the
ledger. Every balance mutation runs inside ``Database.transaction()``.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List, Tuple
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- One spendable balance per tenant
CREATE TABLE IF NOT EXISTS credit_balances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL UNIQUE,
    tenant_kind TEXT NOT NULL,
    credits INTEGER NOT NULL CHECK (credits >= 0),
    refill_amount INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Append-only audit log of debits and refunds
CREATE TABLE IF NOT EXISTS usage_records (
    record_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    feature TEXT NOT NULL,
    kind TEXT NOT NULL,
    credits INTEGER NOT NULL,
    metadata TEXT,  -- JSON object
    idempotency_key TEXT,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_tenant ON usage_records(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_feature ON usage_records(tenant_id, feature);
CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_idempotency
    ON usage_records(tenant_id, kind, idempotency_key);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS credit_balances (
    id SERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL UNIQUE,
    tenant_kind TEXT NOT NULL,
    credits INTEGER NOT NULL CHECK (credits >= 0),
    refill_amount INTEGER NOT NULL DEFAULT 0,
    last_synced_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_records (
    record_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    feature TEXT NOT NULL,
    kind TEXT NOT NULL,
    credits INTEGER NOT NULL,
    metadata JSONB,
    idempotency_key TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_tenant ON usage_records(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_feature ON usage_records(tenant_id, feature);
CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_idempotency
    ON usage_records(tenant_id, kind, idempotency_key);
"""


class StorageFailure(Exception):
    """Raised when the underlying transaction could not be applied or committed."""
    pass


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database("sqlite:///ledger.db")
        db.initialize()
        with db.transaction() as conn:
            db.execute(conn, "SELECT * FROM credit_balances")
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///ledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._lock = threading.RLock()
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._initialized = False

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "ledger.db"

    @property
    def is_memory(self) -> bool:
        return not self.is_postgres and self._get_sqlite_path() == ":memory:"

    @property
    def integrity_errors(self) -> Tuple[type, ...]:
        """Driver exceptions raised on a unique constraint violation."""
        if self.is_postgres:
            import psycopg2
            return (psycopg2.IntegrityError,)
        return (sqlite3.IntegrityError,)

    @property
    def driver_errors(self) -> Tuple[type, ...]:
        if self.is_postgres:
            import psycopg2
            return (psycopg2.Error,)
        return (sqlite3.Error,)

    def _open_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._get_sqlite_path(),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0,
        )
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            # WAL lets readers proceed while a writer holds the lock
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def transaction(self, readonly: bool = False) -> Generator[Any, None, None]:
        """
        Open one transaction.

        Write transactions take the SQLite write lock up front. ``readonly``
        transactions start deferred and never wait on the write lock.

        Commits when the block exits cleanly, rolls back on any exception.
        Driver errors surface as StorageFailure; everything else propagates
        unchanged.
        """
        if self.is_postgres:
            yield from self._postgres_transaction(readonly)
        else:
            yield from self._sqlite_transaction(readonly)

    def _sqlite_transaction(self, readonly: bool = False) -> Generator[sqlite3.Connection, None, None]:
        if self.is_memory:
            # A :memory: database only exists on its own connection
            with self._lock:
                if self._shared_conn is None:
                    self._shared_conn = self._open_sqlite()
                yield from self._run_sqlite(self._shared_conn, readonly)
            return

        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._open_sqlite()
        yield from self._run_sqlite(self._local.conn, readonly)

    def _run_sqlite(self, conn: sqlite3.Connection, readonly: bool = False) -> Generator[sqlite3.Connection, None, None]:
        try:
            # Writers take the write lock up front so they serialize
            conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not begin transaction: {e}") from e

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(str(e)) from e
        except BaseException:
            conn.rollback()
            raise

    def _postgres_transaction(self, readonly: bool = False) -> Generator[Any, None, None]:
        """PostgreSQL transaction on a fresh connection."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        try:
            conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
            if readonly:
                conn.set_session(readonly=True)
        except psycopg2.Error as e:
            raise StorageFailure(f"Could not connect: {e}") from e

        try:
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageFailure(str(e)) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.transaction() as conn:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                # executescript commits on its own, so it runs outside transaction()
                with self._lock:
                    conn = self._sqlite_handle()
                    try:
                        conn.executescript(SCHEMA_SQL)
                        conn.execute(
                            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                            (SCHEMA_VERSION, now)
                        )
                        conn.commit()
                    except sqlite3.Error as e:
                        raise StorageFailure(f"Schema migration failed: {e}") from e

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def _sqlite_handle(self) -> sqlite3.Connection:
        if self.is_memory:
            if self._shared_conn is None:
                self._shared_conn = self._open_sqlite()
            return self._shared_conn
        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._open_sqlite()
        return self._local.conn

    def _adapt(self, query: str) -> str:
        """Queries are written with ? placeholders; psycopg2 wants %s."""
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def run(self, conn: Any, query: str, params: tuple = ()) -> int:
        """Execute a write statement inside an open transaction, returning rowcount."""
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
            return cursor.rowcount
        cursor = conn.execute(query, params)
        return cursor.rowcount

    def execute(self, conn: Any, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query inside an open transaction and return rows as dicts."""
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []
        cursor = conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def close(self) -> None:
        """Close database connections owned by the calling thread."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
