"""
storage/database.py

SQLite connection and schema initialisation for the ShieldGate storage layer.
The same database file is shared by every engine instance and is the source
of truth whenever an instance's in-memory caches disagree with it.

Design decisions:
  - WAL journal mode for concurrent readers + one writer without blocking.
  - check_same_thread=False: the engine runs storage calls in worker threads
    (asyncio.to_thread) so a slow disk cannot stall the event loop. All
    access to the shared connection is serialised through self._lock.
  - busy_timeout=5000ms: instead of raising SQLITE_BUSY immediately, SQLite
    will spin-wait up to 5 seconds while another instance holds the writer.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time

from ..errors import StorageUnavailableError

logger = logging.getLogger(__name__)

_CURRENT_SCHEMA_VERSION = 1


class Database:
    """
    Thin wrapper around a sqlite3 connection.

    Usage:
        db = Database("data/shieldgate.db")
        db.init_schema()
        # ... pass db to the repositories ...
        db.close()
    """

    def __init__(self, db_path: str = "data/shieldgate.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # rows behave like dicts
        self._lock = threading.RLock()
        self._configure()
        logger.info("Database opened - path=%r", db_path)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _configure(self) -> None:
        """Apply performance and safety PRAGMAs."""
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA synchronous=NORMAL")  # safe with WAL
        self.conn.commit()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create all tables and indexes if they don't already exist."""
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript("""
                CREATE TABLE IF NOT EXISTS rules (
                    id                     INTEGER PRIMARY KEY AUTOINCREMENT,
                    name                   TEXT NOT NULL,
                    kind                   TEXT NOT NULL,
                    max_requests           INTEGER NOT NULL,
                    window_seconds         INTEGER NOT NULL,
                    block_duration_minutes INTEGER NOT NULL,
                    target_endpoints       TEXT DEFAULT NULL,
                    scope                  TEXT NOT NULL DEFAULT 'all',
                    enabled                INTEGER NOT NULL DEFAULT 1,
                    created_at             REAL NOT NULL,
                    updated_at             REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS blocked_ips (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    ip_address TEXT NOT NULL,
                    reason     TEXT NOT NULL,
                    rule_id    INTEGER DEFAULT NULL,
                    scope      TEXT NOT NULL DEFAULT 'all',
                    created_by TEXT NOT NULL,
                    blocked_at REAL NOT NULL,
                    expires_at REAL DEFAULT NULL,
                    status     TEXT NOT NULL DEFAULT 'active'
                );

                CREATE TABLE IF NOT EXISTS request_log (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp       REAL NOT NULL,
                    ip_address      TEXT NOT NULL,
                    method          TEXT NOT NULL,
                    endpoint        TEXT NOT NULL,
                    status_code     INTEGER DEFAULT NULL,
                    user_agent      TEXT DEFAULT NULL,
                    status          TEXT NOT NULL,
                    is_suspicious   INTEGER NOT NULL DEFAULT 0,
                    is_blocked      INTEGER NOT NULL DEFAULT 0,
                    is_sensitive    INTEGER NOT NULL DEFAULT 0,
                    is_failed_login INTEGER NOT NULL DEFAULT 0,
                    rule_triggered  TEXT DEFAULT NULL,
                    action_taken    TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS security_audit_log (
                    id        INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    action    TEXT NOT NULL,
                    actor     TEXT NOT NULL,
                    ip        TEXT DEFAULT NULL,
                    details   TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS config (
                    key        TEXT PRIMARY KEY,
                    value      TEXT,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version    INTEGER PRIMARY KEY,
                    applied_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_blocked_ip_status
                    ON blocked_ips(ip_address, status);
                CREATE INDEX IF NOT EXISTS idx_blocked_blocked_at
                    ON blocked_ips(blocked_at DESC);
                CREATE INDEX IF NOT EXISTS idx_request_log_ip_ts
                    ON request_log(ip_address, timestamp);
                CREATE INDEX IF NOT EXISTS idx_request_log_timestamp
                    ON request_log(timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_audit_timestamp
                    ON security_audit_log(timestamp DESC);
            """)

            # Record schema version (ignore if already present)
            cur.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (_CURRENT_SCHEMA_VERSION, time.time()),
            )
            self.conn.commit()
        logger.info("Schema initialised (version=%d)", _CURRENT_SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Flush and close the SQLite connection."""
        try:
            with self._lock:
                self.conn.commit()
                self.conn.close()
            logger.info("Database closed - path=%r", self.db_path)
        except sqlite3.Error as exc:
            logger.warning("Error closing database: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    # sqlite3.OperationalError covers "database is locked", missing files and
    # closed connections; callers see it as StorageUnavailableError.

    def write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a statement and commit it in one locked step."""
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
            except (sqlite3.OperationalError, sqlite3.ProgrammingError) as exc:
                raise StorageUnavailableError(str(exc)) from exc
            return cur

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except (sqlite3.OperationalError, sqlite3.ProgrammingError) as exc:
                raise StorageUnavailableError(str(exc)) from exc

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchone()
            except (sqlite3.OperationalError, sqlite3.ProgrammingError) as exc:
                raise StorageUnavailableError(str(exc)) from exc
