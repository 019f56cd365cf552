"""
storage/migrations.py

Versioned schema changes applied on top of init_schema().

Every instance runs apply_migrations() at startup; versions already recorded
in schema_version are skipped, so concurrent instances converge on the same
schema.

    v2 - request_log.latency_ms (per-request latency reported by the caller)
    v3 - index on request_log(status, timestamp) for dashboard queries
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from .database import Database

logger = logging.getLogger(__name__)


def migration_2(cur) -> None:
    cur.execute(
        "ALTER TABLE request_log ADD COLUMN latency_ms REAL DEFAULT NULL"
    )


def migration_3(cur) -> None:
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_request_log_status_ts "
        "ON request_log(status, timestamp)"
    )


_MIGRATIONS: list[tuple[int, Callable]] = [
    (2, migration_2),
    (3, migration_3),
]


def current_version(db: Database) -> int:
    row = db.fetchone("SELECT MAX(version) FROM schema_version")
    return row[0] if row and row[0] is not None else 0


def apply_migrations(db: Database) -> list[int]:
    """Apply pending migrations in version order; return the versions applied."""
    applied: list[int] = []
    with db._lock:
        version_now = current_version(db)
        pending = sorted(
            ((v, fn) for v, fn in _MIGRATIONS if v > version_now),
            key=lambda item: item[0],
        )
        if not pending:
            logger.debug("No pending migrations (schema version=%d)", version_now)
            return applied

        cur = db.conn.cursor()
        for version, migration_fn in pending:
            logger.info("Applying migration v%d", version)
            try:
                migration_fn(cur)
                cur.execute(
                    "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, time.time()),
                )
                db.conn.commit()
            except Exception as exc:
                db.conn.rollback()
                logger.error("Migration v%d failed, rolled back: %s", version, exc)
                raise
            applied.append(version)
    logger.info("Schema migrated to v%d", applied[-1])
    return applied
