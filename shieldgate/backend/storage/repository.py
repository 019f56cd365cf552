"""
storage/repository.py

Repositories over the shared SQLite store:

  RuleRepository       - rules table (management API writes, RuleCache reads)
  BlockRepository      - blocked_ips table; readers never assume one row per IP
  RequestLogRepository - append-only request ledger + durable hit counts
  AuditRepository      - append-only human-readable security events
  ConfigRepository     - small key/value table (alert webhook destination)

Repositories do not swallow storage errors: StorageUnavailableError reaches
the caller, which decides whether to fail open (engine) or return 5xx (API).
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from ..errors import InvalidRuleError
from ..models import (
    BlockRecord,
    BlockStatus,
    CreatedBy,
    RequestLogEntry,
    Rule,
    RuleKind,
    Scope,
)
from .database import Database

logger = logging.getLogger(__name__)

_DAY = 86_400.0
_MAX_PAGE = 500


# ==================================================================
# Rules
# ==================================================================

class RuleRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def list_rules(self, enabled_only: bool = False) -> list[Rule]:
        """Rules ordered by id. Rows that fail validation are skipped."""
        sql = "SELECT * FROM rules"
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY id ASC"
        rules: list[Rule] = []
        for row in self._db.fetchall(sql):
            try:
                rule = self._row_to_rule(row)
                rule.validate()
            except (InvalidRuleError, ValueError) as exc:
                logger.warning("Skipping malformed rule id=%s: %s", row["id"], exc)
                continue
            rules.append(rule)
        return rules

    def get_rule(self, rule_id: int) -> Rule | None:
        row = self._db.fetchone("SELECT * FROM rules WHERE id = ?", (rule_id,))
        return self._row_to_rule(row) if row else None

    def create_rule(
        self,
        name: str,
        kind: RuleKind | str,
        max_requests: int,
        window_seconds: int,
        block_duration_minutes: int,
        target_endpoints: list[str] | tuple[str, ...] | None = None,
        scope: Scope | str = Scope.ALL,
        enabled: bool = True,
    ) -> Rule:
        now = time.time()
        rule = Rule(
            id=0,
            name=name,
            kind=RuleKind(kind),
            max_requests=max_requests,
            window_seconds=window_seconds,
            block_duration_minutes=block_duration_minutes,
            target_endpoints=tuple(target_endpoints) if target_endpoints else None,
            scope=Scope(scope),
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        rule.validate()
        cur = self._db.write(
            """
            INSERT INTO rules (
                name, kind, max_requests, window_seconds, block_duration_minutes,
                target_endpoints, scope, enabled, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._rule_params(rule) + (now, now),
        )
        return replace(rule, id=cur.lastrowid)

    def update_rule(self, rule_id: int, **changes: Any) -> Rule | None:
        """Apply a partial update; returns None when the rule does not exist."""
        current = self.get_rule(rule_id)
        if current is None:
            return None
        if "kind" in changes:
            changes["kind"] = RuleKind(changes["kind"])
        if "scope" in changes:
            changes["scope"] = Scope(changes["scope"])
        if "target_endpoints" in changes:
            te = changes["target_endpoints"]
            changes["target_endpoints"] = tuple(te) if te else None
        updated = replace(current, **changes, updated_at=time.time())
        updated.validate()
        self._db.write(
            """
            UPDATE rules SET
                name = ?, kind = ?, max_requests = ?, window_seconds = ?,
                block_duration_minutes = ?, target_endpoints = ?, scope = ?,
                enabled = ?, updated_at = ?
            WHERE id = ?
            """,
            self._rule_params(updated) + (updated.updated_at, rule_id),
        )
        return updated

    def delete_rule(self, rule_id: int) -> bool:
        cur = self._db.write("DELETE FROM rules WHERE id = ?", (rule_id,))
        return cur.rowcount > 0

    def count_rules(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) FROM rules")
        return row[0] if row else 0

    @staticmethod
    def _rule_params(rule: Rule) -> tuple:
        return (
            rule.name,
            rule.kind.value,
            rule.max_requests,
            rule.window_seconds,
            rule.block_duration_minutes,
            json.dumps(list(rule.target_endpoints)) if rule.target_endpoints else None,
            rule.scope.value,
            1 if rule.enabled else 0,
        )

    @staticmethod
    def _row_to_rule(row: Any) -> Rule:
        targets = None
        if row["target_endpoints"]:
            try:
                targets = tuple(json.loads(row["target_endpoints"])) or None
            except (TypeError, json.JSONDecodeError):
                logger.warning("Rule id=%s has unreadable target_endpoints", row["id"])
        return Rule(
            id=row["id"],
            name=row["name"],
            kind=RuleKind(row["kind"]),
            max_requests=row["max_requests"],
            window_seconds=row["window_seconds"],
            block_duration_minutes=row["block_duration_minutes"],
            target_endpoints=targets,
            scope=Scope(row["scope"]),
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# ==================================================================
# Blocks
# ==================================================================

class BlockRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_block(
        self,
        ip: str,
        reason: str,
        rule_id: int | None,
        scope: Scope,
        created_by: CreatedBy,
        blocked_at: float,
        expires_at: float | None,
    ) -> BlockRecord:
        cur = self._db.write(
            """
            INSERT INTO blocked_ips (
                ip_address, reason, rule_id, scope, created_by,
                blocked_at, expires_at, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ip, reason, rule_id, scope.value, created_by.value,
                blocked_at, expires_at, BlockStatus.ACTIVE.value,
            ),
        )
        return BlockRecord(
            id=cur.lastrowid,
            ip=ip,
            reason=reason,
            rule_id=rule_id,
            scope=scope,
            created_by=created_by,
            blocked_at=blocked_at,
            expires_at=expires_at,
            status=BlockStatus.ACTIVE,
        )

    def get_block(self, block_id: int) -> BlockRecord | None:
        row = self._db.fetchone("SELECT * FROM blocked_ips WHERE id = ?", (block_id,))
        return self._row_to_block(row) if row else None

    def mark_unblocked(self, block_id: int) -> bool:
        """active -> manual_unblock. Terminal records are left untouched."""
        cur = self._db.write(
            "UPDATE blocked_ips SET status = ? WHERE id = ? AND status = ?",
            (BlockStatus.MANUAL_UNBLOCK.value, block_id, BlockStatus.ACTIVE.value),
        )
        return cur.rowcount > 0

    def expire_due(self, now: float) -> int:
        """active -> expired for every record whose expires_at has passed."""
        cur = self._db.write(
            """
            UPDATE blocked_ips SET status = ?
            WHERE status = ? AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (BlockStatus.EXPIRED.value, BlockStatus.ACTIVE.value, now),
        )
        if cur.rowcount:
            logger.info("Expired %d block record(s)", cur.rowcount)
        return cur.rowcount

    def list_active(self) -> list[BlockRecord]:
        """Active records, most recent first (several may exist per IP)."""
        rows = self._db.fetchall(
            "SELECT * FROM blocked_ips WHERE status = ? ORDER BY blocked_at DESC, id DESC",
            (BlockStatus.ACTIVE.value,),
        )
        return [self._row_to_block(r) for r in rows]

    def count_since(self, ip: str, since: float) -> int:
        """Block records of any status for *ip* with blocked_at >= since."""
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM blocked_ips WHERE ip_address = ? AND blocked_at >= ?",
            (ip, since),
        )
        return row[0] if row else 0

    def count_active(self) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM blocked_ips WHERE status = ?",
            (BlockStatus.ACTIVE.value,),
        )
        return row[0] if row else 0

    def delete_resolved_before(self, cutoff: float) -> int:
        cur = self._db.write(
            "DELETE FROM blocked_ips WHERE status != ? AND blocked_at < ?",
            (BlockStatus.ACTIVE.value, cutoff),
        )
        return cur.rowcount

    @staticmethod
    def _row_to_block(row: Any) -> BlockRecord:
        return BlockRecord(
            id=row["id"],
            ip=row["ip_address"],
            reason=row["reason"],
            rule_id=row["rule_id"],
            scope=Scope(row["scope"]),
            created_by=CreatedBy(row["created_by"]),
            blocked_at=row["blocked_at"],
            expires_at=row["expires_at"],
            status=BlockStatus(row["status"]),
        )


# ==================================================================
# Request log
# ==================================================================

class RequestLogRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert(self, entry: RequestLogEntry) -> None:
        self._db.write(
            """
            INSERT INTO request_log (
                timestamp, ip_address, method, endpoint, status_code, user_agent,
                status, is_suspicious, is_blocked, is_sensitive, is_failed_login,
                rule_triggered, action_taken, latency_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.timestamp,
                entry.ip,
                entry.method,
                entry.endpoint,
                entry.status_code,
                entry.user_agent,
                entry.status.value,
                int(entry.is_suspicious),
                int(entry.is_blocked),
                int(entry.is_sensitive),
                int(entry.is_failed_login),
                entry.rule_triggered,
                entry.action_taken,
                entry.latency_ms,
            ),
        )

    def count_since(
        self,
        ip: str,
        since: float,
        sensitive_only: bool = False,
        failed_login_only: bool = False,
        endpoints: Sequence[str] | None = None,
    ) -> int:
        clauses = ["ip_address = ?", "timestamp >= ?"]
        params: list[Any] = [ip, since]
        if sensitive_only:
            clauses.append("is_sensitive = 1")
        if failed_login_only:
            clauses.append("is_failed_login = 1")
        if endpoints:
            # Substring match, same as Rule.matches_endpoint()
            clauses.append("(" + " OR ".join("instr(endpoint, ?) > 0" for _ in endpoints) + ")")
            params.extend(endpoints)
        row = self._db.fetchone(
            f"SELECT COUNT(*) FROM request_log WHERE {' AND '.join(clauses)}",
            tuple(params),
        )
        return row[0] if row else 0

    def get_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        ip: str | None = None,
        endpoint: str | None = None,
    ) -> list[dict]:
        where, params = self._build_where(status=status, ip=ip, endpoint=endpoint)
        params.extend([min(limit, _MAX_PAGE), offset])
        rows = self._db.fetchall(
            f"""
            SELECT * FROM request_log
            {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            tuple(params),
        )
        return [self._row_to_dict(r) for r in rows]

    def get_log_count(
        self,
        status: str | None = None,
        ip: str | None = None,
        endpoint: str | None = None,
    ) -> int:
        where, params = self._build_where(status=status, ip=ip, endpoint=endpoint)
        row = self._db.fetchone(f"SELECT COUNT(*) FROM request_log {where}", tuple(params))
        return row[0] if row else 0

    def delete_before(self, cutoff: float) -> int:
        return self._db.write("DELETE FROM request_log WHERE timestamp < ?", (cutoff,)).rowcount

    def clear(self) -> int:
        return self._db.write("DELETE FROM request_log").rowcount

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def count_suspicious_since(self, since: float) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM request_log WHERE status = 'suspicious' AND timestamp >= ?",
            (since,),
        )
        return row[0] if row else 0

    def get_dashboard_summary(self, now: float) -> dict:
        day_ago = now - _DAY
        hour_ago = now - 3600

        total = self._db.fetchone(
            "SELECT COUNT(*) FROM request_log WHERE timestamp >= ?", (day_ago,)
        )[0]
        blocked = self._db.fetchone(
            "SELECT COUNT(*) FROM request_log WHERE is_blocked = 1 AND timestamp >= ?",
            (day_ago,),
        )[0]

        ip_rows = self._db.fetchall(
            """
            SELECT ip_address, COUNT(*) AS cnt FROM request_log
            WHERE timestamp >= ?
            GROUP BY ip_address ORDER BY cnt DESC LIMIT 5
            """,
            (day_ago,),
        )
        top_ips = [{"ip": r["ip_address"], "count": r["cnt"]} for r in ip_rows]

        recent_rows = self._db.fetchall(
            """
            SELECT * FROM request_log
            WHERE status != 'normal'
            ORDER BY timestamp DESC, id DESC LIMIT 20
            """
        )

        # Per-minute buckets for the last hour
        timeline_rows = self._db.fetchall(
            """
            SELECT CAST(timestamp / 60 AS INTEGER) * 60 AS minute,
                   COUNT(*) AS total,
                   SUM(CASE WHEN status != 'normal' THEN 1 ELSE 0 END) AS flagged
            FROM request_log
            WHERE timestamp >= ?
            GROUP BY minute ORDER BY minute ASC
            """,
            (hour_ago,),
        )
        timeline = [
            {"minute": r["minute"], "total": r["total"], "suspicious": r["flagged"] or 0}
            for r in timeline_rows
        ]

        return {
            "total_requests_24h": total,
            "suspicious_24h": self.count_suspicious_since(day_ago),
            "blocked_requests_24h": blocked,
            "top_ips": top_ips,
            "recent_suspicious": [self._row_to_dict(r) for r in recent_rows],
            "timeline": timeline,
        }

    @staticmethod
    def _build_where(
        status: str | None,
        ip: str | None,
        endpoint: str | None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if status and status != "all":
            clauses.append("status = ?")
            params.append(status.lower())
        if ip:
            clauses.append("ip_address = ?")
            params.append(ip)
        if endpoint:
            clauses.append("endpoint LIKE ?")
            params.append(f"%{endpoint}%")
        where = "WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    @staticmethod
    def _row_to_dict(row: Any) -> dict:
        d = dict(row)
        d["ip"] = d.pop("ip_address")
        for flag in ("is_suspicious", "is_blocked", "is_sensitive", "is_failed_login"):
            d[flag] = bool(d.get(flag))
        return d


# ==================================================================
# Security audit log
# ==================================================================

class AuditRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record(
        self,
        action: str,
        actor: str,
        ip: str | None = None,
        details: dict | None = None,
        timestamp: float | None = None,
    ) -> None:
        try:
            details_json = json.dumps(details or {})
        except (TypeError, ValueError) as exc:
            logger.error("audit details not JSON-serializable: %s", exc)
            details_json = json.dumps({"error": "non-serializable details"})
        self._db.write(
            """
            INSERT INTO security_audit_log (timestamp, action, actor, ip, details)
            VALUES (?, ?, ?, ?, ?)
            """,
            (timestamp if timestamp is not None else time.time(), action, actor, ip, details_json),
        )

    def get_entries(
        self,
        limit: int = 50,
        offset: int = 0,
        action: str | None = None,
        ip: str | None = None,
    ) -> list[dict]:
        where, params = self._build_where(action=action, ip=ip)
        params.extend([min(limit, _MAX_PAGE), offset])
        rows = self._db.fetchall(
            f"""
            SELECT * FROM security_audit_log
            {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            tuple(params),
        )
        return [self._row_to_dict(r) for r in rows]

    def get_entry_count(self, action: str | None = None, ip: str | None = None) -> int:
        where, params = self._build_where(action=action, ip=ip)
        row = self._db.fetchone(
            f"SELECT COUNT(*) FROM security_audit_log {where}", tuple(params)
        )
        return row[0] if row else 0

    def delete_before(self, cutoff: float) -> int:
        return self._db.write(
            "DELETE FROM security_audit_log WHERE timestamp < ?", (cutoff,)
        ).rowcount

    @staticmethod
    def _build_where(action: str | None, ip: str | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if ip:
            clauses.append("ip = ?")
            params.append(ip)
        where = "WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    @staticmethod
    def _row_to_dict(row: Any) -> dict:
        d = dict(row)
        try:
            d["details"] = json.loads(d.get("details") or "{}")
        except (TypeError, json.JSONDecodeError):
            d["details"] = {}
        return d


# ==================================================================
# Key/value config
# ==================================================================

class ConfigRepository:
    WEBHOOK_KEY = "alert_webhook_url"

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, key: str) -> str | None:
        row = self._db.fetchone("SELECT value FROM config WHERE key = ?", (key,))
        return row["value"] if row else None

    def set(self, key: str, value: str | None) -> None:
        if value is None:
            self._db.write("DELETE FROM config WHERE key = ?", (key,))
            return
        self._db.write(
            """
            INSERT INTO config (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                           updated_at = excluded.updated_at
            """,
            (key, value, time.time()),
        )

    def get_webhook_url(self) -> str | None:
        return self.get(self.WEBHOOK_KEY) or None

    def set_webhook_url(self, url: str | None) -> None:
        self.set(self.WEBHOOK_KEY, url or None)
