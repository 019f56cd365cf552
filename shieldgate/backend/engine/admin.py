"""
engine/admin.py

AdminService - the management side of the engine.

Every write goes to storage first, then invalidates the owning cache on this
instance so the change is visible on the very next evaluation. Other
instances pick it up at their passive refresh (60s rules, 10s blocks).
Each write leaves an entry in the security audit log.

Unlike the decision path, management calls do not fail open:
StorageUnavailableError propagates to the API layer, which answers 503.
"""

from __future__ import annotations

import logging
from typing import Any

from ..clock import Clock, SystemClock
from ..config import Settings, settings
from ..errors import InvalidRuleError
from ..models import BlockRecord, CreatedBy, Rule, RuleKind, Scope
from ..storage.database import Database
from ..storage.repository import (
    AuditRepository,
    BlockRepository,
    ConfigRepository,
    RequestLogRepository,
    RuleRepository,
)
from .state import EngineState

logger = logging.getLogger(__name__)

_DAY = 86_400

# Seeded on an empty rules table
DEFAULT_RULES: list[dict[str, Any]] = [
    dict(name="rate_flood",     kind=RuleKind.RATE_LIMIT,  max_requests=50,
         window_seconds=10, block_duration_minutes=15),
    dict(name="brute_force",    kind=RuleKind.BRUTE_FORCE, max_requests=10,
         window_seconds=60, block_duration_minutes=30),
    dict(name="endpoint_abuse", kind=RuleKind.RATE_LIMIT,  max_requests=20,
         window_seconds=30, block_duration_minutes=15, scope=Scope.SENSITIVE_ONLY),
]

_RULE_FIELDS = frozenset({
    "name", "kind", "max_requests", "window_seconds", "block_duration_minutes",
    "target_endpoints", "scope", "enabled",
})


class AdminService:
    def __init__(
        self,
        db: Database,
        state: EngineState,
        cfg: Settings = settings,
        clock: Clock | None = None,
    ) -> None:
        self.rules_repo = RuleRepository(db)
        self.blocks_repo = BlockRepository(db)
        self.logs_repo = RequestLogRepository(db)
        self.audit_repo = AuditRepository(db)
        self.config_repo = ConfigRepository(db)
        self.state = state
        self._cfg = cfg
        self._clock = clock or state.clock or SystemClock()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def list_rules(self) -> list[Rule]:
        return self.rules_repo.list_rules()

    def get_rule(self, rule_id: int) -> Rule | None:
        return self.rules_repo.get_rule(rule_id)

    def create_rule(self, actor: str, **fields: Any) -> Rule:
        rule = self.rules_repo.create_rule(**fields)
        self.state.rules.invalidate()
        self.audit_repo.record(
            "rule_created", actor=actor,
            details={"rule_id": rule.id, "name": rule.name, "kind": rule.kind.value},
            timestamp=self._clock.now(),
        )
        logger.info("Rule %r (id=%d) created by %s", rule.name, rule.id, actor)
        return rule

    def update_rule(self, actor: str, rule_id: int, **changes: Any) -> Rule | None:
        unknown = set(changes) - _RULE_FIELDS
        if unknown:
            raise InvalidRuleError(f"unknown rule field(s): {sorted(unknown)}")
        rule = self.rules_repo.update_rule(rule_id, **changes)
        if rule is None:
            return None
        self.state.rules.invalidate()
        self.audit_repo.record(
            "rule_updated", actor=actor,
            details={"rule_id": rule_id, "changes": _jsonable(changes)},
            timestamp=self._clock.now(),
        )
        logger.info("Rule id=%d updated by %s: %s", rule_id, actor, sorted(changes))
        return rule

    def delete_rule(self, actor: str, rule_id: int) -> bool:
        deleted = self.rules_repo.delete_rule(rule_id)
        if deleted:
            self.state.rules.invalidate()
            self.audit_repo.record(
                "rule_deleted", actor=actor, details={"rule_id": rule_id},
                timestamp=self._clock.now(),
            )
            logger.info("Rule id=%d deleted by %s", rule_id, actor)
        return deleted

    def seed_default_rules(self) -> int:
        """Insert DEFAULT_RULES when the table is empty. Returns rules created."""
        if self.rules_repo.count_rules() > 0:
            return 0
        for fields in DEFAULT_RULES:
            self.rules_repo.create_rule(**fields)
        self.state.rules.invalidate()
        logger.info("Seeded %d default rule(s)", len(DEFAULT_RULES))
        return len(DEFAULT_RULES)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def list_active_blocks(self) -> list[BlockRecord]:
        return self.state.blocks.list_active()

    def block_ip(
        self,
        actor: str,
        ip: str,
        reason: str = "Manual block",
        duration_minutes: int | None = None,
        scope: Scope = Scope.ALL,
    ) -> BlockRecord:
        """Manual block. duration_minutes=None means permanent."""
        now = self._clock.now()
        expires_at = now + duration_minutes * 60 if duration_minutes else None
        record = self.state.blocks.block(
            ip,
            reason=reason,
            scope=scope,
            created_by=CreatedBy.ADMIN,
            expires_at=expires_at,
        )
        self.audit_repo.record(
            "manual_block", actor=actor, ip=ip,
            details={
                "block_id": record.id,
                "reason": reason,
                "duration_minutes": duration_minutes,
                "scope": scope.value,
            },
            timestamp=now,
        )
        logger.warning("Manual block ip=%s by %s (%s)", ip, actor,
                       f"{duration_minutes}min" if duration_minutes else "permanent")
        return record

    def unblock(self, actor: str, block_id: int) -> BlockRecord | None:
        """
        Mark a block manual_unblock. Returns the updated record, or None if no
        such block exists. Unblocking a non-active record is a no-op.
        """
        record = self.blocks_repo.get_block(block_id)
        if record is None:
            return None
        if self.state.blocks.unblock(block_id):
            self.audit_repo.record(
                "manual_unblock", actor=actor, ip=record.ip,
                details={"block_id": block_id},
                timestamp=self._clock.now(),
            )
            logger.info("Block id=%d (ip=%s) lifted by %s", block_id, record.ip, actor)
        return self.blocks_repo.get_block(block_id)

    # ------------------------------------------------------------------
    # Logs and audit
    # ------------------------------------------------------------------

    def get_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        ip: str | None = None,
        endpoint: str | None = None,
    ) -> tuple[list[dict], int]:
        items = self.logs_repo.get_logs(
            limit=limit, offset=offset, status=status, ip=ip, endpoint=endpoint,
        )
        total = self.logs_repo.get_log_count(status=status, ip=ip, endpoint=endpoint)
        return items, total

    def clear_logs(self, actor: str) -> int:
        removed = self.logs_repo.clear()
        self.audit_repo.record(
            "logs_cleared", actor=actor, details={"removed": removed},
            timestamp=self._clock.now(),
        )
        logger.warning("Request log cleared by %s (%d rows)", actor, removed)
        return removed

    def get_audit(
        self,
        limit: int = 50,
        offset: int = 0,
        action: str | None = None,
        ip: str | None = None,
    ) -> tuple[list[dict], int]:
        items = self.audit_repo.get_entries(limit=limit, offset=offset, action=action, ip=ip)
        total = self.audit_repo.get_entry_count(action=action, ip=ip)
        return items, total

    # ------------------------------------------------------------------
    # Webhook destination
    # ------------------------------------------------------------------

    def get_webhook_url(self) -> str | None:
        return self.config_repo.get_webhook_url()

    def set_webhook_url(self, actor: str, url: str | None) -> None:
        self.config_repo.set_webhook_url(url or None)
        self.audit_repo.record(
            "webhook_updated", actor=actor,
            details={"configured": bool(url)},
            timestamp=self._clock.now(),
        )
        logger.info("Alert webhook %s by %s", "set" if url else "cleared", actor)

    # ------------------------------------------------------------------
    # Dashboard and retention
    # ------------------------------------------------------------------

    def dashboard(self) -> dict:
        now = self._clock.now()
        summary = self.logs_repo.get_dashboard_summary(now)
        summary["active_blocks"] = self.blocks_repo.count_active()
        return summary

    def suspicious_count(self, since_seconds: int = 300) -> int:
        return self.logs_repo.count_suspicious_since(self._clock.now() - since_seconds)

    def cleanup(self, actor: str = CreatedBy.SYSTEM.value) -> dict[str, int]:
        """
        Retention sweep:
          request_log        older than REQUEST_LOG_RETENTION_DAYS
          security_audit_log older than AUDIT_LOG_RETENTION_DAYS
          blocked_ips        resolved (expired / unblocked) older than BLOCK_RETENTION_DAYS
        """
        now = self._clock.now()
        expired = self.blocks_repo.expire_due(now)
        result = {
            "blocks_expired": expired,
            "request_logs_deleted": self.logs_repo.delete_before(
                now - self._cfg.REQUEST_LOG_RETENTION_DAYS * _DAY
            ),
            "audit_entries_deleted": self.audit_repo.delete_before(
                now - self._cfg.AUDIT_LOG_RETENTION_DAYS * _DAY
            ),
            "blocks_deleted": self.blocks_repo.delete_resolved_before(
                now - self._cfg.BLOCK_RETENTION_DAYS * _DAY
            ),
        }
        if expired:
            self.state.blocks.invalidate()
        self.audit_repo.record("cleanup", actor=actor, details=result, timestamp=now)
        logger.info("Retention cleanup by %s: %s", actor, result)
        return result


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in changes.items():
        if hasattr(v, "value"):
            v = v.value
        elif isinstance(v, tuple):
            v = list(v)
        out[k] = v
    return out
