"""
tests/test_admin.py

Tests for engine/admin.py - management operations, cache invalidation,
audit trail and retention cleanup.
"""

from __future__ import annotations

import pytest

from shieldgate.backend.clock import ManualClock
from shieldgate.backend.config import Settings
from shieldgate.backend.engine.admin import DEFAULT_RULES, AdminService
from shieldgate.backend.engine.engine import build_engine
from shieldgate.backend.errors import InvalidRuleError
from shieldgate.backend.models import (
    BlockStatus,
    CreatedBy,
    DecisionStatus,
    RequestLogEntry,
    RuleKind,
    Scope,
)
from shieldgate.backend.storage.database import Database
from shieldgate.backend.storage.migrations import apply_migrations

T0 = 1_700_000_000.0
DAY = 86_400


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    d = Database(":memory:")
    d.init_schema()
    apply_migrations(d)
    yield d
    d.close()


@pytest.fixture
def clock():
    return ManualClock(start=T0)


@pytest.fixture
def admin(db, clock):
    engine = build_engine(db, Settings(), clock=clock)
    return AdminService(db, engine.state, Settings(), clock=clock)


def audit_actions(admin) -> list[str]:
    items, _ = admin.get_audit(limit=100)
    return [e["action"] for e in items]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class TestRuleManagement:

    def test_create_invalidates_cache_and_audits(self, admin):
        assert admin.state.rules.get_rules() == ()
        rule = admin.create_rule("ops", name="r", kind="rate_limit", max_requests=5,
                                 window_seconds=10, block_duration_minutes=15)
        assert [r.id for r in admin.state.rules.get_rules()] == [rule.id]
        assert audit_actions(admin) == ["rule_created"]

    def test_update_unknown_field_rejected(self, admin):
        rule = admin.create_rule("ops", name="r", kind=RuleKind.RATE_LIMIT, max_requests=5,
                                 window_seconds=10, block_duration_minutes=15)
        with pytest.raises(InvalidRuleError):
            admin.update_rule("ops", rule.id, id=99)

    def test_update_audits_changes(self, admin):
        rule = admin.create_rule("ops", name="r", kind=RuleKind.RATE_LIMIT, max_requests=5,
                                 window_seconds=10, block_duration_minutes=15)
        admin.update_rule("ops", rule.id, scope=Scope.SENSITIVE_ONLY, max_requests=9)
        items, _ = admin.get_audit(action="rule_updated")
        assert items[0]["details"]["changes"] == {"scope": "sensitive_only", "max_requests": 9}

    def test_update_missing(self, admin):
        assert admin.update_rule("ops", 42, max_requests=3) is None

    def test_delete(self, admin):
        rule = admin.create_rule("ops", name="r", kind=RuleKind.RATE_LIMIT, max_requests=5,
                                 window_seconds=10, block_duration_minutes=15)
        admin.state.rules.get_rules()
        assert admin.delete_rule("ops", rule.id)
        assert admin.state.rules.get_rules() == ()
        assert not admin.delete_rule("ops", rule.id)
        assert audit_actions(admin).count("rule_deleted") == 1

    def test_seed_default_rules_once(self, admin):
        assert admin.seed_default_rules() == len(DEFAULT_RULES)
        assert admin.seed_default_rules() == 0
        names = [r.name for r in admin.list_rules()]
        assert names == ["rate_flood", "brute_force", "endpoint_abuse"]
        abuse = admin.list_rules()[2]
        assert abuse.scope is Scope.SENSITIVE_ONLY
        assert (abuse.max_requests, abuse.window_seconds) == (20, 30)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------

class TestBlockManagement:

    def test_manual_block_with_duration(self, admin):
        record = admin.block_ip("ops", "203.0.113.7", reason="abuse", duration_minutes=60)
        assert record.created_by is CreatedBy.ADMIN
        assert record.expires_at == T0 + 3600
        assert admin.state.blocks.is_blocked("203.0.113.7")
        assert audit_actions(admin) == ["manual_block"]

    def test_manual_block_permanent(self, admin):
        record = admin.block_ip("ops", "203.0.113.7")
        assert record.expires_at is None

    def test_unblock(self, admin):
        record = admin.block_ip("ops", "203.0.113.7")
        updated = admin.unblock("ops", record.id)
        assert updated.status is BlockStatus.MANUAL_UNBLOCK
        assert not admin.state.blocks.is_blocked("203.0.113.7")
        assert "manual_unblock" in audit_actions(admin)

    def test_unblock_twice_is_noop(self, admin):
        record = admin.block_ip("ops", "203.0.113.7")
        admin.unblock("ops", record.id)
        admin.unblock("ops", record.id)
        assert audit_actions(admin).count("manual_unblock") == 1

    def test_unblock_missing(self, admin):
        assert admin.unblock("ops", 404) is None

    def test_list_active_blocks(self, admin, clock):
        admin.block_ip("ops", "203.0.113.7", duration_minutes=1)
        admin.block_ip("ops", "198.51.100.1")
        clock.advance(61)
        assert [b.ip for b in admin.list_active_blocks()] == ["198.51.100.1"]


# ---------------------------------------------------------------------------
# Logs, webhook, dashboard
# ---------------------------------------------------------------------------

def log(admin, ts, status=DecisionStatus.NORMAL, ip="203.0.113.7"):
    admin.logs_repo.insert(RequestLogEntry(
        ip=ip, method="GET", endpoint="/x", status=status,
        action_taken="allowed", timestamp=ts,
    ))


class TestLogsAndConfig:

    def test_get_logs_returns_total(self, admin):
        for i in range(3):
            log(admin, T0 + i)
        items, total = admin.get_logs(limit=2)
        assert len(items) == 2
        assert total == 3

    def test_clear_logs_audited(self, admin):
        log(admin, T0)
        assert admin.clear_logs("ops") == 1
        assert admin.get_logs()[1] == 0
        assert "logs_cleared" in audit_actions(admin)

    def test_webhook(self, admin):
        assert admin.get_webhook_url() is None
        admin.set_webhook_url("ops", "https://hooks.test/a")
        assert admin.get_webhook_url() == "https://hooks.test/a"
        admin.set_webhook_url("ops", None)
        assert admin.get_webhook_url() is None

    def test_dashboard_includes_active_blocks(self, admin):
        log(admin, T0 - 10, status=DecisionStatus.SUSPICIOUS)
        admin.block_ip("ops", "198.51.100.1")
        summary = admin.dashboard()
        assert summary["active_blocks"] == 1
        assert summary["suspicious_24h"] == 1

    def test_suspicious_count_last_five_minutes(self, admin):
        log(admin, T0 - 400, status=DecisionStatus.SUSPICIOUS)
        log(admin, T0 - 60, status=DecisionStatus.SUSPICIOUS)
        assert admin.suspicious_count() == 1


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestCleanup:

    def test_retention_windows(self, admin, clock):
        log(admin, T0 - 8 * DAY)
        log(admin, T0 - 6 * DAY)
        admin.audit_repo.record("old", actor="ops", timestamp=T0 - 31 * DAY)
        old_block = admin.blocks_repo.insert_block(
            ip="203.0.113.7", reason="t", rule_id=None, scope=Scope.ALL,
            created_by=CreatedBy.SYSTEM, blocked_at=T0 - 31 * DAY,
            expires_at=T0 - 31 * DAY + 900,
        )
        permanent = admin.blocks_repo.insert_block(
            ip="198.51.100.1", reason="t", rule_id=None, scope=Scope.ALL,
            created_by=CreatedBy.ADMIN, blocked_at=T0 - 40 * DAY, expires_at=None,
        )

        result = admin.cleanup("ops")

        # The stale block is expired first, then old enough to delete
        assert result == {
            "blocks_expired": 1,
            "request_logs_deleted": 1,
            "audit_entries_deleted": 1,
            "blocks_deleted": 1,
        }
        assert admin.blocks_repo.get_block(old_block.id) is None
        assert admin.blocks_repo.get_block(permanent.id) is not None
        assert "cleanup" in audit_actions(admin)
