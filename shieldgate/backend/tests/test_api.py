"""
tests/test_api.py

FastAPI route tests using TestClient (synchronous).
Each test gets a fresh in-memory database, engine and admin service wired in
through set_services(), so no real DB or webhook is needed.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from shieldgate.backend.api.main import create_app, set_services
from shieldgate.backend.clock import AlwaysSampler, ManualClock
from shieldgate.backend.config import Settings
from shieldgate.backend.engine.admin import AdminService
from shieldgate.backend.engine.engine import build_engine
from shieldgate.backend.errors import StorageUnavailableError
from shieldgate.backend.metrics import METRICS
from shieldgate.backend.models import DecisionStatus, RequestLogEntry
from shieldgate.backend.storage.database import Database
from shieldgate.backend.storage.migrations import apply_migrations

T0 = 1_700_000_000.0
ADMIN = {"X-Caller-Role": "admin", "X-Caller-Id": "alice"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def services():
    METRICS.reset_all()
    db = Database(":memory:")
    db.init_schema()
    apply_migrations(db)
    clock = ManualClock(start=T0)
    engine = build_engine(
        db, Settings(), clock=clock,
        sampler=AlwaysSampler(), fast_path_sampler=AlwaysSampler(),
    )
    admin = AdminService(db, engine.state, Settings(), clock=clock)
    set_services(engine, admin)
    yield engine, admin, clock
    set_services(None, None)
    db.close()


@pytest.fixture
def client(services):
    app = create_app()
    with TestClient(app) as c:
        yield c


def make_rule(client, **overrides) -> dict:
    body = {
        "name": "rate_flood",
        "kind": "rate_limit",
        "max_requests": 3,
        "window_seconds": 10,
        "block_duration_minutes": 15,
    }
    body.update(overrides)
    resp = client.post("/api/rules", json=body, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


def seed_log(admin, ip="203.0.113.7", status=DecisionStatus.NORMAL, ts=T0):
    admin.logs_repo.insert(RequestLogEntry(
        ip=ip, method="GET", endpoint="/api/items", status=status,
        action_taken="allowed", timestamp=ts,
    ))


# ---------------------------------------------------------------------------
# Health + auth
# ---------------------------------------------------------------------------

class TestHealthAndAuth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "engine_ready": True}

    @pytest.mark.parametrize("path", [
        "/api/rules", "/api/blocks", "/api/logs", "/api/audit",
        "/api/config/webhook", "/api/dashboard", "/api/stats",
    ])
    def test_management_requires_admin_role(self, client, path):
        assert client.get(path).status_code == 403
        assert client.get(path, headers={"X-Caller-Role": "user"}).status_code == 403

    def test_actor_defaults_to_admin(self, client, services):
        _, admin, _ = services
        client.post("/api/blocks", json={"ip": "203.0.113.7"},
                    headers={"X-Caller-Role": "admin"})
        items, _ = admin.get_audit(action="manual_block")
        assert items[0]["actor"] == "admin"


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class TestIngest:

    def test_normal_request_allowed(self, client):
        resp = client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "normal", "rule": None, "block_duration_minutes": None}

    def test_rate_limit_returns_403(self, client):
        make_rule(client, max_requests=3)
        statuses = [
            client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"}).status_code
            for _ in range(4)
        ]
        assert statuses == [200, 200, 200, 403]

        resp = client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        assert resp.status_code == 403
        assert resp.json()["rule"] == "ip_blocked"

    def test_blocked_body_carries_rule_and_duration(self, client):
        make_rule(client, max_requests=1, block_duration_minutes=20)
        client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        resp = client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        assert resp.status_code == 403
        assert resp.json() == {
            "status": "blocked", "rule": "rate_flood", "block_duration_minutes": 20,
        }

    def test_public_variant(self, client):
        resp = client.post("/api/ingest/public", json={"ip": "203.0.113.7", "endpoint": "/"})
        assert resp.status_code == 200

    def test_missing_ip_is_422(self, client):
        assert client.post("/api/ingest/evaluate", json={}).status_code == 422

    def test_precheck(self, client):
        assert client.get("/api/ingest/precheck", params={"ip": "203.0.113.7"}).status_code == 200
        client.post("/api/blocks", json={"ip": "203.0.113.7"}, headers=ADMIN)
        resp = client.get("/api/ingest/precheck", params={"ip": "203.0.113.7"})
        assert resp.status_code == 403
        assert resp.json()["rule"] == "ip_blocked"

    def test_precheck_sensitive_only_block(self, client):
        client.post("/api/blocks", json={"ip": "203.0.113.7", "scope": "sensitive_only"},
                    headers=ADMIN)
        assert client.get("/api/ingest/precheck", params={"ip": "203.0.113.7"}).status_code == 200
        params = {"ip": "203.0.113.7", "sensitive": "false"}
        assert client.get("/api/ingest/precheck", params=params).status_code == 200
        params["sensitive"] = "true"
        assert client.get("/api/ingest/precheck", params=params).status_code == 403


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class TestRules:

    def test_create_and_list(self, client):
        created = make_rule(client, target_endpoints=["/login"], scope="sensitive_only")
        assert created["id"] > 0
        assert created["target_endpoints"] == ["/login"]

        rules = client.get("/api/rules", headers=ADMIN).json()
        assert [r["name"] for r in rules] == ["rate_flood"]

    @pytest.mark.parametrize("field,value", [
        ("max_requests", 0),
        ("window_seconds", -1),
        ("kind", "port_scan"),
        ("name", ""),
    ])
    def test_invalid_body_is_422(self, client, field, value):
        body = {"name": "r", "kind": "rate_limit", "max_requests": 3,
                "window_seconds": 10, "block_duration_minutes": 15}
        body[field] = value
        assert client.post("/api/rules", json=body, headers=ADMIN).status_code == 422

    def test_partial_update(self, client):
        rule = make_rule(client)
        resp = client.put(f"/api/rules/{rule['id']}", json={"max_requests": 9}, headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert body["max_requests"] == 9
        assert body["window_seconds"] == 10

    def test_update_clears_target_endpoints(self, client):
        rule = make_rule(client, target_endpoints=["/login"])
        resp = client.put(f"/api/rules/{rule['id']}", json={"target_endpoints": None},
                          headers=ADMIN)
        assert resp.json()["target_endpoints"] is None

    def test_empty_update_is_400(self, client):
        rule = make_rule(client)
        assert client.put(f"/api/rules/{rule['id']}", json={}, headers=ADMIN).status_code == 400

    def test_update_missing_is_404(self, client):
        assert client.put("/api/rules/999", json={"enabled": False}, headers=ADMIN).status_code == 404

    def test_delete(self, client):
        rule = make_rule(client)
        assert client.delete(f"/api/rules/{rule['id']}", headers=ADMIN).status_code == 204
        assert client.delete(f"/api/rules/{rule['id']}", headers=ADMIN).status_code == 404
        assert client.get("/api/rules", headers=ADMIN).json() == []

    def test_disabled_rule_stops_blocking(self, client):
        rule = make_rule(client, max_requests=1)
        client.put(f"/api/rules/{rule['id']}", json={"enabled": False}, headers=ADMIN)
        for _ in range(5):
            resp = client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
            assert resp.status_code == 200

    def test_mutations_are_audited(self, client, services):
        _, admin, _ = services
        rule = make_rule(client)
        client.put(f"/api/rules/{rule['id']}", json={"max_requests": 4}, headers=ADMIN)
        client.delete(f"/api/rules/{rule['id']}", headers=ADMIN)
        items, _ = admin.get_audit()
        assert [e["action"] for e in items] == ["rule_deleted", "rule_updated", "rule_created"]
        assert all(e["actor"] == "alice" for e in items)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------

class TestBlocks:

    def test_manual_block_then_unblock(self, client):
        resp = client.post("/api/blocks", json={"ip": "203.0.113.7", "duration_minutes": 5},
                           headers=ADMIN)
        assert resp.status_code == 201
        block = resp.json()
        assert block["created_by"] == "admin"
        assert block["expires_at"] == T0 + 300

        assert client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"}).status_code == 403

        listed = client.get("/api/blocks", headers=ADMIN).json()
        assert [b["id"] for b in listed] == [block["id"]]

        resp = client.post(f"/api/blocks/{block['id']}/unblock", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["status"] == "manual_unblock"
        assert client.get("/api/blocks", headers=ADMIN).json() == []
        assert client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"}).status_code == 200

    def test_unblock_missing_is_404(self, client):
        assert client.post("/api/blocks/999/unblock", headers=ADMIN).status_code == 404

    def test_zero_duration_is_422(self, client):
        resp = client.post("/api/blocks", json={"ip": "203.0.113.7", "duration_minutes": 0},
                           headers=ADMIN)
        assert resp.status_code == 422

    def test_system_block_listed(self, client):
        make_rule(client, max_requests=1)
        client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        listed = client.get("/api/blocks", headers=ADMIN).json()
        assert len(listed) == 1
        assert listed[0]["created_by"] == "system"


# ---------------------------------------------------------------------------
# Logs + audit
# ---------------------------------------------------------------------------

class TestLogs:

    def test_pagination(self, client, services):
        _, admin, _ = services
        for i in range(5):
            seed_log(admin, ts=T0 + i)

        body = client.get("/api/logs", params={"limit": 2}, headers=ADMIN).json()
        assert body["total"] == 5
        assert len(body["items"]) == 2
        assert body["has_more"] is True

        body = client.get("/api/logs", params={"page": 3, "limit": 2}, headers=ADMIN).json()
        assert len(body["items"]) == 1
        assert body["has_more"] is False

    def test_newest_first(self, client, services):
        _, admin, _ = services
        seed_log(admin, ts=T0)
        seed_log(admin, ts=T0 + 10)
        items = client.get("/api/logs", headers=ADMIN).json()["items"]
        assert items[0]["timestamp"] > items[1]["timestamp"]

    def test_filter_by_status_and_ip(self, client, services):
        _, admin, _ = services
        seed_log(admin, ip="203.0.113.7", status=DecisionStatus.SUSPICIOUS)
        seed_log(admin, ip="198.51.100.1")
        body = client.get("/api/logs", params={"status": "suspicious"}, headers=ADMIN).json()
        assert [i["ip"] for i in body["items"]] == ["203.0.113.7"]
        body = client.get("/api/logs", params={"ip": "198.51.100.1"}, headers=ADMIN).json()
        assert body["total"] == 1

    def test_limit_capped(self, client):
        assert client.get("/api/logs", params={"limit": 501}, headers=ADMIN).status_code == 422

    def test_evaluations_are_logged(self, client):
        client.post("/api/ingest/evaluate",
                    json={"ip": "203.0.113.7", "endpoint": "/api/items", "latency_ms": 12.5})
        items = client.get("/api/logs", headers=ADMIN).json()["items"]
        assert items[0]["endpoint"] == "/api/items"
        assert items[0]["latency_ms"] == 12.5

    def test_clear(self, client, services):
        _, admin, _ = services
        seed_log(admin)
        seed_log(admin)
        resp = client.delete("/api/logs", headers=ADMIN)
        assert resp.json() == {"deleted": 2}
        assert client.get("/api/logs", headers=ADMIN).json()["total"] == 0

    def test_audit_filter(self, client):
        client.post("/api/blocks", json={"ip": "203.0.113.7"}, headers=ADMIN)
        client.put("/api/config/webhook", json={"url": "https://hooks.test/x"}, headers=ADMIN)
        body = client.get("/api/audit", params={"action": "manual_block"}, headers=ADMIN).json()
        assert body["total"] == 1
        assert body["items"][0]["ip"] == "203.0.113.7"
        body = client.get("/api/audit", params={"ip": "203.0.113.7"}, headers=ADMIN).json()
        assert body["total"] == 1


# ---------------------------------------------------------------------------
# Config, maintenance, dashboard, stats
# ---------------------------------------------------------------------------

class TestConfigAndMaintenance:

    def test_webhook_roundtrip(self, client):
        assert client.get("/api/config/webhook", headers=ADMIN).json() == {"url": None}
        resp = client.put("/api/config/webhook", json={"url": "https://hooks.test/x"},
                          headers=ADMIN)
        assert resp.status_code == 200
        assert client.get("/api/config/webhook", headers=ADMIN).json() == {
            "url": "https://hooks.test/x"
        }
        client.put("/api/config/webhook", json={"url": ""}, headers=ADMIN)
        assert client.get("/api/config/webhook", headers=ADMIN).json() == {"url": None}

    def test_webhook_rejects_non_http(self, client):
        resp = client.put("/api/config/webhook", json={"url": "ftp://x"}, headers=ADMIN)
        assert resp.status_code == 400

    def test_cleanup(self, client, services):
        _, admin, _ = services
        seed_log(admin, ts=T0 - 8 * 86_400)
        resp = client.post("/api/maintenance/cleanup", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["request_logs_deleted"] == 1

    def test_dashboard(self, client, services):
        _, admin, _ = services
        seed_log(admin, status=DecisionStatus.SUSPICIOUS, ts=T0 - 30)
        seed_log(admin, ts=T0 - 30)
        client.post("/api/blocks", json={"ip": "198.51.100.1"}, headers=ADMIN)

        body = client.get("/api/dashboard", headers=ADMIN).json()
        assert body["total_requests_24h"] == 2
        assert body["suspicious_24h"] == 1
        assert body["active_blocks"] == 1
        assert body["top_ips"][0] == {"ip": "203.0.113.7", "count": 2}

        assert client.get("/api/dashboard/suspicious-count", headers=ADMIN).json() == {"count": 1}

    def test_stats(self, client):
        client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        body = client.get("/api/stats", headers=ADMIN).json()
        assert body["engine"]["requests_evaluated"] == 1
        assert body["metrics"]["logs_written"] >= 1
        assert body["alerts"] == {}


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------

class TestStorageFailure:

    def test_management_returns_503(self, client, services):
        _, admin, _ = services

        def boom(*_a, **_k):
            raise StorageUnavailableError("disk gone")

        admin.rules_repo.list_rules = boom
        assert client.get("/api/rules", headers=ADMIN).status_code == 503

    def test_ingest_fails_open(self, client, services):
        _, admin, _ = services
        make_rule(client, max_requests=1)
        admin.blocks_repo._db.close()
        resp = client.post("/api/ingest/evaluate", json={"ip": "203.0.113.7"})
        assert resp.status_code == 200
