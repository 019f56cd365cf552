"""
tests/test_dispatcher.py

Tests for alerts/dispatcher.py.
Webhook delivery goes through httpx.MockTransport; no network is used.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from shieldgate.backend.alerts import AlertContext, AlertDispatcher
from shieldgate.backend.metrics import METRICS
from shieldgate.backend.storage.database import Database
from shieldgate.backend.storage.repository import ConfigRepository


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def config_repo():
    db = Database(":memory:")
    db.init_schema()
    yield ConfigRepository(db)
    db.close()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset_all()
    yield


class Recorder:
    """MockTransport handler that records every POST."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def ctx(base: int = 15, ua: str | None = "curl/8.0") -> AlertContext:
    return AlertContext(endpoint="/login", base_duration_minutes=base, user_agent=ua)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestDelivery:

    @pytest.mark.asyncio
    async def test_posts_payload_to_fallback_url(self, config_repo):
        rec = Recorder()
        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/a",
                            transport=httpx.MockTransport(rec))
        d.start()
        d.notify("203.0.113.7", "brute_force", 60, ctx(base=30))
        await d.drain()
        await d.stop()

        assert str(rec.requests[0].url) == "https://hooks.test/a"
        payload = rec.payloads[0]
        assert payload["event"] == "ip_blocked"
        assert payload["rule"] == "brute_force"
        assert payload["duration_minutes"] == 60
        assert payload["base_duration_minutes"] == 30
        assert payload["escalated"] is True
        assert payload["endpoint"] == "/login"
        assert d.stats["sent"] == 1
        assert METRICS.alerts_sent.value == 1

    @pytest.mark.asyncio
    async def test_config_table_overrides_fallback(self, config_repo):
        config_repo.set_webhook_url("https://hooks.test/configured")
        rec = Recorder()
        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/static",
                            transport=httpx.MockTransport(rec))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx())
        await d.drain()
        await d.stop()
        assert str(rec.requests[0].url) == "https://hooks.test/configured"

    @pytest.mark.asyncio
    async def test_no_destination_skips(self, config_repo):
        rec = Recorder()
        d = AlertDispatcher(config_repo, transport=httpx.MockTransport(rec))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx())
        await d.drain()
        await d.stop()
        assert rec.requests == []
        assert d.stats["skipped_no_destination"] == 1

    @pytest.mark.asyncio
    async def test_user_agent_truncated(self, config_repo):
        rec = Recorder()
        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/a",
                            transport=httpx.MockTransport(rec))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx(ua="u" * 500))
        await d.drain()
        await d.stop()
        assert len(rec.payloads[0]["user_agent"]) == 120


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    @pytest.mark.asyncio
    async def test_http_error_counted_and_worker_survives(self, config_repo):
        rec = Recorder(status_code=500)
        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/a",
                            transport=httpx.MockTransport(rec))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx())
        d.notify("198.51.100.1", "rate_flood", 15, ctx())
        await d.drain()
        await d.stop()
        assert len(rec.requests) == 2
        assert d.stats["failed"] == 2
        assert METRICS.alerts_failed.value == 2

    @pytest.mark.asyncio
    async def test_transport_error_counted(self, config_repo):
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/a",
                            transport=httpx.MockTransport(boom))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx())
        await d.drain()
        await d.stop()
        assert d.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self, config_repo):
        d = AlertDispatcher(config_repo, queue_size=2)
        d.notify("1.1.1.1", "r", 15, ctx())
        d.notify("2.2.2.2", "r", 15, ctx())
        assert d.notify("3.3.3.3", "r", 15, ctx()) is True
        assert d.pending == 2
        assert d.stats["dropped"] == 1
        assert METRICS.alerts_dropped.value == 1

    @pytest.mark.asyncio
    async def test_notify_does_not_wait_for_delivery(self, config_repo):
        release = asyncio.Event()

        async def slow_handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200)

        d = AlertDispatcher(config_repo, fallback_url="https://hooks.test/a",
                            transport=httpx.MockTransport(slow_handler))
        d.start()
        d.notify("203.0.113.7", "rate_flood", 15, ctx())
        d.notify("198.51.100.1", "rate_flood", 15, ctx())
        await asyncio.sleep(0.05)
        assert d.stats["enqueued"] == 2
        assert d.stats["sent"] == 0
        release.set()
        await d.drain()
        await d.stop()
        assert d.stats["sent"] == 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, config_repo):
        d = AlertDispatcher(config_repo)
        await d.stop()
