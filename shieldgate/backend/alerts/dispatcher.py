"""
alerts/dispatcher.py

AlertDispatcher - best-effort webhook notification for block events.

notify() never awaits and never raises: it puts an AlertEvent on a bounded
asyncio.Queue (dropping the oldest event when full) and returns. A single
worker task drains the queue and POSTs each event as JSON.

Destination: the `alert_webhook_url` config row if set, else the statically
configured ALERT_WEBHOOK_URL, else the event is skipped.

Usage:
    dispatcher = AlertDispatcher(config_repo, fallback_url=settings.ALERT_WEBHOOK_URL)
    dispatcher.start()
    dispatcher.notify("1.2.3.4", "rate_flood", 30, AlertContext(...))
    await dispatcher.drain()   # tests
    await dispatcher.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from ..errors import StorageUnavailableError
from ..metrics import METRICS
from ..models import AlertEvent
from ..storage.repository import ConfigRepository

logger = logging.getLogger(__name__)

_USER_AGENT_MAX = 120


@dataclass(slots=True)
class AlertContext:
    endpoint: str
    base_duration_minutes: int
    user_agent: str | None = None


class AlertDispatcher:
    """
    Args:
        config_repo:  source of the configured webhook destination
        fallback_url: used when no destination is configured in storage
        timeout:      per-POST timeout in seconds
        queue_size:   bound on undelivered events
        transport:    optional httpx transport (httpx.MockTransport in tests)
    """

    def __init__(
        self,
        config_repo: ConfigRepository,
        fallback_url: str = "",
        timeout: float = 5.0,
        queue_size: int = 200,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config_repo
        self._fallback_url = fallback_url
        self._timeout = timeout
        self._transport = transport
        self._queue: asyncio.Queue[AlertEvent] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None
        self.stats: dict[str, int] = {
            "enqueued": 0,
            "sent": 0,
            "failed": 0,
            "dropped": 0,
            "skipped_no_destination": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def notify(
        self,
        ip: str,
        rule_label: str,
        duration_minutes: int,
        context: AlertContext,
    ) -> bool:
        """Enqueue an alert without blocking. Returns False if it could not be queued."""
        ua = context.user_agent[:_USER_AGENT_MAX] if context.user_agent else None
        event = AlertEvent(
            ip=ip,
            rule_label=rule_label,
            duration_minutes=duration_minutes,
            base_duration_minutes=context.base_duration_minutes,
            endpoint=context.endpoint,
            user_agent=ua,
        )
        return self._safe_put(event)

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="alert_dispatcher")
            logger.info("Alert dispatcher started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        logger.info("Alert dispatcher stopped - stats=%s", self.stats)

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _safe_put(self, event: AlertEvent) -> bool:
        """Ring-buffer enqueue: drop the oldest event rather than block."""
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
                self.stats["dropped"] += 1
                METRICS.alerts_dropped.inc()
                logger.warning("Alert queue full (%d) - oldest alert dropped", self._queue.maxsize)
            except asyncio.QueueEmpty:
                pass
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            METRICS.alerts_dropped.inc()
            logger.error("Alert queue still full after drop - alert for %s lost", event.ip)
            return False
        self.stats["enqueued"] += 1
        return True

    async def _run(self) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            while True:
                event = await self._queue.get()
                try:
                    await self._deliver(client, event)
                except Exception as exc:
                    # keep the worker alive for the next event
                    self.stats["failed"] += 1
                    METRICS.alerts_failed.inc()
                    logger.exception("Alert worker error for ip=%s: %s", event.ip, exc)
                finally:
                    self._queue.task_done()

    async def _deliver(self, client: httpx.AsyncClient, event: AlertEvent) -> None:
        url = await self._resolve_destination()
        if not url:
            self.stats["skipped_no_destination"] += 1
            logger.debug("No alert webhook configured - skipping alert for %s", event.ip)
            return
        try:
            resp = await client.post(url, json=event.to_payload())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self.stats["failed"] += 1
            METRICS.alerts_failed.inc()
            logger.warning("Alert delivery failed for ip=%s rule=%s: %s",
                           event.ip, event.rule_label, exc)
            return
        self.stats["sent"] += 1
        METRICS.alerts_sent.inc()
        logger.info("Alert sent ip=%s rule=%s duration=%dmin escalated=%s",
                    event.ip, event.rule_label, event.duration_minutes, event.escalated)

    async def _resolve_destination(self) -> str | None:
        try:
            url = await asyncio.to_thread(self._config.get_webhook_url)
        except StorageUnavailableError as exc:
            logger.warning("Could not read webhook config, using fallback: %s", exc)
            url = None
        return url or self._fallback_url or None
