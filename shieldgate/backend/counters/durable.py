"""
counters/durable.py

DurableCounter - cross-instance hit counts from the persisted request log.

Only consulted as a confirmation step once an instance's in-memory count has
passed DURABLE_CHECK_RATIO of a rule's threshold, so under normal traffic the
ledger is not queried at all.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..clock import Clock, SystemClock
from ..metrics import METRICS
from ..storage.repository import RequestLogRepository


class DurableCounter:
    def __init__(self, request_log: RequestLogRepository, clock: Clock | None = None) -> None:
        self._log = request_log
        self._clock = clock or SystemClock()

    def count_since(
        self,
        ip: str,
        window_seconds: float,
        sensitive_only: bool = False,
        failed_login_only: bool = False,
        endpoints: Sequence[str] | None = None,
    ) -> int:
        """
        Logged requests for *ip* in the last *window_seconds*, optionally only
        those to an endpoint containing one of *endpoints*. May raise
        StorageUnavailableError.
        """
        METRICS.durable_checks.inc()
        return self._log.count_since(
            ip,
            self._clock.now() - window_seconds,
            sensitive_only=sensitive_only,
            failed_login_only=failed_login_only,
            endpoints=endpoints,
        )
