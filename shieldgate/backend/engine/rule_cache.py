"""
engine/rule_cache.py

RuleCache - per-process snapshot of the enabled rules.

Reloads from storage when the snapshot is empty or older than the TTL.
Management-API writes call invalidate(), so a rule change is seen on the very
next evaluation rather than after the passive refresh window.
"""

from __future__ import annotations

import logging
import threading

from ..clock import Clock, SystemClock
from ..errors import StorageUnavailableError
from ..models import Rule
from ..storage.repository import RuleRepository

logger = logging.getLogger(__name__)


class RuleCache:
    def __init__(
        self,
        repo: RuleRepository,
        ttl_seconds: int = 60,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repo
        self._ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._rules: tuple[Rule, ...] = ()
        self._fetched_at: float = float("-inf")
        self._lock = threading.Lock()

    def get_rules(self) -> tuple[Rule, ...]:
        """Enabled rules ordered by id. Never mutated; replaced on refresh."""
        with self._lock:
            now = self._clock.now()
            if self._rules and now - self._fetched_at < self._ttl:
                return self._rules
            try:
                self._rules = tuple(self._repo.list_rules(enabled_only=True))
            except StorageUnavailableError as exc:
                logger.error("Rule reload failed, keeping %d cached rule(s): %s",
                             len(self._rules), exc)
            else:
                logger.debug("Rule cache reloaded - %d enabled rule(s)", len(self._rules))
            # Stamp even on failure so an outage doesn't turn every request into a query
            self._fetched_at = now
            return self._rules

    def invalidate(self) -> None:
        with self._lock:
            self._fetched_at = float("-inf")

    @property
    def size(self) -> int:
        return len(self._rules)
