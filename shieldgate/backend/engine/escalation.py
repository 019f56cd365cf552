"""
engine/escalation.py

EscalationPolicy - block length for repeat offenders.

    prior = block records for the IP (any status) in the trailing 24h
    prior >= 3  → 24h flat
    otherwise   → min(base × 2^prior, 24h)

Computed fresh at block time; never cached.
"""

from __future__ import annotations

from ..clock import Clock, SystemClock
from ..storage.repository import BlockRepository


class EscalationPolicy:
    def __init__(
        self,
        repo: BlockRepository,
        lookback_hours: int = 24,
        flat_after: int = 3,
        max_minutes: int = 1440,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repo
        self.lookback_hours = lookback_hours
        self.flat_after = flat_after
        self.max_minutes = max_minutes
        self._clock = clock or SystemClock()

    def prior_blocks(self, ip: str) -> int:
        since = self._clock.now() - self.lookback_hours * 3600
        return self._repo.count_since(ip, since)

    def effective_duration(self, ip: str, base_minutes: int) -> int:
        prior = self.prior_blocks(ip)
        if prior >= self.flat_after:
            return self.max_minutes
        return min(base_minutes * 2 ** prior, self.max_minutes)
