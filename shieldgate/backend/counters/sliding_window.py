"""
counters/sliding_window.py

In-process sliding-window hit counters.

SlidingWindowCounter - key → ordered timestamps; answers "how many hits for
                       key K in the last W seconds". With max_keys set, dead
                       keys are swept whenever the map grows past the cap.
FingerprintCounter   - same structure keyed by an IP-network + user-agent
                       fingerprint, capped by default.

Design constraints:
  - Only timestamps are kept, never request data.
  - record() prunes the key's hits older than the retention ceiling first,
    so memory per key is bounded by (rate × retention).
  - Counts are per process; cross-instance accuracy comes from the
    DurableCounter, consulted only near a rule's threshold.

Thread safety: NOT thread-safe. Called exclusively from the engine's
asyncio coroutine - no locking needed.
"""

from __future__ import annotations

import ipaddress
import logging
from collections import deque

from ..clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_RETENTION_SECONDS_DEFAULT = 120
_MAX_KEYS_DEFAULT = 500


class SlidingWindowCounter:
    """
    Args:
        retention_seconds: hits older than this are discarded on record().
                           Must be >= the longest window ever queried.
        max_keys:          once the map holds more keys than this, record()
                           drops every dead key. None disables the cap.
        clock:             time source (injectable for tests).
    """

    def __init__(
        self,
        retention_seconds: int = _RETENTION_SECONDS_DEFAULT,
        max_keys: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._retention = retention_seconds
        self._max_keys = max_keys
        # A sweep runs when the map passes _prune_at, or once per retention
        # interval while it stays over the cap
        self._prune_at = max_keys
        self._last_sweep = float("-inf")
        self._clock = clock or SystemClock()
        self._hits: dict[str, deque[float]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, key: str) -> int:
        """Record one hit for *key* now; return the retained hit count."""
        now = self._clock.now()
        hits = self._hits.get(key)
        if hits is None:
            hits = deque()
            self._hits[key] = hits
        else:
            self._prune(hits, now - self._retention)
        hits.append(now)
        if self._max_keys is not None and len(self._hits) > self._max_keys:
            if len(self._hits) > self._prune_at or now - self._last_sweep >= self._retention:
                self._enforce_cap(now)
        return len(hits)

    def count_since(self, key: str, window_seconds: float) -> int:
        """Hits for *key* with timestamp >= now - window_seconds."""
        hits = self._hits.get(key)
        if not hits:
            return 0
        cutoff = self._clock.now() - window_seconds
        count = 0
        # Newest hits are on the right; stop at the first one outside the window
        for ts in reversed(hits):
            if ts < cutoff:
                break
            count += 1
        return count

    def prune_dead_keys(self) -> int:
        """Drop every key whose hits are all past the retention ceiling."""
        cutoff = self._clock.now() - self._retention
        dead = [k for k, hits in self._hits.items() if not hits or hits[-1] < cutoff]
        for key in dead:
            del self._hits[key]
        return len(dead)

    @property
    def key_count(self) -> int:
        return len(self._hits)

    def __len__(self) -> int:
        return len(self._hits)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _enforce_cap(self, now: float) -> None:
        self._last_sweep = now
        dropped = self.prune_dead_keys()
        remaining = len(self._hits)
        # All keys live: wait for the map to double before sweeping again
        self._prune_at = max(self._max_keys, remaining * 2)
        logger.debug(
            "%s keys over cap (%d) - dropped %d dead key(s), %d remain",
            type(self).__name__, self._max_keys, dropped, remaining,
        )

    @staticmethod
    def _prune(hits: deque[float], cutoff: float) -> None:
        while hits and hits[0] < cutoff:
            hits.popleft()


class FingerprintCounter(SlidingWindowCounter):
    """SlidingWindowCounter keyed by fingerprint, capped at 500 keys by default."""

    def __init__(
        self,
        retention_seconds: int = _RETENTION_SECONDS_DEFAULT,
        max_keys: int = _MAX_KEYS_DEFAULT,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(retention_seconds=retention_seconds, max_keys=max_keys, clock=clock)


def make_fingerprint(
    ip: str,
    user_agent: str | None,
    ua_length: int = 64,
    ipv4_prefix: int = 24,
    ipv6_prefix: int = 48,
) -> str | None:
    """
    Build the fingerprint key for an (ip, user agent) pair.

    The IP is reduced to its network prefix so tooling that hops between
    addresses in one range keeps the same fingerprint; the user agent is
    truncated to bound key cardinality. Returns None when there is no user
    agent (every UA-less client would otherwise share one key).
    """
    if not user_agent or not user_agent.strip():
        return None
    # Rotation within one /24 (/48) shares a key. Rotation across networks
    # (10.0.0.1 then 10.1.0.1) gets a new key each hop and escapes this path;
    # each of those IPs is still counted by the per-IP rules.
    try:
        addr = ipaddress.ip_address(ip)
        prefix = ipv4_prefix if addr.version == 4 else ipv6_prefix
        network = str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))
    except ValueError:
        network = ip
    return f"{network}|{user_agent.strip()[:ua_length]}"
