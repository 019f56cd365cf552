"""
backend/metrics.py

Lightweight thread-safe counters for the decision engine.
No external dependencies - uses Python's threading.Lock.

Usage:
    from shieldgate.backend.metrics import METRICS
    METRICS.blocks_issued.inc()
    print(METRICS.as_dict())
"""

import threading


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class Metrics:
    """Singleton holding all engine counters."""

    def __init__(self) -> None:
        # --- Storage ---
        self.durable_checks: Counter = Counter()
        """Queries against the request log made to confirm a near-threshold count."""

        self.storage_errors: Counter = Counter()

        # --- Alerts ---
        self.alerts_sent: Counter = Counter()
        self.alerts_failed: Counter = Counter()
        self.alerts_dropped: Counter = Counter()

        # --- Request log ---
        self.logs_written: Counter = Counter()
        self.logs_sampled_out: Counter = Counter()

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            name: attr.value
            for name, attr in vars(self).items()
            if isinstance(attr, Counter)
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()


# Module-level singleton - import from here everywhere
METRICS = Metrics()
