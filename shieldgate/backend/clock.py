"""
backend/clock.py

Time and sampling sources, injectable so the engine can be tested with a
frozen clock and deterministic log sampling.

    clock = ManualClock(start=1_000.0)
    clock.advance(5)
    sampler = EveryNthSampler(5)   # True on calls 5, 10, 15, ...
"""

from __future__ import annotations

import random
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall-clock time in UNIX epoch seconds."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, ts: float) -> None:
        self._now = ts


class Sampler(Protocol):
    def should_sample(self) -> bool: ...


class RandomSampler:
    """Approximately 1-in-`every` sampling. Seed it for reproducible runs."""

    def __init__(self, every: int, seed: int | None = None) -> None:
        if every < 1:
            raise ValueError(f"every must be >= 1 - got {every}")
        self.every = every
        self._rng = random.Random(seed)

    def should_sample(self) -> bool:
        return self._rng.random() < 1.0 / self.every


class EveryNthSampler:
    """Deterministic 1-in-`every` sampling: True on every N-th call."""

    def __init__(self, every: int) -> None:
        if every < 1:
            raise ValueError(f"every must be >= 1 - got {every}")
        self.every = every
        self._calls = 0

    def should_sample(self) -> bool:
        self._calls += 1
        if self._calls >= self.every:
            self._calls = 0
            return True
        return False


class AlwaysSampler:
    def should_sample(self) -> bool:
        return True
