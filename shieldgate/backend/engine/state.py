"""
engine/state.py

EngineState - everything one engine process keeps in memory.

Constructed once per process and handed to DecisionEngine; nothing in the
decision path lives in module globals. Each instance's state is only
eventually consistent with the shared store (60s for rules, 10s for blocks).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..clock import Clock, SystemClock
from ..counters.sliding_window import FingerprintCounter, SlidingWindowCounter
from .block_cache import BlockCache
from .rule_cache import RuleCache


@dataclass
class EngineState:
    rules: RuleCache
    blocks: BlockCache
    ip_hits: SlidingWindowCounter
    fingerprint_hits: FingerprintCounter
    clock: Clock = field(default_factory=SystemClock)

    def snapshot(self) -> dict:
        return {
            "rules_cached":        self.rules.size,
            "blocked_ips_cached":  self.blocks.size,
            "ip_keys":             self.ip_hits.key_count,
            "fingerprint_keys":    self.fingerprint_hits.key_count,
        }
