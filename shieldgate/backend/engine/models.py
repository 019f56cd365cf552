"""
engine/models.py

Data models internal to the decision engine.

RequestView - a classified request as seen by rule checkers
RuleResult  - returned by every checker's analyze() call
TriggerPath - how a rule came to trigger (label suffix in logs and decisions)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# ---------------------------------------------------------------------------
# Counter key suffixes - hits are recorded under "ip", "ip|sensitive",
# "ip|auth_fail" and, for rules with target_endpoints, "ip|rule:<id>" in the
# IP-keyed sliding window
# ---------------------------------------------------------------------------

SENSITIVE_SUFFIX = "|sensitive"
AUTH_FAIL_SUFFIX = "|auth_fail"
RULE_KEY_INFIX   = "|rule:"


class TriggerPath(str, Enum):
    IN_MEMORY      = "in_memory"
    CROSS_ISOLATE  = "cross_isolate"
    AUTOMATED_TOOL = "automated_tool"


@dataclass(frozen=True, slots=True)
class RequestView:
    ip: str
    endpoint: str
    method: str
    is_sensitive: bool
    is_failed_login: bool
    fingerprint: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class RuleResult:
    """
    Return value of BaseRuleChecker.analyze().

    near_threshold is True when the in-memory count passed the durable-check
    ratio without exceeding max_requests; the engine then asks the durable
    counter to confirm.
    """

    triggered: bool
    count: int
    near_threshold: bool = False
    description: str = ""

    def __repr__(self) -> str:
        return (
            f"RuleResult(triggered={self.triggered} count={self.count} "
            f"near={self.near_threshold} desc={self.description!r})"
        )


def rule_label(rule_name: str, path: TriggerPath = TriggerPath.IN_MEMORY) -> str:
    """Stable machine-readable label returned to blocked clients."""
    if path is TriggerPath.IN_MEMORY:
        return rule_name
    return f"{rule_name}:{path.value}"
