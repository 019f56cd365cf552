"""
engine/rules/base.py

Abstract base class for the per-kind rule checkers.

Rules themselves are data (rows in the rules table); a checker knows how to
evaluate every rule of one `kind` against a request and the in-memory
sliding-window counter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ...counters.sliding_window import SlidingWindowCounter
from ...models import Rule, RuleKind, Scope
from ..models import RULE_KEY_INFIX, RequestView, RuleResult


class BaseRuleChecker(ABC):
    """
    Contract that every checker must satisfy.

    Class-level attributes:
        kind    - the RuleKind this checker evaluates
        enabled - False for checkers that should not be registered

    analyze() MUST:
        - Never touch storage (the durable confirmation is the engine's job)
        - Never raise for a valid Rule
    """

    kind: RuleKind
    enabled: bool = True

    def applies(self, rule: Rule, request: RequestView) -> bool:
        """Scope and endpoint filters shared by every kind."""
        if rule.scope is Scope.SENSITIVE_ONLY and not request.is_sensitive:
            return False
        if not rule.matches_endpoint(request.endpoint):
            return False
        return True

    @abstractmethod
    def counter_key(self, rule: Rule, request: RequestView) -> str:
        """Key in the IP-keyed sliding window that this rule kind counts."""
        ...

    def key_for(self, rule: Rule, request: RequestView) -> str:
        """
        Key this rule is evaluated against. A rule with target_endpoints only
        counts hits to those endpoints, which the engine records under a
        per-rule key.
        """
        if rule.target_endpoints:
            return f"{request.ip}{RULE_KEY_INFIX}{rule.id}"
        return self.counter_key(rule, request)

    def durable_filters(self, rule: Rule) -> dict[str, Any]:
        """Keyword filters for DurableCounter.count_since() matching key_for()."""
        return {
            "sensitive_only": rule.scope is Scope.SENSITIVE_ONLY,
            "endpoints": rule.target_endpoints,
        }

    def analyze(
        self,
        rule: Rule,
        request: RequestView,
        counter: SlidingWindowCounter,
        durable_ratio: float = 0.5,
    ) -> RuleResult:
        count = counter.count_since(self.key_for(rule, request), rule.window_seconds)
        if count > rule.max_requests:
            return RuleResult(
                triggered=True,
                count=count,
                description=(
                    f"{count} {self.kind.value} hits from {request.ip} "
                    f"in {rule.window_seconds}s (limit {rule.max_requests})"
                ),
            )
        return RuleResult(
            triggered=False,
            count=count,
            near_threshold=count > rule.max_requests * durable_ratio,
        )

    def __repr__(self) -> str:
        return f"<Checker:{self.kind.value} enabled={self.enabled}>"
