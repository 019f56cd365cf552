"""
engine/rules/rate_limit.py

Request-flood rule kind.

`all`-scope rules count every hit from the IP; `sensitive_only` rules count
only hits to sensitive endpoints (the endpoint-abuse case). A rule with
target_endpoints counts only hits to those endpoints, under its own key
(see BaseRuleChecker.key_for).
"""

from __future__ import annotations

from ...models import Rule, RuleKind, Scope
from ..models import SENSITIVE_SUFFIX, RequestView
from .base import BaseRuleChecker


class RateLimitChecker(BaseRuleChecker):
    kind = RuleKind.RATE_LIMIT
    enabled = True

    def counter_key(self, rule: Rule, request: RequestView) -> str:
        if rule.scope is Scope.SENSITIVE_ONLY:
            return request.ip + SENSITIVE_SUFFIX
        return request.ip
