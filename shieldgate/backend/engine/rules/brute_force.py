"""
engine/rules/brute_force.py

Credential-stuffing rule kind.

Only evaluated for failed authentication attempts and only counts failed
attempts, so a brute_force rule can never trigger on ordinary traffic no
matter how high the volume.
"""

from __future__ import annotations

from typing import Any

from ...models import Rule, RuleKind
from ..models import AUTH_FAIL_SUFFIX, RequestView
from .base import BaseRuleChecker


class BruteForceChecker(BaseRuleChecker):
    kind = RuleKind.BRUTE_FORCE
    enabled = True

    def applies(self, rule: Rule, request: RequestView) -> bool:
        if not request.is_failed_login:
            return False
        return super().applies(rule, request)

    def counter_key(self, rule: Rule, request: RequestView) -> str:
        return request.ip + AUTH_FAIL_SUFFIX

    def durable_filters(self, rule: Rule) -> dict[str, Any]:
        return {**super().durable_filters(rule), "failed_login_only": True}
