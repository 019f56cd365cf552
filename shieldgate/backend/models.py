"""
backend/models.py

Shared dataclasses for every stage of the decision path.
Defining all of them here locks the contracts between the storage layer,
the engine and the API so each can be developed against a stable interface.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidRuleError


class RuleKind(str, Enum):
    RATE_LIMIT  = "rate_limit"
    BRUTE_FORCE = "brute_force"


class Scope(str, Enum):
    ALL            = "all"
    SENSITIVE_ONLY = "sensitive_only"


class BlockStatus(str, Enum):
    ACTIVE         = "active"
    EXPIRED        = "expired"
    MANUAL_UNBLOCK = "manual_unblock"


class CreatedBy(str, Enum):
    SYSTEM = "system"
    ADMIN  = "admin"


class DecisionStatus(str, Enum):
    NORMAL     = "normal"
    SUSPICIOUS = "suspicious"
    BLOCKED    = "blocked"


# ---------------------------------------------------------------------------
# Rule - administered through the management API, cached by RuleCache
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Rule:
    """
    A rate-limiting policy.

    Frozen: cached copies are replaced on refresh, never edited in place.
    """

    id: int
    name: str
    kind: RuleKind
    max_requests: int
    window_seconds: int
    block_duration_minutes: int
    target_endpoints: tuple[str, ...] | None = None
    """None means the rule applies to every endpoint."""

    scope: Scope = Scope.ALL
    enabled: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidRuleError("rule name must not be empty")
        if self.max_requests <= 0:
            raise InvalidRuleError(f"max_requests must be > 0 - got {self.max_requests}")
        if self.window_seconds <= 0:
            raise InvalidRuleError(f"window_seconds must be > 0 - got {self.window_seconds}")
        if self.block_duration_minutes <= 0:
            raise InvalidRuleError(
                f"block_duration_minutes must be > 0 - got {self.block_duration_minutes}"
            )

    def matches_endpoint(self, endpoint: str) -> bool:
        if not self.target_endpoints:
            return True
        return any(t in endpoint for t in self.target_endpoints)

    def to_dict(self) -> dict:
        return {
            "id":                     self.id,
            "name":                   self.name,
            "kind":                   self.kind.value,
            "max_requests":           self.max_requests,
            "window_seconds":         self.window_seconds,
            "block_duration_minutes": self.block_duration_minutes,
            "target_endpoints":       list(self.target_endpoints) if self.target_endpoints else None,
            "scope":                  self.scope.value,
            "enabled":                self.enabled,
            "created_at":             self.created_at,
            "updated_at":             self.updated_at,
        }


# ---------------------------------------------------------------------------
# BlockRecord - active -> expired | manual_unblock
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class BlockRecord:
    id: int
    ip: str
    reason: str
    rule_id: int | None
    scope: Scope
    created_by: CreatedBy
    blocked_at: float
    expires_at: float | None
    """None means permanent."""

    status: BlockStatus = BlockStatus.ACTIVE

    def is_live(self, now: float) -> bool:
        """Active and not yet past its expiry."""
        if self.status is not BlockStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now

    def applies_to(self, sensitive: bool) -> bool:
        return self.scope is Scope.ALL or sensitive

    def to_dict(self) -> dict:
        return {
            "id":         self.id,
            "ip":         self.ip,
            "reason":     self.reason,
            "rule_id":    self.rule_id,
            "scope":      self.scope.value,
            "created_by": self.created_by.value,
            "blocked_at": self.blocked_at,
            "expires_at": self.expires_at,
            "status":     self.status.value,
        }


# ---------------------------------------------------------------------------
# Ingestion inputs / output
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class Identity:
    ip: str
    user_agent: str | None = None


@dataclass(slots=True)
class RequestContext:
    endpoint: str = "unknown"
    method: str = "GET"
    is_sensitive: bool = False
    is_failed_login: bool = False
    status_code: int | None = None
    latency_ms: float | None = None


@dataclass(slots=True)
class Decision:
    status: DecisionStatus
    rule_label: str | None = None
    block_duration_minutes: int | None = None

    @property
    def blocked(self) -> bool:
        return self.status is DecisionStatus.BLOCKED

    def to_dict(self) -> dict:
        return {
            "status":                 self.status.value,
            "rule":                   self.rule_label,
            "block_duration_minutes": self.block_duration_minutes,
        }


# ---------------------------------------------------------------------------
# RequestLogEntry - append-only audit row
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RequestLogEntry:
    ip: str
    method: str
    endpoint: str
    status: DecisionStatus
    action_taken: str
    """One of: 'allowed' | 'blocked' | 'rejected'."""

    timestamp: float = field(default_factory=time.time)
    status_code: int | None = None
    user_agent: str | None = None
    is_suspicious: bool = False
    is_blocked: bool = False
    is_sensitive: bool = False
    is_failed_login: bool = False
    rule_triggered: str | None = None
    latency_ms: float | None = None


# ---------------------------------------------------------------------------
# AlertEvent - dispatched to the webhook, never persisted by the dispatcher
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class AlertEvent:
    ip: str
    rule_label: str
    duration_minutes: int
    base_duration_minutes: int
    endpoint: str
    user_agent: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def escalated(self) -> bool:
        return self.duration_minutes > self.base_duration_minutes

    def to_payload(self) -> dict[str, Any]:
        return {
            "event":                 "ip_blocked",
            "ip":                    self.ip,
            "rule":                  self.rule_label,
            "duration_minutes":      self.duration_minutes,
            "base_duration_minutes": self.base_duration_minutes,
            "endpoint":              self.endpoint,
            "escalated":             self.escalated,
            "user_agent":            self.user_agent,
            "timestamp":             self.timestamp,
        }
