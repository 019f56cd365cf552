"""
api/serializers.py

Request / response bodies for the ingestion and management APIs.
Field constraints here are the first line of rule validation (HTTP 422);
Rule.validate() is the second.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from ..models import RuleKind, Scope


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class EvaluateRequest(BaseModel):
    ip: str = Field(min_length=1)
    user_agent: str | None = None
    endpoint: str = "unknown"
    method: str = "GET"
    is_sensitive: bool = False
    is_failed_login: bool = False
    status_code: int | None = None
    latency_ms: float | None = None


class PublicEvaluateRequest(BaseModel):
    ip: str = Field(min_length=1)
    user_agent: str | None = None
    endpoint: str = "unknown"
    method: str = "GET"


class DecisionResponse(BaseModel):
    status: str
    rule: str | None = None
    block_duration_minutes: int | None = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class RuleResponse(BaseModel):
    id: int
    name: str
    kind: RuleKind
    max_requests: int
    window_seconds: int
    block_duration_minutes: int
    target_endpoints: list[str] | None = None
    scope: Scope
    enabled: bool
    created_at: float
    updated_at: float


class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    kind: RuleKind
    max_requests: int = Field(gt=0)
    window_seconds: int = Field(gt=0)
    block_duration_minutes: int = Field(gt=0)
    target_endpoints: list[str] | None = None
    scope: Scope = Scope.ALL
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    """Partial update: only fields that are set are changed."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    kind: RuleKind | None = None
    max_requests: int | None = Field(default=None, gt=0)
    window_seconds: int | None = Field(default=None, gt=0)
    block_duration_minutes: int | None = Field(default=None, gt=0)
    target_endpoints: list[str] | None = None
    scope: Scope | None = None
    enabled: bool | None = None


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------

class BlockResponse(BaseModel):
    id: int
    ip: str
    reason: str
    rule_id: int | None
    scope: Scope
    created_by: str
    blocked_at: float
    expires_at: float | None
    status: str


class BlockCreateRequest(BaseModel):
    ip: str = Field(min_length=1)
    reason: str = "Manual block"
    scope: Scope = Scope.ALL
    duration_minutes: int | None = Field(default=None, gt=0)
    """None means permanent."""


# ---------------------------------------------------------------------------
# Logs / audit
# ---------------------------------------------------------------------------

class PaginatedResponse(BaseModel):
    items: list[dict]
    total: int
    page: int
    limit: int
    has_more: bool


# ---------------------------------------------------------------------------
# Config / maintenance / stats
# ---------------------------------------------------------------------------

class WebhookConfig(BaseModel):
    url: str | None = None


class CleanupResponse(BaseModel):
    blocks_expired: int
    request_logs_deleted: int
    audit_entries_deleted: int
    blocks_deleted: int


class DashboardResponse(BaseModel):
    total_requests_24h: int
    suspicious_24h: int
    blocked_requests_24h: int
    active_blocks: int
    top_ips: list[dict]
    recent_suspicious: list[dict]
    timeline: list[dict]


class StatsResponse(BaseModel):
    engine: dict[str, int]
    state: dict[str, int]
    metrics: dict[str, int]
    alerts: dict[str, int]
