"""
engine/engine.py

DecisionEngine - per-request verdict for the ingestion API.

Per request:
  1. block cache fast path (before any other work, including logging)
  2. record the hit in the IP and fingerprint sliding windows
  3. classify: sensitive endpoint? failed authentication?
  4. evaluate enabled rules in id order; first trigger wins
       - in-memory count > max_requests                → trigger
       - in-memory count > 50% of max_requests         → ask the durable
         counter; durable count > max_requests         → trigger (cross_isolate)
  5. fingerprint flood: > 15 hits in 5s from one fingerprint selects the first
     `all`-scope rate_limit rule (automated_tool)
  6. on trigger: escalated duration → block store → audit → alert queue;
     the request log entry is always offered to the RequestLogger

Every storage touch runs in a worker thread under STORAGE_TIMEOUT_SECONDS and
fails open: a timeout or error is logged and treated as "not blocked" /
"not triggered".
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import pkgutil
import time
from typing import Any, Callable

from ..alerts.dispatcher import AlertContext, AlertDispatcher
from ..clock import Clock, RandomSampler, Sampler, SystemClock
from ..config import Settings, settings
from ..counters.durable import DurableCounter
from ..counters.sliding_window import (
    FingerprintCounter,
    SlidingWindowCounter,
    make_fingerprint,
)
from ..metrics import METRICS
from ..models import (
    CreatedBy,
    Decision,
    DecisionStatus,
    Identity,
    RequestContext,
    RequestLogEntry,
    Rule,
    RuleKind,
    Scope,
)
from ..storage.database import Database
from ..storage.repository import (
    AuditRepository,
    BlockRepository,
    ConfigRepository,
    RequestLogRepository,
    RuleRepository,
)
from .block_cache import BlockCache
from .escalation import EscalationPolicy
from .models import AUTH_FAIL_SUFFIX, SENSITIVE_SUFFIX, RequestView, TriggerPath, rule_label
from .request_logger import RequestLogger
from .rule_cache import RuleCache
from .rules.base import BaseRuleChecker
from .state import EngineState

logger = logging.getLogger(__name__)

FAST_PATH_LABEL = "ip_blocked"
_SLOW_EVALUATION_MS = 100.0


class DecisionEngine:
    def __init__(
        self,
        state: EngineState,
        escalation: EscalationPolicy,
        durable: DurableCounter,
        request_logger: RequestLogger,
        audit: AuditRepository,
        dispatcher: AlertDispatcher | None = None,
        cfg: Settings = settings,
    ) -> None:
        self.state = state
        self.escalation = escalation
        self.durable = durable
        self.request_logger = request_logger
        self.audit = audit
        self.dispatcher = dispatcher
        self._clock = state.clock

        self._allowlist: frozenset[str] = frozenset(cfg.ALLOWLIST_IPS)
        self._sensitive_endpoints: tuple[str, ...] = tuple(cfg.SENSITIVE_ENDPOINTS)
        self._durable_ratio = cfg.DURABLE_CHECK_RATIO
        self._storage_timeout = cfg.STORAGE_TIMEOUT_SECONDS
        self._fp_window = cfg.FINGERPRINT_FLOOD_WINDOW_SECONDS
        self._fp_threshold = cfg.FINGERPRINT_FLOOD_THRESHOLD
        self._fp_opts = dict(
            ua_length=cfg.FINGERPRINT_UA_LENGTH,
            ipv4_prefix=cfg.FINGERPRINT_IPV4_PREFIX,
            ipv6_prefix=cfg.FINGERPRINT_IPV6_PREFIX,
        )

        self.checkers: dict[RuleKind, BaseRuleChecker] = self._load_checkers()

        self.stats: dict[str, int] = {
            "requests_evaluated": 0,
            "fast_rejects": 0,
            "blocks_issued": 0,
            "cross_isolate": 0,
            "automated_tool": 0,
            "suspicious": 0,
            "allowlisted": 0,
        }
        logger.info(
            "DecisionEngine loaded %d checker(s): %s | allowlist=%s",
            len(self.checkers),
            [k.value for k in self.checkers],
            list(self._allowlist) or "none",
        )

    # ------------------------------------------------------------------
    # Ingestion API
    # ------------------------------------------------------------------

    async def evaluate(self, identity: Identity, context: RequestContext) -> Decision:
        t0 = time.monotonic()
        self.stats["requests_evaluated"] += 1
        ip = identity.ip or "unknown"
        sensitive = context.is_sensitive or self.is_sensitive_endpoint(context.endpoint)
        allowlisted = ip in self._allowlist

        # 1. Fast path (manual blocks apply to allowlisted IPs too)
        if await self._is_blocked(ip, sensitive):
            self.stats["fast_rejects"] += 1
            decision = Decision(DecisionStatus.BLOCKED, FAST_PATH_LABEL)
            await self._log(identity, context, sensitive, decision, "rejected", fast_path=True)
            return decision

        # 2. Record
        fingerprint = make_fingerprint(ip, identity.user_agent, **self._fp_opts)
        self._record_hits(ip, fingerprint, sensitive, context.is_failed_login)

        # 3. Classify
        request = RequestView(
            ip=ip,
            endpoint=context.endpoint,
            method=context.method,
            is_sensitive=sensitive,
            is_failed_login=context.is_failed_login,
            fingerprint=fingerprint,
            user_agent=identity.user_agent,
        )

        # 4 + 5. Rules, then fingerprint flood
        if allowlisted:
            self.stats["allowlisted"] += 1
            triggered, path, suspicious = None, None, context.is_failed_login
        else:
            triggered, path, suspicious = await self._evaluate_rules(request)

        # 6. Act
        if triggered is not None and path is not None:
            label = rule_label(triggered.name, path)
            duration = await self._apply_block(request, triggered, label, path)
            decision = Decision(DecisionStatus.BLOCKED, label, duration)
            action = "blocked"
        else:
            status = DecisionStatus.SUSPICIOUS if suspicious else DecisionStatus.NORMAL
            if suspicious:
                self.stats["suspicious"] += 1
            decision = Decision(status)
            action = "allowed"

        await self._log(identity, context, sensitive, decision, action)

        elapsed_ms = (time.monotonic() - t0) * 1000
        if elapsed_ms > _SLOW_EVALUATION_MS:
            logger.warning("Evaluation for %s took %.1fms", ip, elapsed_ms)
        return decision

    async def evaluate_public(
        self,
        ip: str,
        user_agent: str | None = None,
        endpoint: str = "unknown",
        method: str = "GET",
        status_code: int | None = None,
    ) -> Decision:
        """Unauthenticated call site: the caller cannot vouch for sensitivity or login failures."""
        return await self.evaluate(
            Identity(ip=ip, user_agent=user_agent),
            RequestContext(endpoint=endpoint, method=method, status_code=status_code),
        )

    async def precheck(self, ip: str, sensitive: bool = False) -> Decision:
        """Fast-reject check alone, for callers that know the IP before the full request."""
        if await self._is_blocked(ip, sensitive):
            self.stats["fast_rejects"] += 1
            return Decision(DecisionStatus.BLOCKED, FAST_PATH_LABEL)
        return Decision(DecisionStatus.NORMAL)

    def is_sensitive_endpoint(self, endpoint: str) -> bool:
        return any(s in endpoint for s in self._sensitive_endpoints)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _is_blocked(self, ip: str, sensitive: bool) -> bool:
        return await self._storage_call(
            self.state.blocks.is_blocked, ip, sensitive,
            default=False, what="block check",
        )

    def _record_hits(
        self, ip: str, fingerprint: str | None, sensitive: bool, failed_login: bool
    ) -> None:
        hits = self.state.ip_hits
        hits.record(ip)
        if sensitive:
            hits.record(ip + SENSITIVE_SUFFIX)
        if failed_login:
            hits.record(ip + AUTH_FAIL_SUFFIX)
        if fingerprint is not None:
            self.state.fingerprint_hits.record(fingerprint)

    def _record_rule_hits(self, request: RequestView, rules: tuple[Rule, ...]) -> None:
        """Count this request for every applicable rule that has its own key."""
        for rule in rules:
            checker = self.checkers.get(rule.kind)
            if rule.target_endpoints and checker is not None and checker.applies(rule, request):
                self.state.ip_hits.record(checker.key_for(rule, request))

    async def _evaluate_rules(
        self, request: RequestView
    ) -> tuple[Rule | None, TriggerPath | None, bool]:
        """Return (triggering rule, path, suspicious)."""
        rules: tuple[Rule, ...] = await self._storage_call(
            self.state.rules.get_rules, default=(), what="rule load",
        )
        suspicious = request.is_failed_login
        self._record_rule_hits(request, rules)

        for rule in rules:
            checker = self.checkers.get(rule.kind)
            if checker is None or not checker.applies(rule, request):
                continue
            result = checker.analyze(rule, request, self.state.ip_hits, self._durable_ratio)
            if result.triggered:
                logger.debug("Rule %r triggered in memory: %s", rule.name, result.description)
                return rule, TriggerPath.IN_MEMORY, True
            if not result.near_threshold:
                continue

            suspicious = True
            durable_count = await self._storage_call(
                self.durable.count_since,
                request.ip, rule.window_seconds,
                default=None, what="durable count",
                **checker.durable_filters(rule),
            )
            if durable_count is not None and durable_count > rule.max_requests:
                self.stats["cross_isolate"] += 1
                logger.warning(
                    "cross-isolate trigger rule=%r ip=%s local=%d durable=%d limit=%d",
                    rule.name, request.ip, result.count, durable_count, rule.max_requests,
                )
                return rule, TriggerPath.CROSS_ISOLATE, True

        fallback = self._fingerprint_flood(request, rules)
        if fallback is not None:
            return fallback, TriggerPath.AUTOMATED_TOOL, True
        return None, None, suspicious

    def _fingerprint_flood(self, request: RequestView, rules: tuple[Rule, ...]) -> Rule | None:
        if request.fingerprint is None:
            return None
        count = self.state.fingerprint_hits.count_since(request.fingerprint, self._fp_window)
        if count <= self._fp_threshold:
            return None
        for rule in rules:
            if rule.kind is RuleKind.RATE_LIMIT and rule.scope is Scope.ALL:
                self.stats["automated_tool"] += 1
                logger.warning(
                    "automated-tool trigger fingerprint=%r ip=%s hits=%d in %ds (via rule %r)",
                    request.fingerprint, request.ip, count, self._fp_window, rule.name,
                )
                return rule
        return None

    async def _apply_block(
        self, request: RequestView, rule: Rule, label: str, path: TriggerPath
    ) -> int:
        """Persist the block and queue the alert. Returns the block length in minutes."""
        duration = await self._storage_call(
            self._issue_block, request, rule, label, path,
            default=None, what="apply block",
        )
        if duration is None:
            # Not persisted; this request is still refused at the base duration
            return rule.block_duration_minutes

        self.stats["blocks_issued"] += 1
        logger.warning(
            "BLOCK ip=%s rule=%r duration=%dmin endpoint=%s%s",
            request.ip, label, duration, request.endpoint,
            " (escalated)" if duration > rule.block_duration_minutes else "",
        )
        if self.dispatcher is not None:
            self.dispatcher.notify(
                request.ip,
                label,
                duration,
                AlertContext(
                    endpoint=request.endpoint,
                    base_duration_minutes=rule.block_duration_minutes,
                    user_agent=request.user_agent,
                ),
            )
        return duration

    def _issue_block(
        self, request: RequestView, rule: Rule, label: str, path: TriggerPath
    ) -> int:
        """Runs in a worker thread. Raises on storage failure."""
        duration = self.escalation.effective_duration(request.ip, rule.block_duration_minutes)
        now = self._clock.now()
        record = self.state.blocks.block(
            request.ip,
            reason=f"Triggered {label}",
            rule_id=rule.id,
            scope=rule.scope,
            created_by=CreatedBy.SYSTEM,
            expires_at=now + duration * 60,
        )
        try:
            self.audit.record(
                "system_block",
                actor=CreatedBy.SYSTEM.value,
                ip=request.ip,
                details={
                    "block_id": record.id,
                    "rule": label,
                    "rule_id": rule.id,
                    "path": path.value,
                    "duration_minutes": duration,
                    "escalated": duration > rule.block_duration_minutes,
                    "endpoint": request.endpoint,
                },
                timestamp=now,
            )
        except Exception as exc:
            logger.error("Audit entry for block id=%s dropped: %s", record.id, exc)
        return duration

    async def _log(
        self,
        identity: Identity,
        context: RequestContext,
        sensitive: bool,
        decision: Decision,
        action: str,
        fast_path: bool = False,
    ) -> None:
        entry = RequestLogEntry(
            ip=identity.ip or "unknown",
            method=context.method,
            endpoint=context.endpoint,
            status=decision.status,
            action_taken=action,
            timestamp=self._clock.now(),
            status_code=context.status_code,
            user_agent=identity.user_agent,
            is_suspicious=decision.status is not DecisionStatus.NORMAL,
            is_blocked=decision.blocked,
            is_sensitive=sensitive,
            is_failed_login=context.is_failed_login,
            rule_triggered=decision.rule_label,
            latency_ms=context.latency_ms,
        )
        if not self.request_logger.should_log(entry, fast_path=fast_path):
            METRICS.logs_sampled_out.inc()
            return
        await self._storage_call(
            self.request_logger.write, entry, default=False, what="request log",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _storage_call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        default: Any,
        what: str,
        **kwargs: Any,
    ) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._storage_timeout,
            )
        except asyncio.TimeoutError:
            METRICS.storage_errors.inc()
            logger.error("%s timed out after %.1fs - failing open", what, self._storage_timeout)
        except Exception as exc:
            METRICS.storage_errors.inc()
            logger.error("%s failed - failing open: %s", what, exc)
        return default

    def _load_checkers(self) -> dict[RuleKind, BaseRuleChecker]:
        from . import rules as rules_pkg
        checkers: dict[RuleKind, BaseRuleChecker] = {}
        for _, module_name, _ in pkgutil.iter_modules(rules_pkg.__path__):
            if module_name == "base":
                continue
            try:
                module = importlib.import_module(f"{rules_pkg.__name__}.{module_name}")
            except Exception as exc:
                logger.error("Failed to import checker module %r: %s", module_name, exc)
                continue
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if (
                    issubclass(obj, BaseRuleChecker)
                    and obj is not BaseRuleChecker
                    and obj.__module__ == module.__name__
                ):
                    instance: BaseRuleChecker = obj()
                    if instance.enabled:
                        checkers[instance.kind] = instance
        return checkers


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_engine(
    db: Database,
    cfg: Settings = settings,
    clock: Clock | None = None,
    dispatcher: AlertDispatcher | None = None,
    sampler: Sampler | None = None,
    fast_path_sampler: Sampler | None = None,
) -> DecisionEngine:
    """Construct one process's engine and its state over *db*."""
    clock = clock or SystemClock()
    block_repo = BlockRepository(db)
    log_repo = RequestLogRepository(db)

    state = EngineState(
        rules=RuleCache(RuleRepository(db), ttl_seconds=cfg.RULE_CACHE_TTL_SECONDS, clock=clock),
        blocks=BlockCache(block_repo, ttl_seconds=cfg.BLOCK_CACHE_TTL_SECONDS, clock=clock),
        ip_hits=SlidingWindowCounter(
            retention_seconds=cfg.HIT_RETENTION_SECONDS,
            max_keys=cfg.IP_COUNTER_MAX_KEYS,
            clock=clock,
        ),
        fingerprint_hits=FingerprintCounter(
            retention_seconds=cfg.HIT_RETENTION_SECONDS,
            max_keys=cfg.FINGERPRINT_MAX_KEYS,
            clock=clock,
        ),
        clock=clock,
    )
    return DecisionEngine(
        state=state,
        escalation=EscalationPolicy(
            block_repo,
            lookback_hours=cfg.ESCALATION_LOOKBACK_HOURS,
            flat_after=cfg.ESCALATION_FLAT_AFTER,
            max_minutes=cfg.MAX_BLOCK_MINUTES,
            clock=clock,
        ),
        durable=DurableCounter(log_repo, clock=clock),
        request_logger=RequestLogger(
            log_repo,
            sampler=sampler or RandomSampler(cfg.LOG_SAMPLE_EVERY),
            fast_path_sampler=fast_path_sampler or RandomSampler(cfg.LOG_SAMPLE_EVERY_BLOCKED),
        ),
        audit=AuditRepository(db),
        dispatcher=dispatcher,
        cfg=cfg,
    )


def build_dispatcher(db: Database, cfg: Settings = settings, **kwargs: Any) -> AlertDispatcher:
    return AlertDispatcher(
        ConfigRepository(db),
        fallback_url=cfg.ALERT_WEBHOOK_URL,
        timeout=cfg.ALERT_TIMEOUT_SECONDS,
        queue_size=cfg.ALERT_QUEUE_SIZE,
        **kwargs,
    )
