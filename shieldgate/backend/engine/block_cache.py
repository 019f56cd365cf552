"""
engine/block_cache.py

BlockCache - per-process view of the active blocks, backed by BlockRepository.

Every request consults is_blocked() first, so it is served from memory and
reloaded at most every `ttl_seconds` (10s by default). Any write through
this class resets the fetch time so the next read reloads.

Refresh sequence:
  1. lazily expire records whose expires_at has passed (active → expired)
  2. load active records, most recent first
  3. keep the first (most recent) record per IP

Several engine instances may insert blocks for the same IP concurrently; step
3 is what makes that harmless.
"""

from __future__ import annotations

import logging
import threading

from ..clock import Clock, SystemClock
from ..errors import StorageUnavailableError
from ..models import BlockRecord, CreatedBy, Scope
from ..storage.repository import BlockRepository

logger = logging.getLogger(__name__)


class BlockCache:
    def __init__(
        self,
        repo: BlockRepository,
        ttl_seconds: int = 10,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repo
        self._ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._by_ip: dict[str, BlockRecord] = {}
        self._fetched_at: float = float("-inf")
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_blocked(self, ip: str, sensitive: bool = True) -> bool:
        """
        True if the most recent active record for *ip* is live and applies.
        A sensitive_only block applies only when *sensitive* is True.
        """
        self._maybe_refresh()
        record = self._by_ip.get(ip)
        if record is None:
            return False
        return record.is_live(self._clock.now()) and record.applies_to(sensitive)

    def list_active(self) -> list[BlockRecord]:
        """Authoritative list straight from storage (expires due records first)."""
        self._repo.expire_due(self._clock.now())
        return self._repo.list_active()

    # ------------------------------------------------------------------
    # Writes - each one invalidates the snapshot
    # ------------------------------------------------------------------

    def block(
        self,
        ip: str,
        reason: str,
        rule_id: int | None = None,
        scope: Scope = Scope.ALL,
        created_by: CreatedBy = CreatedBy.SYSTEM,
        expires_at: float | None = None,
    ) -> BlockRecord:
        record = self._repo.insert_block(
            ip=ip,
            reason=reason,
            rule_id=rule_id,
            scope=scope,
            created_by=created_by,
            blocked_at=self._clock.now(),
            expires_at=expires_at,
        )
        self.invalidate()
        return record

    def unblock(self, block_id: int) -> bool:
        changed = self._repo.mark_unblocked(block_id)
        self.invalidate()
        return changed

    def invalidate(self) -> None:
        with self._lock:
            self._fetched_at = float("-inf")

    @property
    def size(self) -> int:
        return len(self._by_ip)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _maybe_refresh(self) -> None:
        with self._lock:
            now = self._clock.now()
            if now - self._fetched_at < self._ttl:
                return
            # Stamp first: on failure we keep the previous snapshot for one interval
            self._fetched_at = now
            try:
                self._repo.expire_due(now)
                records = self._repo.list_active()
            except StorageUnavailableError as exc:
                logger.error("Block cache refresh failed, serving previous snapshot: %s", exc)
                return

            by_ip: dict[str, BlockRecord] = {}
            for record in records:
                # list_active() is ordered most recent first
                by_ip.setdefault(record.ip, record)
            self._by_ip = by_ip
            logger.debug("Block cache refreshed - %d blocked IP(s)", len(by_ip))
