"""
engine/request_logger.py

RequestLogger - decides which requests reach the request_log table.

Policy:
  - violation / block issued, or failed authentication → always written
  - rejected by the block cache fast path              → 1-in-3 sample
  - everything else                                    → 1-in-5 sample

Write failures are logged and swallowed; logging never affects a decision.
"""

from __future__ import annotations

import logging

from ..clock import RandomSampler, Sampler
from ..errors import StorageUnavailableError
from ..metrics import METRICS
from ..models import RequestLogEntry
from ..storage.repository import RequestLogRepository

logger = logging.getLogger(__name__)


class RequestLogger:
    def __init__(
        self,
        repo: RequestLogRepository,
        sampler: Sampler | None = None,
        fast_path_sampler: Sampler | None = None,
    ) -> None:
        self._repo = repo
        self._sampler = sampler or RandomSampler(5)
        self._fast_path_sampler = fast_path_sampler or RandomSampler(3)

    def should_log(self, entry: RequestLogEntry, fast_path: bool = False) -> bool:
        if fast_path:
            return self._fast_path_sampler.should_sample()
        if entry.is_blocked or entry.is_failed_login:
            return True
        return self._sampler.should_sample()

    def log(self, entry: RequestLogEntry, fast_path: bool = False) -> bool:
        """Persist *entry* if the policy selects it. Returns True when written."""
        if not self.should_log(entry, fast_path=fast_path):
            METRICS.logs_sampled_out.inc()
            return False
        return self.write(entry)

    def write(self, entry: RequestLogEntry) -> bool:
        """Persist *entry* unconditionally (the sampling decision is already made)."""
        try:
            self._repo.insert(entry)
        except StorageUnavailableError as exc:
            METRICS.storage_errors.inc()
            logger.error("Request log write dropped for ip=%r: %s", entry.ip, exc)
            return False
        METRICS.logs_written.inc()
        return True
