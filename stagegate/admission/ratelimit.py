"""Admission rate limiters.

``StoreRateLimiter`` counts job rows, so it survives restarts and is shared
by every process on the store.  ``InMemoryRateLimiter`` is a process-local
fixed window for low-stakes auxiliary actions only; its counts reset on
restart and it must never guard quota or idempotency.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from .. import config
from ..api.jobs.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after_s: Optional[int] = None


class RateLimiter(Protocol):
    async def check(self, key: str) -> RateDecision:
        ...


class StoreRateLimiter:
    """Per-project hourly and daily ceilings on job creation."""

    def __init__(
        self,
        store: JobStore,
        *,
        per_hour: int | None = None,
        per_day: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._per_hour = per_hour
        self._per_day = per_day
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def check(self, key: str) -> RateDecision:
        """*key* is the project id."""
        per_hour = self._per_hour if self._per_hour is not None else config.RATE_LIMIT_JOBS_PER_HOUR
        per_day = self._per_day if self._per_day is not None else config.RATE_LIMIT_JOBS_PER_DAY
        now = self._clock()

        hourly = await self._store.count_jobs_created_since(key, (now - timedelta(hours=1)).isoformat())
        if hourly >= per_hour:
            return RateDecision(False, f"Rate limit exceeded: {per_hour} jobs per hour", 3600)
        daily = await self._store.count_jobs_created_since(key, (now - timedelta(days=1)).isoformat())
        if daily >= per_day:
            return RateDecision(False, f"Rate limit exceeded: {per_day} jobs per day", 86400)
        return RateDecision(True)


class InMemoryRateLimiter:
    """Fixed-window counter keyed by an arbitrary string.

    Buckets whose window has lapsed are dropped on every check, so the map
    only holds keys seen within the last window.
    """

    def __init__(
        self,
        limit: int,
        window_s: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.limit = limit
        self.window_s = window_s
        self._clock = clock or time.monotonic
        self._buckets: Dict[str, Tuple[float, int]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict(self, now: float) -> None:
        expired = [k for k, (started, _) in self._buckets.items() if now - started >= self.window_s]
        for key in expired:
            del self._buckets[key]

    async def check(self, key: str) -> RateDecision:
        now = self._clock()
        self._evict(now)
        started, count = self._buckets.get(key, (now, 0))
        if count >= self.limit:
            retry_after = max(1, int(self.window_s - (now - started)))
            return RateDecision(False, f"Rate limit exceeded: {self.limit} per {int(self.window_s)}s", retry_after)
        self._buckets[key] = (started, count + 1)
        return RateDecision(True)

    def reset(self) -> None:
        self._buckets.clear()
