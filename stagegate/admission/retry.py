"""Backoff scheduling and attempt ceilings for retryable job failures."""
from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .. import config


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of recording one failed attempt.

    ``retry`` is False once the attempt count passes the ceiling; the job is
    then terminally FAILED and ``next_run_at_ms`` is None.
    """

    retry: bool
    attempts: int
    delay_ms: int = 0
    next_run_at_ms: Optional[int] = None


class RetryPolicy:
    """Exponential backoff with uniform jitter.

    ``backoff_ms(n) = min(cap, base * 2**(n-1)) + jitter`` where jitter is an
    integer drawn from ``[0, jitter_ms)``.  Values left as None are read from
    :mod:`stagegate.config` at call time so runtime patches take effect.
    """

    def __init__(
        self,
        *,
        base_ms: int | None = None,
        cap_ms: int | None = None,
        jitter_ms: int | None = None,
        max_attempts: int | None = None,
        rng: Callable[[], float] | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._base_ms = base_ms
        self._cap_ms = cap_ms
        self._jitter_ms = jitter_ms
        self._max_attempts = max_attempts
        self._rng = rng or random.random
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    @property
    def base_ms(self) -> int:
        return self._base_ms if self._base_ms is not None else config.RETRY_BASE_MS

    @property
    def cap_ms(self) -> int:
        return self._cap_ms if self._cap_ms is not None else config.RETRY_CAP_MS

    @property
    def jitter_ms(self) -> int:
        return self._jitter_ms if self._jitter_ms is not None else config.RETRY_JITTER_MS

    @property
    def max_attempts(self) -> int:
        return self._max_attempts if self._max_attempts is not None else config.MAX_JOB_ATTEMPTS

    def now_ms(self) -> int:
        return self._clock_ms()

    def backoff_ms(self, attempt: int, rng: Callable[[], float] | None = None) -> int:
        """Delay before attempt number *attempt* + 1 (attempts count from 1)."""
        attempt = max(1, int(attempt))
        # Clamp the exponent so huge attempt numbers don't build huge ints.
        exponent = min(attempt - 1, 62)
        exp_delay = min(self.cap_ms, self.base_ms * (2 ** exponent))
        jitter = int((rng or self._rng)() * self.jitter_ms)
        return exp_delay + min(jitter, max(self.jitter_ms - 1, 0))

    def record_attempt(self, payload: Dict[str, Any]) -> RetryDecision:
        """Count one more failed attempt against *payload*'s ``attempts``.

        Returns the decision without touching the store; the caller persists
        ``attempts`` and ``nextRunAt`` on the job payload.
        """
        attempts = int(payload.get("attempts") or 0) + 1
        if attempts > self.max_attempts:
            return RetryDecision(retry=False, attempts=attempts)
        delay = self.backoff_ms(attempts)
        return RetryDecision(
            retry=True,
            attempts=attempts,
            delay_ms=delay,
            next_run_at_ms=self.now_ms() + delay,
        )
