"""Per-user in-flight job ceiling."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from .. import config
from ..api.jobs.store import JobStore
from .errors import InfrastructureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    running: int = 0
    ceiling: int = 0


class ConcurrencyGate:
    """Counts a user's PENDING/RUNNING jobs across all projects.

    Read-only: the job row's own insert is what consumes the slot, so the
    decision is advisory and the insert order in the store stays
    authoritative.
    """

    def __init__(self, store: JobStore, ceiling: int | None = None) -> None:
        self._store = store
        self._ceiling = ceiling

    @property
    def ceiling(self) -> int:
        return self._ceiling if self._ceiling is not None else config.MAX_RUNNING_JOBS_PER_USER

    async def admit(self, user_id: str) -> GateDecision:
        """Decide whether *user_id* may start another job.

        Raises
        ------
        InfrastructureError
            If the count could not be evaluated.  This is distinct from a
            rejection so callers never report "no capacity" for an outage.
        """
        ceiling = self.ceiling
        try:
            running = await self._store.count_active_jobs_for_user(user_id)
        except sqlite3.Error as exc:
            raise InfrastructureError(f"Could not count running jobs: {exc}") from exc
        if running >= ceiling:
            logger.info("Concurrency ceiling hit for user %s (%d/%d)", user_id, running, ceiling)
            return GateDecision(
                allowed=False,
                reason=f"Too many running jobs (max {ceiling})",
                running=running,
                ceiling=ceiling,
            )
        return GateDecision(allowed=True, running=running, ceiling=ceiling)
