"""Fire-and-forget audit trail for job admission and lifecycle events."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional, Protocol

from ..api.jobs.store import JobStore

logger = logging.getLogger(__name__)

JOB_CREATE = "job.create"
JOB_REUSE = "job.reuse"
JOB_REJECT = "job.reject"
JOB_RUNNING = "job.running"
JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_RETRY_SCHEDULED = "job.retry_scheduled"
JOB_DEAD_LETTER_DISMISS = "job.dead_letter.dismiss"


class AuditSink(Protocol):
    async def emit(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        job_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class StoreAuditSink:
    """Writes ``audit_log`` rows.  A failed write is logged, never raised."""

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def emit(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        job_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self._store.insert_audit(
                action, user_id=user_id, project_id=project_id, job_id=job_id, metadata=metadata
            )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.warning("Audit write failed for %s (job %s): %s", action, job_id, exc)
