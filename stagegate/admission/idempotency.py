"""Idempotency key derivation and atomic find-or-create of job rows."""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..api.jobs.models import JobRecord, JobStatus, JobType
from ..api.jobs.store import JobStore, new_id
from .errors import ConcurrencyExceeded

logger = logging.getLogger(__name__)

SUPERSEDED_MARKER = "~superseded~"

# A FAILED row can be re-failed and re-superseded by a racing request between
# our supersede and our insert; give up after this many rounds.
_MAX_CREATE_ROUNDS = 3


def derive_idempotency_key(
    project_id: str,
    job_type: JobType,
    *,
    run_id: str | None = None,
    refs: Mapping[str, Any] | None = None,
    attrs: Mapping[str, Any] | None = None,
    attempt: str | None = None,
) -> str:
    """Canonical key for one logical request.

    The request-identifying tuple is serialised as sorted, compact JSON and
    hashed, so equal tuples always produce equal keys and any differing
    attribute produces a different key.  The stage prefix keeps keys
    readable in the jobs table.
    """
    canonical = json.dumps(
        {
            "projectId": project_id,
            "stage": job_type.value,
            "runId": run_id,
            "refs": dict(refs or {}),
            "attrs": dict(attrs or {}),
            "attempt": attempt,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{job_type.value}:{digest}"


def supersede_key(key: str, job_id: str) -> str:
    """Key a FAILED job moves to when its original key is released."""
    return f"{key}{SUPERSEDED_MARKER}{job_id}"


@dataclass
class FindOrCreateResult:
    job: JobRecord
    created: bool
    superseded_job_id: Optional[str] = None


class IdempotencyResolver:
    """Insert-first deduplication over the jobs table's unique key.

    A uniqueness violation is not an error here: it means another request
    already owns the key, and that row is returned with ``created=False``.
    """

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def lookup(self, project_id: str, job_type: JobType, key: str) -> Optional[JobRecord]:
        """Advisory read of the row currently holding *key*."""
        return await self._store.get_job_by_key(project_id, job_type, key)

    async def supersede(self, job: JobRecord) -> Optional[str]:
        """Release a FAILED job's key by moving the row to a derived key.

        Returns the new key, or None if the row was no longer FAILED under
        its key (another request superseded it first, or it was retried).
        """
        if job.status is not JobStatus.FAILED:
            raise ValueError(f"Only FAILED jobs can be superseded (job {job.id} is {job.status.value})")
        new_key = supersede_key(job.idempotency_key, job.id)
        moved = await self._store.rekey_failed_job(job.id, job.idempotency_key, new_key)
        if moved:
            logger.info("Superseded failed job %s; key released", job.id)
            payload = dict(job.payload)
            payload["supersededKey"] = job.idempotency_key
            await self._store.update_payload(job.id, payload)
            return new_key
        return None

    async def find_or_create(
        self,
        project_id: str,
        job_type: JobType,
        key: str,
        payload: Dict[str, Any],
        *,
        user_id: str | None = None,
        run_id: str | None = None,
        status: JobStatus = JobStatus.PENDING,
        result_summary: str | None = None,
        active_ceiling: int | None = None,
    ) -> FindOrCreateResult:
        """Atomically create the job for *key*, or return the row that already holds it.

        With *active_ceiling*, the insert only happens while the user is under
        that many active jobs.

        Raises
        ------
        ConcurrencyExceeded
            If the ceiling refused the insert and no live row holds *key*.
        """
        superseded: Optional[str] = None
        for _ in range(_MAX_CREATE_ROUNDS):
            rec = JobRecord(
                id=new_id(),
                project_id=project_id,
                user_id=user_id,
                run_id=run_id,
                type=job_type,
                status=status,
                idempotency_key=key,
                payload={**payload, "idempotencyKey": key},
                result_summary=result_summary,
            )
            try:
                created = await self._store.insert_job(rec, active_ceiling=active_ceiling)
            except sqlite3.IntegrityError:
                conflict = True
            else:
                if created is not None:
                    return FindOrCreateResult(job=rec, created=True, superseded_job_id=superseded)
                conflict = False

            existing = await self._store.get_job_by_key(project_id, job_type, key)
            if existing is not None and existing.status is not JobStatus.FAILED:
                return FindOrCreateResult(job=existing, created=False)
            if not conflict:
                # Refused by the ceiling, and no live row holds the key.
                raise ConcurrencyExceeded(
                    f"Too many running jobs (max {active_ceiling})", {"limit": active_ceiling}
                )
            if existing is None:
                # The holder was superseded between our insert and read.
                continue
            await self.supersede(existing)
            superseded = existing.id

        existing = await self._store.get_job_by_key(project_id, job_type, key)
        if existing is None:
            raise RuntimeError(f"Could not create or find job for key {key}")
        return FindOrCreateResult(job=existing, created=False)
