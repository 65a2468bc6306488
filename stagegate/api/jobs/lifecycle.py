"""Job state machine and the compensations run on each transition.

    PENDING ──claim──▶ RUNNING ──complete──▶ COMPLETED
       │                 │  │
       │                 │  └──fail (retryable, budget left)──▶ PENDING
       └──fail──▶ FAILED ◀┘

Transitions are driven by the worker reporting outcomes; nothing here
infers completion.  Every write is a conditional update on the current
status, so two reports for the same job cannot both apply.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from ...admission import audit
from ...admission.audit import AuditSink, StoreAuditSink
from ...admission.errors import InvalidTransition, JobNotFoundError, MaxAttemptsExceeded
from ...admission.quota import QuotaLedger
from ...admission.retry import RetryPolicy
from .models import JobRecord, JobStatus, JobType
from .store import JobStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move job from {current.value} to {target.value}")


def _log_extra(job: JobRecord) -> Dict[str, str]:
    return {"job_id": job.id, "project_id": job.project_id}


class JobLifecycle:
    """Apply worker-reported outcomes and their quota/audit side effects."""

    def __init__(
        self,
        store: JobStore,
        *,
        quota: QuotaLedger | None = None,
        audit_sink: AuditSink | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self.quota = quota or QuotaLedger(store)
        self.audit = audit_sink or StoreAuditSink(store)
        self.retry_policy = retry_policy or RetryPolicy()

    async def _get(self, job_id: str) -> JobRecord:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        return job

    async def _move(
        self,
        job: JobRecord,
        target: JobStatus,
        *,
        payload: Dict[str, Any] | None = None,
        **fields: Any,
    ) -> JobRecord:
        check_transition(job.status, target)
        moved = await self._store.transition_job(job.id, job.status, target, payload=payload, **fields)
        if not moved:
            current = await self._get(job.id)
            raise InvalidTransition(
                f"Job {job.id} changed to {current.status.value} before it could move to {target.value}"
            )
        return await self._get(job.id)

    # ── Worker-facing transitions ────────────────────────────────────

    async def claim(self, job_types: Iterable[JobType] | None = None) -> Optional[JobRecord]:
        """Hand the oldest due PENDING job to a worker, or None if none is due."""
        job = await self._store.claim_next_job(self.retry_policy.now_ms(), job_types)
        if job is not None:
            logger.info("Job %s (%s) claimed", job.id, job.type.value, extra=_log_extra(job))
            await self.audit.emit(
                audit.JOB_RUNNING, user_id=job.user_id, project_id=job.project_id, job_id=job.id
            )
        return job

    async def start(self, job_id: str) -> JobRecord:
        job = await self._move(await self._get(job_id), JobStatus.RUNNING)
        await self.audit.emit(audit.JOB_RUNNING, user_id=job.user_id, project_id=job.project_id, job_id=job.id)
        return job

    async def complete(
        self, job_id: str, result: Dict[str, Any] | None = None, summary: str | None = None
    ) -> JobRecord:
        """RUNNING → COMPLETED.  The job's reservation is consumed, never refunded."""
        job = await self._get(job_id)
        payload = dict(job.payload)
        payload["result"] = {**(payload.get("result") or {}), **(result or {})}
        payload.pop("nextRunAt", None)
        job = await self._move(job, JobStatus.COMPLETED, payload=payload, result_summary=summary, error=None)

        await self._settle(job, refund=False)
        await self.audit.emit(
            audit.JOB_COMPLETED,
            user_id=job.user_id,
            project_id=job.project_id,
            job_id=job.id,
            metadata={"summary": summary},
        )
        logger.info("Job %s (%s) completed", job.id, job.type.value, extra=_log_extra(job))
        return job

    async def fail(
        self,
        job_id: str,
        error: str,
        *,
        retryable: bool = False,
        refund_quota: bool = True,
    ) -> JobRecord:
        """Record a failure reported by the worker.

        A retryable failure of a RUNNING job goes back to PENDING with a
        backoff, until the attempt budget runs out; then, like any other
        failure, the job becomes FAILED and its reservation is rolled back
        unless *refund_quota* is False.
        """
        job = await self._get(job_id)
        if retryable and job.status is JobStatus.RUNNING:
            try:
                return await self._schedule_retry(job, error)
            except MaxAttemptsExceeded as exc:
                logger.warning("%s", exc, extra=_log_extra(job))
                payload = dict(job.payload)
                payload["attempts"] = exc.attempts
                return await self._fail(job, f"Max attempts exceeded: {error}", refund_quota, payload=payload)
        return await self._fail(job, error, refund_quota)

    async def _schedule_retry(self, job: JobRecord, error: str) -> JobRecord:
        decision = self.retry_policy.record_attempt(job.payload)
        if not decision.retry:
            raise MaxAttemptsExceeded(job.id, decision.attempts)
        payload = dict(job.payload)
        payload["attempts"] = decision.attempts
        payload["nextRunAt"] = decision.next_run_at_ms
        payload["lastError"] = error
        job = await self._move(job, JobStatus.PENDING, payload=payload)
        await self.audit.emit(
            audit.JOB_RETRY_SCHEDULED,
            user_id=job.user_id,
            project_id=job.project_id,
            job_id=job.id,
            metadata={"attempts": decision.attempts, "delayMs": decision.delay_ms, "error": error},
        )
        logger.info(
            "Job %s attempt %d failed; retrying in %d ms", job.id, decision.attempts, decision.delay_ms,
            extra=_log_extra(job),
        )
        return job

    async def _fail(
        self,
        job: JobRecord,
        error: str,
        refund_quota: bool,
        payload: Dict[str, Any] | None = None,
    ) -> JobRecord:
        payload = dict(payload if payload is not None else job.payload)
        payload.pop("nextRunAt", None)
        job = await self._move(job, JobStatus.FAILED, payload=payload, error=error)
        await self._settle(job, refund=refund_quota)
        await self.audit.emit(
            audit.JOB_FAILED,
            user_id=job.user_id,
            project_id=job.project_id,
            job_id=job.id,
            metadata={"error": error, "refunded": refund_quota},
        )
        logger.warning("Job %s (%s) failed: %s", job.id, job.type.value, error, extra=_log_extra(job))
        return job

    async def _settle(self, job: JobRecord, *, refund: bool) -> None:
        """Roll back or consume the job's outstanding reservation, if any."""
        ref = job.payload.get("quotaReservation") or {}
        if not ref.get("id"):
            return
        reservation = await self.quota.get(ref["id"])
        if reservation is None:
            logger.warning("Job %s references unknown reservation %s", job.id, ref["id"])
            return
        if refund:
            await self.quota.rollback(reservation)
        else:
            await self.quota.consume(reservation)

    # ── Dead letter ──────────────────────────────────────────────────

    async def dead_letters(self, project_id: str, limit: int = 50) -> List[JobRecord]:
        """FAILED jobs in the project that nobody has dismissed yet."""
        failed = await self._store.list_jobs(project_id, status=JobStatus.FAILED, limit=limit)
        return [j for j in failed if not j.payload.get("dismissed")]

    async def dismiss(
        self, job_id: str, *, user_id: str | None = None, project_id: str | None = None
    ) -> JobRecord:
        job = await self._get(job_id)
        if project_id is not None and job.project_id != project_id:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        if job.status is not JobStatus.FAILED:
            raise InvalidTransition(f"Only FAILED jobs can be dismissed (job {job.id} is {job.status.value})")
        payload = dict(job.payload)
        payload["dismissed"] = True
        await self._store.update_payload(job.id, payload)
        await self.audit.emit(
            audit.JOB_DEAD_LETTER_DISMISS, user_id=user_id, project_id=job.project_id, job_id=job.id
        )
        return await self._get(job.id)

    async def dismiss_all(
        self,
        project_id: str,
        *,
        job_ids: Iterable[str] | None = None,
        user_id: str | None = None,
        limit: int = 500,
    ) -> Dict[str, int]:
        """Dismiss every open dead letter of the project, or only *job_ids*.

        Requested ids that are not open dead letters of the project count as
        skipped.
        """
        open_jobs = {j.id: j for j in await self.dead_letters(project_id, limit=limit)}
        wanted = list(dict.fromkeys(job_ids)) if job_ids is not None else list(open_jobs)
        updated = skipped = 0
        for job_id in wanted:
            if job_id not in open_jobs:
                skipped += 1
                continue
            try:
                await self.dismiss(job_id, user_id=user_id, project_id=project_id)
            except (InvalidTransition, JobNotFoundError):
                skipped += 1
            else:
                updated += 1
        logger.info(
            "Dismissed %d dead letters in project %s (%d skipped)", updated, project_id, skipped,
            extra={"project_id": project_id},
        )
        return {"updated": updated, "skipped": skipped}
