"""Admission: the synchronous decision to start (or reuse) a stage's job."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .. import config
from ..api.jobs.models import JobRecord, JobStatus, JobType, ProjectRecord, RunRecord
from ..api.jobs.store import JobStore
from . import audit
from .audit import AuditSink, StoreAuditSink
from .catalog import StageDefinition, get_stage, pipeline_order
from .collaborators import JobDispatcher, OwnershipChecker, PlanResolver, PollingDispatcher, VendorConfig
from .concurrency import ConcurrencyGate
from .errors import (
    AdmissionError,
    ConcurrencyExceeded,
    ExternalServiceUnavailable,
    Forbidden,
    InfrastructureError,
    RateLimitExceeded,
    UpgradeRequired,
)
from .idempotency import FindOrCreateResult, IdempotencyResolver, derive_idempotency_key
from .quota import QuotaLedger
from .ratelimit import RateLimiter
from .runs import PipelineGate, RunRegistry, Upstream

logger = logging.getLogger(__name__)


@dataclass
class AdmissionRequest:
    """One request to start *stage* for a project.

    ``refs`` name upstream artifacts (e.g. ``{"scriptId": "S1"}``); ``attrs``
    are the stage's own disambiguating attributes.  Both feed the
    idempotency key and are copied into the job payload.
    """

    stage: JobType
    project_id: str
    user_id: str
    run_id: Optional[str] = None
    refs: Dict[str, Any] = field(default_factory=dict)
    attrs: Dict[str, Any] = field(default_factory=dict)
    attempt_key: Optional[str] = None
    dry_run: bool = False


@dataclass(frozen=True)
class Admitted:
    job: JobRecord
    dry_run: bool = False

    @property
    def started(self) -> bool:
        return not self.dry_run


@dataclass(frozen=True)
class Reused:
    job: JobRecord


@dataclass(frozen=True)
class Rejected:
    error: AdmissionError


AdmissionOutcome = Union[Admitted, Reused, Rejected]


class AdmissionService:
    """Runs every admission check in order and creates at most one job per key.

    Checks before the insert (concurrency count, advisory reuse lookup,
    quota) are advisory; the jobs table's unique key decides.  Quota
    reserved for a request that ends up reusing an existing row, or that
    fails before its row exists, is rolled back before returning.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        ownership: OwnershipChecker | None = None,
        plans: PlanResolver | None = None,
        vendors: VendorConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        concurrency: ConcurrencyGate | None = None,
        quota: QuotaLedger | None = None,
        runs: RunRegistry | None = None,
        audit_sink: AuditSink | None = None,
        dispatcher: JobDispatcher | None = None,
        sweep_mode: bool = False,
    ) -> None:
        self._store = store
        self.ownership = ownership or OwnershipChecker(store)
        self.plans = plans or PlanResolver(store)
        self.vendors = vendors or VendorConfig({})
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency or ConcurrencyGate(store)
        self.quota = quota or QuotaLedger(store)
        self.runs = runs or RunRegistry(store)
        self.pipeline = PipelineGate(self.runs)
        self.idempotency = IdempotencyResolver(store)
        self.audit = audit_sink or StoreAuditSink(store)
        self.dispatcher = dispatcher or PollingDispatcher()
        self.sweep_mode = sweep_mode

    # ── Admission ────────────────────────────────────────────────────

    async def admit(self, request: AdmissionRequest) -> AdmissionOutcome:
        """Admit, reuse or reject *request*.

        Raises
        ------
        InfrastructureError
            If the store failed; any quota reserved by this request has
            been rolled back and the whole request is safe to retry.
        """
        try:
            return await self._admit(request)
        except AdmissionError as exc:
            logger.info(
                "Rejected %s for project %s: %s", request.stage.value, request.project_id, exc.message,
                extra={"project_id": request.project_id},
            )
            await self.audit.emit(
                audit.JOB_REJECT,
                user_id=request.user_id,
                project_id=request.project_id,
                metadata={"stage": request.stage.value, "code": exc.code, "message": exc.message},
            )
            return Rejected(exc)
        except sqlite3.Error as exc:
            logger.error("Store failure admitting %s for project %s: %s", request.stage.value, request.project_id, exc)
            raise InfrastructureError(f"Job store unavailable: {exc}") from exc

    async def _admit(self, req: AdmissionRequest) -> AdmissionOutcome:
        stage = get_stage(req.stage)
        dry_run = req.dry_run or self.sweep_mode

        ownership = await self.ownership.check(req.user_id, req.project_id)
        if not ownership.allowed:
            raise Forbidden(ownership.reason or "Forbidden", {"projectId": req.project_id})

        plan = await self.plans.plan_for(req.user_id)
        if config.PLAN_RANK.get(plan, 0) < config.PLAN_RANK[stage.min_plan]:
            raise UpgradeRequired(stage.min_plan.value)

        if self.rate_limiter is not None:
            decision = await self.rate_limiter.check(req.project_id)
            if not decision.allowed:
                raise RateLimitExceeded(
                    decision.reason or "Rate limit exceeded", {"retryAfter": decision.retry_after_s}
                )

        if not dry_run and not self.vendors.is_configured(stage.vendor):
            raise ExternalServiceUnavailable(stage.vendor)

        gate = await self.concurrency.admit(req.user_id)
        if not gate.allowed:
            raise ConcurrencyExceeded(
                gate.reason or "Too many running jobs", {"limit": gate.ceiling, "running": gate.running}
            )

        run: Optional[RunRecord] = None
        if req.run_id is not None:
            run = await self.runs.resolve_run(req.project_id, req.run_id)
        upstream = await self.pipeline.resolve(
            stage,
            req.project_id,
            run_id=run.id if run else None,
            artifact_id=req.refs.get(stage.consumes) if stage.consumes else None,
        )
        run_id = run.id if run else (upstream.run_id if upstream else None)

        refs = dict(req.refs)
        if upstream is not None:
            refs[upstream.artifact] = upstream.artifact_id
            refs["upstreamJobId"] = upstream.job.id
        attrs = dict(req.attrs)
        if dry_run:
            attrs["dryRun"] = True

        key = derive_idempotency_key(
            req.project_id, stage.job_type, run_id=run_id, refs=refs, attrs=attrs, attempt=req.attempt_key
        )

        existing = await self.idempotency.lookup(req.project_id, stage.job_type, key)
        if existing is not None and existing.status is not JobStatus.FAILED:
            return await self._reused(req, existing)

        reservation = None
        if stage.metric is not None:
            reservation = await self.quota.reserve(req.user_id, plan, stage.metric, stage.quota_amount)

        created_run: Optional[RunRecord] = None
        result: Optional[FindOrCreateResult] = None
        try:
            if run_id is None:
                created_run = await self.runs.start_run(req.project_id)
                run_id = created_run.id
            payload = self._build_payload(stage, refs, attrs, upstream, dry_run)
            if reservation is not None:
                payload["quotaReservation"] = reservation.to_payload()
            result = await self.idempotency.find_or_create(
                req.project_id,
                stage.job_type,
                key,
                payload,
                user_id=req.user_id,
                run_id=run_id,
                status=JobStatus.COMPLETED if dry_run else JobStatus.PENDING,
                result_summary="Dry run: no work dispatched" if dry_run else None,
                active_ceiling=None if dry_run else self.concurrency.ceiling,
            )
            if reservation is not None and result.created:
                await self._store.attach_reservation(reservation.id, result.job.id)
        except Exception:
            if result is not None and result.created:
                # The row exists and carries the reservation in its payload;
                # its outcome settles the reservation.
                logger.warning("Job %s created but its reservation was not attached", result.job.id)
                raise
            if reservation is not None:
                await self.quota.rollback(reservation)
            if created_run is not None:
                await self.runs.abandon(created_run.id)
            raise

        if not result.created:
            # Lost the insert race: the other request's row is authoritative.
            if reservation is not None:
                await self.quota.rollback(reservation)
            if created_run is not None:
                await self.runs.abandon(created_run.id)
            return await self._reused(req, result.job)

        job = result.job
        if dry_run and reservation is not None:
            await self.quota.rollback(reservation)

        await self.audit.emit(
            audit.JOB_CREATE,
            user_id=req.user_id,
            project_id=req.project_id,
            job_id=job.id,
            metadata={
                "stage": stage.job_type.value,
                "runId": job.run_id,
                "dryRun": dry_run,
                "supersededJobId": result.superseded_job_id,
            },
        )
        logger.info(
            "Admitted %s job %s for project %s (run %s%s)",
            stage.job_type.value, job.id, req.project_id, job.run_id, ", dry run" if dry_run else "",
            extra={"job_id": job.id, "project_id": req.project_id},
        )
        if not dry_run:
            await self.dispatcher.dispatch(job)
        return Admitted(job=job, dry_run=dry_run)

    async def _reused(self, req: AdmissionRequest, job: JobRecord) -> Reused:
        await self.audit.emit(
            audit.JOB_REUSE,
            user_id=req.user_id,
            project_id=req.project_id,
            job_id=job.id,
            metadata={"stage": job.type.value, "status": job.status.value},
        )
        logger.info(
            "Reused %s job %s for project %s", job.type.value, job.id, req.project_id,
            extra={"job_id": job.id, "project_id": req.project_id},
        )
        return Reused(job=job)

    @staticmethod
    def _build_payload(
        stage: StageDefinition,
        refs: Dict[str, Any],
        attrs: Dict[str, Any],
        upstream: Optional[Upstream],
        dry_run: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {**attrs, **refs, "stage": stage.job_type.value, "attempts": 0}
        if upstream is not None:
            payload["upstreamJobId"] = upstream.job.id
        if dry_run:
            payload["dryRun"] = True
            payload["skipped"] = True
            payload["result"] = {"skipped": True, "reason": "dry run"}
        return payload

    # ── Status reads ─────────────────────────────────────────────────

    async def require_owner(self, user_id: str, project_id: str) -> ProjectRecord:
        """Return the project if *user_id* owns it; raise Forbidden otherwise."""
        ownership = await self.ownership.check(user_id, project_id)
        if not ownership.allowed:
            raise Forbidden(ownership.reason or "Forbidden", {"projectId": project_id})
        return ownership.project

    async def stage_status(
        self, user_id: str, project_id: str, stage: JobType | str, run_id: str | None = None
    ) -> Optional[Dict[str, Any]]:
        """Latest non-dry-run job of one stage in the run (or project-wide), or None."""
        await self.require_owner(user_id, project_id)
        definition = get_stage(stage)
        job = await self._store.latest_job(
            project_id, definition.job_type, run_id=run_id, include_dry_runs=False
        )
        return job.to_status() if job else None

    async def pipeline_status(
        self, user_id: str, project_id: str, run_id: str | None = None
    ) -> List[Dict[str, Any]]:
        """Every stage's latest non-dry-run job, in pipeline order.  Read-only."""
        await self.require_owner(user_id, project_id)
        out: List[Dict[str, Any]] = []
        for definition in pipeline_order():
            job = await self._store.latest_job(
                project_id, definition.job_type, run_id=run_id, include_dry_runs=False
            )
            out.append({"stage": definition.job_type.value, "job": job.to_status() if job else None})
        return out
