"""Job status reads and the worker outcome interface."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from ...admission.errors import JobNotFoundError
from ...admission.service import AdmissionService
from ..deps.auth import require_user, require_worker
from ..deps.providers import get_admission_service, get_job_store, get_lifecycle
from ..jobs.lifecycle import JobLifecycle
from ..jobs.models import JobRecord
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse
from ..schemas.pipeline import ClaimRequest, CompleteRequest, FailRequest

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _not_found(job_id: str) -> None:
    """Raise JobNotFoundError to be handled by the global error handler."""
    raise JobNotFoundError(f"Job '{job_id}' not found")


def job_view(job: JobRecord) -> dict:
    return {
        **job.to_status(),
        "projectId": job.project_id,
        "resultSummary": job.result_summary,
        "result": job.payload.get("result"),
        "attempts": job.payload.get("attempts", 0),
    }


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    user_id: str = Depends(require_user),
    store: JobStore = Depends(get_job_store),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    rec = await store.get_job(job_id)
    if rec is None:
        _not_found(job_id)
    await service.require_owner(user_id, rec.project_id)
    return ApiResponse.success(job_view(rec))


# ── Worker endpoints ────────────────────────────────────────────────


@router.post("/claim", dependencies=[Depends(require_worker)])
async def claim_job(
    body: Optional[ClaimRequest] = Body(default=None),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> ApiResponse:
    job = await lifecycle.claim(body.job_types if body else None)
    if job is None:
        return ApiResponse.success(None)
    return ApiResponse.success({**job_view(job), "payload": job.payload})


@router.post("/{job_id}/complete", dependencies=[Depends(require_worker)])
async def complete_job(
    job_id: str,
    body: CompleteRequest,
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> ApiResponse:
    job = await lifecycle.complete(job_id, body.result, body.summary)
    return ApiResponse.success(job_view(job))


@router.post("/{job_id}/fail", dependencies=[Depends(require_worker)])
async def fail_job(
    job_id: str,
    body: FailRequest,
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> ApiResponse:
    job = await lifecycle.fail(
        job_id, body.error, retryable=body.retryable, refund_quota=body.refund_quota
    )
    return ApiResponse.success({**job_view(job), "nextRunAt": job.payload.get("nextRunAt")})
