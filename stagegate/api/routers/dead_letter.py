"""Dead-letter view: FAILED jobs awaiting a human decision."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ...admission.errors import RateLimitExceeded
from ...admission.ratelimit import InMemoryRateLimiter
from ...admission.service import AdmissionService
from ..deps.auth import require_user
from ..deps.providers import (
    get_admission_service,
    get_dead_letter_bulk_limiter,
    get_dead_letter_limiter,
    get_lifecycle,
)
from ..jobs.lifecycle import JobLifecycle
from ..schemas.envelope import ApiResponse
from ..schemas.pipeline import DeadLetterBulkRequest
from .jobs import job_view

router = APIRouter(prefix="/api/projects/{project_id}/dead-letter", tags=["dead-letter"])


@router.get("")
async def list_dead_letters(
    project_id: str,
    limit: int = 50,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> ApiResponse:
    await service.require_owner(user_id, project_id)
    jobs = await lifecycle.dead_letters(project_id, limit=limit)
    return ApiResponse.success([job_view(j) for j in jobs])


@router.post("/{job_id}/dismiss")
async def dismiss_dead_letter(
    project_id: str,
    job_id: str,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
    limiter: InMemoryRateLimiter = Depends(get_dead_letter_limiter),
) -> ApiResponse:
    await service.require_owner(user_id, project_id)
    decision = await limiter.check(f"deadletter:{user_id}")
    if not decision.allowed:
        raise RateLimitExceeded(decision.reason or "Rate limit exceeded", {"retryAfter": decision.retry_after_s})
    job = await lifecycle.dismiss(job_id, user_id=user_id, project_id=project_id)
    return ApiResponse.success(job_view(job))


@router.post("/bulk")
async def bulk_dead_letter_action(
    project_id: str,
    body: DeadLetterBulkRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
    limiter: InMemoryRateLimiter = Depends(get_dead_letter_bulk_limiter),
) -> ApiResponse:
    await service.require_owner(user_id, project_id)
    decision = await limiter.check(f"deadletter:bulk:{user_id}")
    if not decision.allowed:
        raise RateLimitExceeded(decision.reason or "Rate limit exceeded", {"retryAfter": decision.retry_after_s})
    counts = await lifecycle.dismiss_all(project_id, job_ids=body.job_ids, user_id=user_id)
    return ApiResponse.success({"action": body.action, **counts})
