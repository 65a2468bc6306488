"""Run endpoints: start, list and close pipeline runs."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ...admission.errors import InvalidTransition, ValidationError
from ...admission.service import AdmissionService
from ..deps.auth import require_user
from ..deps.providers import get_admission_service, get_job_store
from ..jobs.models import RunRecord, RunStatus
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse
from ..schemas.pipeline import RunStatusRequest

router = APIRouter(tags=["runs"])


def _run_view(rec: RunRecord) -> dict:
    return {
        "runId": rec.id,
        "projectId": rec.project_id,
        "status": rec.status.value,
        "createdAt": rec.created_at,
        "updatedAt": rec.updated_at,
    }


@router.post("/api/projects/{project_id}/runs", status_code=201)
async def create_run(
    project_id: str,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    await service.require_owner(user_id, project_id)
    run = await service.runs.start_run(project_id)
    return ApiResponse.success(_run_view(run))


@router.get("/api/projects/{project_id}/runs")
async def list_runs(
    project_id: str,
    limit: int = 50,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    await service.require_owner(user_id, project_id)
    runs = await service.runs.list_runs(project_id, limit=limit)
    return ApiResponse.success([_run_view(r) for r in runs])


@router.post("/api/runs/{run_id}/status")
async def set_run_status(
    run_id: str,
    body: RunStatusRequest,
    user_id: str = Depends(require_user),
    store: JobStore = Depends(get_job_store),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    run = await store.get_run(run_id)
    if run is None:
        raise ValidationError(f"Run {run_id} not found", {"runId": run_id})
    await service.require_owner(user_id, run.project_id)
    if not await service.runs.set_status(run_id, RunStatus(body.status)):
        raise InvalidTransition(f"Run {run_id} is already {run.status.value}")
    return ApiResponse.success(_run_view(await store.get_run(run_id)))
