"""Project endpoints for the calling user."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps.auth import require_user
from ..deps.providers import get_job_store
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse
from ..schemas.pipeline import ProjectCreateRequest

router = APIRouter(prefix="/api/projects", tags=["projects"])


def _project_view(rec) -> dict:
    return {"projectId": rec.id, "name": rec.name, "createdAt": rec.created_at}


@router.post("", status_code=201)
async def create_project(
    body: ProjectCreateRequest,
    user_id: str = Depends(require_user),
    store: JobStore = Depends(get_job_store),
) -> ApiResponse:
    rec = await store.create_project(user_id, body.name)
    return ApiResponse.success(_project_view(rec))


@router.get("")
async def list_projects(
    user_id: str = Depends(require_user),
    store: JobStore = Depends(get_job_store),
) -> ApiResponse:
    projects = await store.list_projects(user_id)
    return ApiResponse.success([_project_view(p) for p in projects])
