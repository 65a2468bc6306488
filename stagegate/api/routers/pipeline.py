"""Stage admission endpoints and pipeline status reads.

Admission answers 202 for a newly started job, 200 for an idempotent
replay or a dry run, and the mapped error status for a rejection.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...admission.catalog import get_stage
from ...admission.errors import ValidationError
from ...admission.service import AdmissionOutcome, AdmissionService, Admitted, Rejected
from ..deps.auth import require_user
from ..deps.providers import get_admission_service
from ..schemas.envelope import ApiResponse
from ..schemas.pipeline import (
    CustomerResearchRequest,
    ScriptGenerationRequest,
    StageRequestBase,
    StoryboardGenerationRequest,
    VideoGenerationRequest,
    VideoImageGenerationRequest,
    VideoPromptGenerationRequest,
    VideoReviewRequest,
    VideoUpscaleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipeline"])


def outcome_response(outcome: AdmissionOutcome) -> JSONResponse:
    """Render an admission outcome; rejections are raised for the error handlers."""
    if isinstance(outcome, Rejected):
        raise outcome.error
    job = outcome.job
    admitted = isinstance(outcome, Admitted)
    data = {
        "jobId": job.id,
        "runId": job.run_id,
        "status": job.status.value,
        "started": admitted and outcome.started,
        "reused": not admitted,
        "dryRun": bool(job.payload.get("dryRun")),
    }
    status_code = 202 if admitted and outcome.started else 200
    return JSONResponse(status_code=status_code, content=ApiResponse.success(data).model_dump())


async def _admit(body: StageRequestBase, user_id: str, service: AdmissionService) -> JSONResponse:
    outcome = await service.admit(body.to_admission(user_id))
    return outcome_response(outcome)


@router.post("/api/pipeline/customer-research")
async def admit_customer_research(
    body: CustomerResearchRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/script-generation")
async def admit_script_generation(
    body: ScriptGenerationRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/storyboard-generation")
async def admit_storyboard_generation(
    body: StoryboardGenerationRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/video-prompt-generation")
async def admit_video_prompt_generation(
    body: VideoPromptGenerationRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/video-image-generation")
async def admit_video_image_generation(
    body: VideoImageGenerationRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/video-generation")
async def admit_video_generation(
    body: VideoGenerationRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/video-review")
async def admit_video_review(
    body: VideoReviewRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


@router.post("/api/pipeline/video-upscale")
async def admit_video_upscale(
    body: VideoUpscaleRequest,
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
):
    return await _admit(body, user_id, service)


# ── Status reads ────────────────────────────────────────────────────


@router.get("/api/projects/{project_id}/pipeline")
async def pipeline_status(
    project_id: str,
    run_id: Optional[str] = Query(default=None, alias="runId"),
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    stages = await service.pipeline_status(user_id, project_id, run_id=run_id)
    return ApiResponse.success({"projectId": project_id, "runId": run_id, "stages": stages})


@router.get("/api/projects/{project_id}/pipeline/{stage}")
async def stage_status(
    project_id: str,
    stage: str,
    run_id: Optional[str] = Query(default=None, alias="runId"),
    user_id: str = Depends(require_user),
    service: AdmissionService = Depends(get_admission_service),
) -> ApiResponse:
    try:
        definition = get_stage(stage)
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown stage: {stage}", {"stage": stage}) from None
    job = await service.stage_status(user_id, project_id, definition.job_type, run_id=run_id)
    return ApiResponse.success({"stage": definition.job_type.value, "job": job})
