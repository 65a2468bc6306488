"""Request bodies for stage admission and worker outcome reports.

Each stage has its own validated body; ``stage`` is the discriminator of
the :data:`StageRequest` union.  Unknown fields are rejected.
"""
from __future__ import annotations

from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...admission.service import AdmissionRequest
from ..jobs.models import JobType

_BASE_FIELDS = {"stage", "project_id", "run_id", "attempt_key", "dry_run"}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class StageRequestBase(_CamelModel):
    """Fields shared by every stage's admission request."""

    project_id: str = Field(min_length=1)
    run_id: Optional[str] = None
    attempt_key: Optional[str] = Field(default=None, max_length=128)
    dry_run: bool = False

    # Fields naming upstream artifacts; everything else is a stage attribute.
    ref_fields: ClassVar[Tuple[str, ...]] = ()

    def to_admission(self, user_id: str) -> AdmissionRequest:
        refs = {
            to_camel(name): getattr(self, name)
            for name in self.ref_fields
            if getattr(self, name) is not None
        }
        attrs = self.model_dump(
            by_alias=True,
            exclude=_BASE_FIELDS | set(self.ref_fields),
            exclude_none=True,
        )
        return AdmissionRequest(
            stage=JobType(self.stage),
            project_id=self.project_id,
            user_id=user_id,
            run_id=self.run_id,
            refs=refs,
            attrs=attrs,
            attempt_key=self.attempt_key,
            dry_run=self.dry_run,
        )


class CustomerResearchRequest(StageRequestBase):
    """Request body for POST /api/pipeline/customer-research."""

    stage: Literal["customer_research"] = "customer_research"
    product_name: str = Field(min_length=1, max_length=200)
    product_url: Optional[str] = None
    research_kind: Literal["customer", "competitor"] = "customer"


class ScriptGenerationRequest(StageRequestBase):
    """Request body for POST /api/pipeline/script-generation."""

    stage: Literal["script_generation"] = "script_generation"
    research_id: Optional[str] = None
    tone: Optional[str] = None
    duration_seconds: int = Field(default=30, ge=5, le=180)

    ref_fields: ClassVar[Tuple[str, ...]] = ("research_id",)


class StoryboardGenerationRequest(StageRequestBase):
    """Request body for POST /api/pipeline/storyboard-generation."""

    stage: Literal["storyboard_generation"] = "storyboard_generation"
    script_id: Optional[str] = None
    scene_count: Optional[int] = Field(default=None, ge=1, le=20)

    ref_fields: ClassVar[Tuple[str, ...]] = ("script_id",)


class VideoPromptGenerationRequest(StageRequestBase):
    stage: Literal["video_prompt_generation"] = "video_prompt_generation"
    storyboard_id: Optional[str] = None

    ref_fields: ClassVar[Tuple[str, ...]] = ("storyboard_id",)


class VideoImageGenerationRequest(StageRequestBase):
    stage: Literal["video_image_generation"] = "video_image_generation"
    prompt_set_id: Optional[str] = None
    aspect_ratio: Literal["9:16", "1:1", "16:9"] = "9:16"

    ref_fields: ClassVar[Tuple[str, ...]] = ("prompt_set_id",)


class VideoGenerationRequest(StageRequestBase):
    stage: Literal["video_generation"] = "video_generation"
    image_set_id: Optional[str] = None
    aspect_ratio: Literal["9:16", "1:1", "16:9"] = "9:16"

    ref_fields: ClassVar[Tuple[str, ...]] = ("image_set_id",)


class VideoReviewRequest(StageRequestBase):
    stage: Literal["video_review"] = "video_review"
    video_id: Optional[str] = None

    ref_fields: ClassVar[Tuple[str, ...]] = ("video_id",)


class VideoUpscaleRequest(StageRequestBase):
    stage: Literal["video_upscale"] = "video_upscale"
    video_id: Optional[str] = None
    target_resolution: Literal["1080p", "4k"] = "1080p"

    ref_fields: ClassVar[Tuple[str, ...]] = ("video_id",)


StageRequest = Annotated[
    Union[
        CustomerResearchRequest,
        ScriptGenerationRequest,
        StoryboardGenerationRequest,
        VideoPromptGenerationRequest,
        VideoImageGenerationRequest,
        VideoGenerationRequest,
        VideoReviewRequest,
        VideoUpscaleRequest,
    ],
    Field(discriminator="stage"),
]


# ── Projects & runs ────────────────────────────────────────────────


class ProjectCreateRequest(_CamelModel):
    name: str = Field(default="", max_length=200)


class RunStatusRequest(_CamelModel):
    status: Literal["COMPLETE", "ABANDONED"]


# ── Worker reports ─────────────────────────────────────────────────


class ClaimRequest(_CamelModel):
    job_types: Optional[list[JobType]] = None


class CompleteRequest(_CamelModel):
    """Worker report that a RUNNING job finished.  ``result`` carries the produced artifact ids."""

    result: Dict[str, Any] = Field(default_factory=dict)
    summary: Optional[str] = None


class FailRequest(_CamelModel):
    error: str = Field(min_length=1)
    retryable: bool = False
    refund_quota: bool = True


# ── Dead letter ─────────────────────────────────────────────────────


class DeadLetterBulkRequest(_CamelModel):
    """Bulk action over a project's dead letters; ``job_ids`` narrows it to those jobs."""

    action: Literal["dismiss_all"]
    job_ids: Optional[list[str]] = Field(default=None, max_length=500)
