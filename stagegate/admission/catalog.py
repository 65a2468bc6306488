"""Static description of pipeline stages.

Each stage declares the stage that must have completed before it may run,
the upstream artifact it consumes, the artifact it produces, the usage
metric it reserves, the vendor it calls, and the minimum plan.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..api.jobs.models import JobType
from ..config_structured import PlanId, UsageMetric


@dataclass(frozen=True)
class StageDefinition:
    """
    One job type in the pipeline.

    Attributes:
        job_type: Catalog key, also the ``jobs.type`` column value.
        predecessor: Stage that must have a COMPLETED job in scope, or None
            for entry stages.
        consumes: Name of the predecessor artifact fed into this stage.
        produces: Name of the artifact this stage reports on completion.
        metric: Usage metric reserved per admission, or None if unmetered.
        vendor: External provider family the stage calls.
        min_plan: Lowest plan allowed to run the stage.
        predecessor_filter: Extra payload equality filter applied when
            resolving the predecessor (disambiguates subtypes that share a
            catalog type).
    """

    job_type: JobType
    predecessor: Optional[JobType]
    consumes: Optional[str]
    produces: str
    metric: Optional[UsageMetric]
    vendor: str
    min_plan: PlanId = PlanId.GROWTH
    predecessor_filter: Mapping[str, Any] = field(default_factory=dict)
    quota_amount: int = 1

    @property
    def slug(self) -> str:
        """URL form of the stage name (``storyboard-generation``)."""
        return self.job_type.value.replace("_", "-")

    @property
    def is_entry(self) -> bool:
        return self.predecessor is None


STAGE_CATALOG: Dict[JobType, StageDefinition] = {
    JobType.customer_research: StageDefinition(
        job_type=JobType.customer_research,
        predecessor=None,
        consumes=None,
        produces="researchId",
        metric=UsageMetric.RESEARCH_QUERIES,
        vendor="llm",
    ),
    JobType.script_generation: StageDefinition(
        job_type=JobType.script_generation,
        predecessor=JobType.customer_research,
        consumes="researchId",
        produces="scriptId",
        metric=UsageMetric.RESEARCH_QUERIES,
        vendor="llm",
        predecessor_filter={"researchKind": "customer"},
    ),
    JobType.storyboard_generation: StageDefinition(
        job_type=JobType.storyboard_generation,
        predecessor=JobType.script_generation,
        consumes="scriptId",
        produces="storyboardId",
        metric=UsageMetric.RESEARCH_QUERIES,
        vendor="llm",
    ),
    JobType.video_prompt_generation: StageDefinition(
        job_type=JobType.video_prompt_generation,
        predecessor=JobType.storyboard_generation,
        consumes="storyboardId",
        produces="promptSetId",
        metric=UsageMetric.RESEARCH_QUERIES,
        vendor="llm",
    ),
    JobType.video_image_generation: StageDefinition(
        job_type=JobType.video_image_generation,
        predecessor=JobType.video_prompt_generation,
        consumes="promptSetId",
        produces="imageSetId",
        metric=UsageMetric.IMAGE_JOBS,
        vendor="image",
    ),
    JobType.video_generation: StageDefinition(
        job_type=JobType.video_generation,
        predecessor=JobType.video_image_generation,
        consumes="imageSetId",
        produces="videoId",
        metric=UsageMetric.VIDEO_JOBS,
        vendor="video",
    ),
    JobType.video_review: StageDefinition(
        job_type=JobType.video_review,
        predecessor=JobType.video_generation,
        consumes="videoId",
        produces="reviewId",
        metric=None,
        vendor="llm",
    ),
    JobType.video_upscale: StageDefinition(
        job_type=JobType.video_upscale,
        predecessor=JobType.video_generation,
        consumes="videoId",
        produces="upscaledVideoId",
        metric=UsageMetric.VIDEO_JOBS,
        vendor="video",
        min_plan=PlanId.SCALE,
    ),
}


def get_stage(job_type: JobType | str) -> StageDefinition:
    """Look up a stage by enum, value (``video_generation``) or slug (``video-generation``)."""
    if isinstance(job_type, str) and not isinstance(job_type, JobType):
        job_type = JobType(job_type.replace("-", "_"))
    return STAGE_CATALOG[job_type]


def pipeline_order() -> List[StageDefinition]:
    """Stages in catalog (pipeline) order."""
    return list(STAGE_CATALOG.values())
