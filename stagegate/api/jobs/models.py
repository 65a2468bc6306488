"""Job, run and quota data models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobType(str, enum.Enum):
    customer_research = "customer_research"
    script_generation = "script_generation"
    storyboard_generation = "storyboard_generation"
    video_prompt_generation = "video_prompt_generation"
    video_image_generation = "video_image_generation"
    video_generation = "video_generation"
    video_review = "video_review"
    video_upscale = "video_upscale"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class RunStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ABANDONED = "ABANDONED"


class ReservationState(str, enum.Enum):
    reserved = "reserved"
    consumed = "consumed"
    rolled_back = "rolled_back"


class JobRecord(BaseModel):
    """Persistent representation of one unit of pipeline work."""

    id: str
    project_id: str
    user_id: Optional[str] = None
    run_id: Optional[str] = None
    type: JobType
    status: JobStatus = JobStatus.PENDING
    idempotency_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    result_summary: Optional[str] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_status(self) -> Dict[str, Any]:
        """Polling view: identity, status and timestamps only."""
        return {
            "jobId": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "runId": self.run_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "error": self.error,
        }


class RunRecord(BaseModel):
    """Lineage grouping of jobs from one end-to-end pipeline execution."""

    id: str
    project_id: str
    status: RunStatus = RunStatus.IN_PROGRESS
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)


class ProjectRecord(BaseModel):
    id: str
    user_id: str
    name: str = ""
    created_at: str = Field(default_factory=utcnow)


class QuotaReservation(BaseModel):
    """Capacity consumed by one job attempt; rolled back at most once."""

    id: str
    user_id: str
    period_key: str
    metric: str
    amount: int
    state: ReservationState = ReservationState.reserved
    job_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "periodKey": self.period_key,
            "metric": self.metric,
            "amount": self.amount,
        }
