"""Run lineage and predecessor-stage gating."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..api.jobs.models import JobRecord, JobStatus, JobType, RunRecord, RunStatus
from ..api.jobs.store import JobStore
from .catalog import StageDefinition
from .errors import DependencyMissing, ValidationError

logger = logging.getLogger(__name__)


class RunRegistry:
    """Groups jobs into runs and finds the latest completed job in a scope."""

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def resolve_run(self, project_id: str, requested_run_id: str | None = None) -> RunRecord:
        """Validate *requested_run_id* against the project, or start a new run.

        Raises
        ------
        ValidationError
            If the run does not exist, belongs to another project, or is no
            longer IN_PROGRESS.
        """
        if requested_run_id is None:
            return await self.start_run(project_id)
        run = await self._store.get_run(requested_run_id)
        if run is None or run.project_id != project_id:
            raise ValidationError(
                f"Run {requested_run_id} does not belong to project {project_id}",
                {"runId": requested_run_id},
            )
        if run.status is not RunStatus.IN_PROGRESS:
            raise ValidationError(
                f"Run {requested_run_id} is {run.status.value}",
                {"runId": requested_run_id, "runStatus": run.status.value},
            )
        return run

    async def start_run(self, project_id: str) -> RunRecord:
        run = await self._store.create_run(project_id)
        logger.info("Started run %s for project %s", run.id, project_id)
        return run

    async def abandon(self, run_id: str) -> bool:
        """Mark an IN_PROGRESS run ABANDONED.  False if it had already moved on."""
        return await self._store.update_run_status(run_id, RunStatus.ABANDONED, expected=RunStatus.IN_PROGRESS)

    async def set_status(self, run_id: str, status: RunStatus) -> bool:
        """Close an IN_PROGRESS run as COMPLETE or ABANDONED."""
        if status is RunStatus.IN_PROGRESS:
            raise ValidationError("A run cannot be reopened", {"runId": run_id})
        return await self._store.update_run_status(run_id, status, expected=RunStatus.IN_PROGRESS)

    async def list_runs(self, project_id: str, limit: int = 50) -> List[RunRecord]:
        return await self._store.list_runs(project_id, limit=limit)

    async def latest_completed(
        self,
        project_id: str,
        job_type: JobType,
        run_id: str | None = None,
        payload_filter: Dict[str, Any] | None = None,
    ) -> Optional[JobRecord]:
        """Most recent COMPLETED job of *job_type*, in the run or project-wide.  Dry runs never count."""
        return await self._store.latest_job(
            project_id,
            job_type,
            run_id=run_id,
            status=JobStatus.COMPLETED,
            payload_filter=payload_filter,
            include_dry_runs=False,
        )


@dataclass(frozen=True)
class Upstream:
    """The predecessor job a new stage builds on, and the artifact it feeds in."""

    job: JobRecord
    artifact: str
    artifact_id: Any

    @property
    def run_id(self) -> Optional[str]:
        return self.job.run_id


class PipelineGate:
    """A stage is runnable iff its predecessor has a COMPLETED job in scope."""

    def __init__(self, registry: RunRegistry) -> None:
        self._registry = registry

    async def resolve(
        self,
        stage: StageDefinition,
        project_id: str,
        *,
        run_id: str | None = None,
        artifact_id: Any = None,
    ) -> Optional[Upstream]:
        """Find the predecessor job for *stage*; None for entry stages.

        When the caller names a specific upstream artifact (*artifact_id*),
        only a completed predecessor that produced it qualifies.

        Raises
        ------
        DependencyMissing
            If no qualifying predecessor job has completed, or the one found
            reported no artifact.
        """
        if stage.is_entry:
            return None
        required = stage.predecessor.value
        payload_filter = dict(stage.predecessor_filter)
        if artifact_id is not None:
            payload_filter[f"result.{stage.consumes}"] = artifact_id

        job = await self._registry.latest_completed(
            project_id, stage.predecessor, run_id=run_id, payload_filter=payload_filter or None
        )
        if job is None:
            scope = f"run {run_id}" if run_id else f"project {project_id}"
            raise DependencyMissing(
                required,
                f"{stage.job_type.value} requires a completed {required} job in {scope}",
            )

        produced = (job.payload.get("result") or {}).get(stage.consumes)
        if produced is None:
            raise DependencyMissing(
                required,
                f"Completed {required} job {job.id} reported no {stage.consumes}",
            )
        return Upstream(job=job, artifact=stage.consumes, artifact_id=produced)
