"""Default implementations of the collaborators admission depends on.

Each is a small seam so a deployment can swap in its own authorization,
billing, vendor registry or worker hand-off without touching the service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from ..api.jobs.models import JobRecord, ProjectRecord
from ..api.jobs.store import JobStore
from ..config_structured import PlanId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnershipDecision:
    allowed: bool
    reason: Optional[str] = None
    project: Optional[ProjectRecord] = None


class OwnershipChecker:
    """Allows a user to act on the projects they created."""

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def check(self, user_id: str, project_id: str) -> OwnershipDecision:
        project = await self._store.get_project(project_id)
        if project is None:
            return OwnershipDecision(False, "Project not found")
        if project.user_id != user_id:
            return OwnershipDecision(False, "Project belongs to another user")
        return OwnershipDecision(True, project=project)


class PlanResolver:
    """Looks up the user's billing plan, falling back to *default_plan*."""

    def __init__(self, store: JobStore, default_plan: PlanId | str = PlanId.FREE) -> None:
        self._store = store
        self.default_plan = PlanId(default_plan)

    async def plan_for(self, user_id: str) -> PlanId:
        stored = await self._store.get_user_plan(user_id)
        if stored is None:
            return self.default_plan
        try:
            return PlanId(stored)
        except ValueError:
            logger.warning("Unknown plan %r for user %s; using %s", stored, user_id, self.default_plan.value)
            return self.default_plan


class VendorConfig:
    """Which vendor families have credentials configured."""

    def __init__(self, credentials: Mapping[str, Optional[str]]) -> None:
        self._credentials = dict(credentials)

    @classmethod
    def from_settings(cls, settings: Any) -> "VendorConfig":
        return cls({
            "llm": settings.llm_api_key,
            "image": settings.image_api_key,
            "video": settings.video_api_key,
        })

    def is_configured(self, vendor: str) -> bool:
        return bool((self._credentials.get(vendor) or "").strip())


class JobDispatcher(Protocol):
    async def dispatch(self, job: JobRecord) -> None:
        ...


class PollingDispatcher:
    """Workers poll ``POST /api/jobs/claim``; dispatch only records the hand-off."""

    async def dispatch(self, job: JobRecord) -> None:
        logger.info("Job %s (%s) queued for workers", job.id, job.type.value)
