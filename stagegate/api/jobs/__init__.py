"""SQLite-backed job, run and usage persistence."""
from .models import JobRecord, JobStatus, JobType, RunRecord, RunStatus
from .store import JobStore

__all__ = ["JobRecord", "JobStatus", "JobStore", "JobType", "RunRecord", "RunStatus"]
