"""Admission and lifecycle error taxonomy.

Admission-time errors (``AdmissionError`` subclasses) are returned to the
caller as a rejected outcome: no job row exists and no quota stays consumed.
``InfrastructureError`` means the decision could not be evaluated at all and
the whole request is safe to retry.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AdmissionError(Exception):
    """Base class for synchronous admission rejections."""

    code = "admission_rejected"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


class Unauthorized(AdmissionError):
    code = "unauthorized"


class Forbidden(AdmissionError):
    code = "forbidden"


class ValidationError(AdmissionError):
    code = "validation_error"


class UpgradeRequired(AdmissionError):
    code = "upgrade_required"

    def __init__(self, required_plan: str) -> None:
        super().__init__(f"Upgrade required: {required_plan}", {"requiredPlan": required_plan})
        self.required_plan = required_plan


class QuotaExceeded(AdmissionError):
    code = "quota_exceeded"

    def __init__(self, metric: str, limit: int, used: int) -> None:
        super().__init__(
            f"Quota exceeded: {metric} ({used}/{limit})",
            {"metric": metric, "limit": limit, "used": used},
        )
        self.metric = metric
        self.limit = limit
        self.used = used


class ConcurrencyExceeded(AdmissionError):
    code = "concurrency_exceeded"


class RateLimitExceeded(AdmissionError):
    code = "rate_limit_exceeded"


class DependencyMissing(AdmissionError):
    code = "dependency_missing"

    def __init__(self, required_stage: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Stage {required_stage} has no completed job in scope",
            {"requiredStage": required_stage},
        )
        self.required_stage = required_stage


class ExternalServiceUnavailable(AdmissionError):
    """Vendor for the stage is not configured; fatal to this admission, not retried."""

    code = "external_service_unavailable"

    def __init__(self, vendor: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{vendor} provider is not configured", {"vendor": vendor})
        self.vendor = vendor


class InfrastructureError(Exception):
    """The store could not be reached or failed mid-operation."""


class MaxAttemptsExceeded(Exception):
    """A job used up its retry budget and is terminally FAILED."""

    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(f"Job {job_id} exceeded max attempts ({attempts})")
        self.job_id = job_id
        self.attempts = attempts


class InvalidTransition(Exception):
    """Requested status change is not an edge of the job state machine."""


class JobNotFoundError(Exception):
    """Requested job ID does not exist."""
