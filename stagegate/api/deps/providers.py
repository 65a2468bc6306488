"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache

from ..config import ApiSettings, RuntimeConfig

_settings: ApiSettings | None = None


def get_settings() -> ApiSettings:
    global _settings
    if _settings is None:
        _settings = ApiSettings()
    return _settings


def use_settings(settings: ApiSettings) -> None:
    """Make *settings* the process-wide settings; services built from the old ones are dropped."""
    global _settings, _admission_service
    _settings = settings
    _admission_service = None


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons, initialised at first call
# so the event loop is already running when async resources are needed.

_job_store = None
_admission_service = None
_lifecycle = None
_dead_letter_limiter = None
_dead_letter_bulk_limiter = None


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().db_path)
    return _job_store


def get_admission_service():
    """Return the singleton ``AdmissionService`` wired from settings."""
    global _admission_service
    if _admission_service is None:
        from ...admission.collaborators import PlanResolver, VendorConfig
        from ...admission.ratelimit import StoreRateLimiter
        from ...admission.service import AdmissionService

        settings = get_settings()
        store = get_job_store()
        _admission_service = AdmissionService(
            store,
            plans=PlanResolver(store, default_plan=settings.default_plan),
            vendors=VendorConfig.from_settings(settings),
            rate_limiter=StoreRateLimiter(store) if settings.rate_limit_enabled else None,
            sweep_mode=settings.sweep_mode,
        )
    return _admission_service


def get_lifecycle():
    """Return the singleton ``JobLifecycle``."""
    global _lifecycle
    if _lifecycle is None:
        from ..jobs.lifecycle import JobLifecycle

        _lifecycle = JobLifecycle(get_job_store())
    return _lifecycle


def get_dead_letter_limiter():
    """Process-local limiter for dead-letter actions."""
    global _dead_letter_limiter
    if _dead_letter_limiter is None:
        from ... import config
        from ...admission.ratelimit import InMemoryRateLimiter

        _dead_letter_limiter = InMemoryRateLimiter(config.DEAD_LETTER_ACTIONS_PER_MINUTE, window_s=60.0)
    return _dead_letter_limiter


def get_dead_letter_bulk_limiter():
    """Process-local limiter for bulk dead-letter actions."""
    global _dead_letter_bulk_limiter
    if _dead_letter_bulk_limiter is None:
        from ... import config
        from ...admission.ratelimit import InMemoryRateLimiter

        _dead_letter_bulk_limiter = InMemoryRateLimiter(config.DEAD_LETTER_BULK_ACTIONS_PER_MINUTE, window_s=60.0)
    return _dead_letter_bulk_limiter
