"""Dependency injection providers."""
from .auth import require_user, require_worker
from .providers import (
    get_admission_service,
    get_dead_letter_bulk_limiter,
    get_dead_letter_limiter,
    get_job_store,
    get_lifecycle,
    get_runtime_config,
    get_settings,
    use_settings,
)

__all__ = [
    "get_admission_service",
    "get_dead_letter_bulk_limiter",
    "get_dead_letter_limiter",
    "get_job_store",
    "get_lifecycle",
    "get_runtime_config",
    "get_settings",
    "use_settings",
    "require_user",
    "require_worker",
]
