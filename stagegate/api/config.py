"""Process settings and runtime-adjustable configuration for the API layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Set

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint.
_ADJUSTABLE_KEYS: Set[str] = {
    "MAX_RUNNING_JOBS_PER_USER",
    "MAX_JOB_ATTEMPTS",
    "RATE_LIMIT_JOBS_PER_HOUR",
    "RATE_LIMIT_JOBS_PER_DAY",
}

# Semantic validators: key -> (validator_fn, human-readable description).
# Validator returns True if the value is acceptable.
CONFIG_VALIDATORS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    "MAX_RUNNING_JOBS_PER_USER": (
        lambda v: 1 <= v <= 100,
        "Must be between 1 and 100",
    ),
    "MAX_JOB_ATTEMPTS": (
        lambda v: 1 <= v <= 20,
        "Must be between 1 and 20",
    ),
    "RATE_LIMIT_JOBS_PER_HOUR": (
        lambda v: 1 <= v <= 10_000,
        "Must be between 1 and 10000",
    ),
    "RATE_LIMIT_JOBS_PER_DAY": (
        lambda v: 1 <= v <= 100_000,
        "Must be between 1 and 100000",
    ),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    db_path: str = "stagegate.db"
    log_level: str = "INFO"

    auth_enabled: bool = True
    api_token: str = ""
    worker_token: str = ""

    rate_limit_enabled: bool = True
    sweep_mode: bool = False
    default_plan: str = "FREE"

    llm_api_key: Optional[str] = None
    image_api_key: Optional[str] = None
    video_api_key: Optional[str] = None

    model_config = {"env_prefix": "STAGEGATE_", "env_file": ".env", "extra": "ignore"}


class RuntimeConfig:
    """Thin wrapper around ``stagegate.config`` module-level variables.

    Provides get/patch semantics restricted to the adjustable whitelist.
    """

    def __init__(self) -> None:
        import stagegate.config as _cfg

        self._cfg = _cfg

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            out[key] = getattr(self._cfg, key, None)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Validate every update, then apply them all.

        Raises ``KeyError`` for unknown keys and ``ValueError`` for values
        that cannot be coerced or fail validation; nothing is applied then.
        """
        bad = set(updates) - _ADJUSTABLE_KEYS
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        staged: Dict[str, Any] = {}
        for key, value in updates.items():
            target_type = type(getattr(self._cfg, key))
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}")
            try:
                coerced = target_type(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
            validator = CONFIG_VALIDATORS.get(key)
            if validator is not None:
                check_fn, description = validator
                if not check_fn(coerced):
                    raise ValueError(f"Invalid value for {key}: {coerced!r}. {description}")
            staged[key] = coerced
        for key, coerced in staged.items():
            setattr(self._cfg, key, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()
