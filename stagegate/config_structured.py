"""
Structured configuration for the stagegate orchestration core using typed dataclasses.

This is the AUTHORITATIVE source of truth for all domain configuration values.
``config.py`` re-exports them as flat constants so they can be patched at runtime.

Each subsystem gets its own dataclass.

Usage:
    from stagegate.config_structured import get_config
    cfg = get_config()
    cfg.admission.max_running_jobs_per_user
    cfg.retry.cap_ms
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class PlanId(str, Enum):
    """Billing plans, ordered by rank in ``PlanConfig.rank``."""
    FREE = "FREE"
    GROWTH = "GROWTH"
    SCALE = "SCALE"


class UsageMetric(str, Enum):
    """Per-period usage counters a stage may consume."""
    RESEARCH_QUERIES = "researchQueries"
    VIDEO_JOBS = "videoJobs"
    IMAGE_JOBS = "imageJobs"


class LogFormat(Enum):
    STRUCTURED = "structured"
    JSON = "json"


@dataclass
class AdmissionConfig:
    """Per-user in-flight ceiling enforced before any job row is created."""
    max_running_jobs_per_user: int = 3

    def __post_init__(self):
        if self.max_running_jobs_per_user < 1:
            raise ValueError(
                f"max_running_jobs_per_user must be >= 1, got {self.max_running_jobs_per_user}"
            )


@dataclass
class RetryConfig:
    """Exponential backoff for failed job attempts.

    delay = min(cap_ms, base_ms * 2 ** (attempt - 1)) + uniform[0, jitter_ms)
    """
    base_ms: int = 1000
    cap_ms: int = 60_000
    jitter_ms: int = 250
    max_attempts: int = 3

    def __post_init__(self):
        if self.base_ms <= 0 or self.cap_ms < self.base_ms:
            raise ValueError(
                f"Invalid backoff window base_ms={self.base_ms} cap_ms={self.cap_ms}"
            )
        if self.jitter_ms < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {self.jitter_ms}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


@dataclass
class RateLimitConfig:
    """Per-project job creation windows and the in-memory dead-letter buckets."""
    jobs_per_hour: int = 10
    jobs_per_day: int = 50
    dead_letter_actions_per_minute: int = 20
    dead_letter_bulk_actions_per_minute: int = 3


@dataclass
class PlanConfig:
    """Monthly limits per plan and the ordering used by the plan gate."""
    limits: Dict[PlanId, Dict[UsageMetric, int]] = field(default_factory=lambda: {
        PlanId.FREE: {
            UsageMetric.RESEARCH_QUERIES: 0,
            UsageMetric.VIDEO_JOBS: 0,
            UsageMetric.IMAGE_JOBS: 0,
        },
        PlanId.GROWTH: {
            UsageMetric.RESEARCH_QUERIES: 10,
            UsageMetric.VIDEO_JOBS: 25,
            UsageMetric.IMAGE_JOBS: 100,
        },
        PlanId.SCALE: {
            UsageMetric.RESEARCH_QUERIES: 30,
            UsageMetric.VIDEO_JOBS: 120,
            UsageMetric.IMAGE_JOBS: 500,
        },
    })
    rank: Dict[PlanId, int] = field(default_factory=lambda: {
        PlanId.FREE: 0,
        PlanId.GROWTH: 1,
        PlanId.SCALE: 2,
    })


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = LogFormat.STRUCTURED

    def __post_init__(self):
        if isinstance(self.format, str):
            self.format = LogFormat(self.format)


@dataclass
class SystemConfig:
    """Top-level configuration aggregating all subsystems."""

    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    plans: PlanConfig = field(default_factory=PlanConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ── Module-level singleton ──────────────────────────────────────────

_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Return the singleton SystemConfig instance.

    On first call, instantiates the default SystemConfig. Subsequent
    calls return the same instance so all callers share one source of
    truth.
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SystemConfig()
    return _CONFIG
