"""
Central configuration for the stagegate orchestration core.

Flat-constant interface.  All values are derived from the structured config
singleton in ``config_structured.py`` so there is a single source of truth.
Components read these module attributes at call time, which is what lets
``api.config.RuntimeConfig`` patch the adjustable subset while the server
is running.

Config Status Legend
====================
  ACTIVE      — Imported and used by running code.
  ADJUSTABLE  — ACTIVE and patchable at runtime via PATCH /api/config.

Search for ``# STATUS:`` to locate all annotations.
"""
from typing import Dict

from .config_structured import PlanId, UsageMetric, get_config as _get_config

_cfg = _get_config()

# ── Admission ──────────────────────────────────────────────────────────
MAX_RUNNING_JOBS_PER_USER = _cfg.admission.max_running_jobs_per_user  # STATUS: ADJUSTABLE — admission/concurrency.py; PENDING+RUNNING ceiling across all projects

# ── Retry / backoff ────────────────────────────────────────────────────
RETRY_BASE_MS = _cfg.retry.base_ms                # STATUS: ACTIVE — admission/retry.py; first backoff step
RETRY_CAP_MS = _cfg.retry.cap_ms                  # STATUS: ACTIVE — admission/retry.py; exponential part never exceeds this
RETRY_JITTER_MS = _cfg.retry.jitter_ms            # STATUS: ACTIVE — admission/retry.py; uniform jitter in [0, RETRY_JITTER_MS)
MAX_JOB_ATTEMPTS = _cfg.retry.max_attempts        # STATUS: ADJUSTABLE — admission/retry.py; attempts > this are terminal

# ── Rate limiting ──────────────────────────────────────────────────────
RATE_LIMIT_JOBS_PER_HOUR = _cfg.rate_limit.jobs_per_hour  # STATUS: ADJUSTABLE — admission/ratelimit.py; per project
RATE_LIMIT_JOBS_PER_DAY = _cfg.rate_limit.jobs_per_day    # STATUS: ADJUSTABLE — admission/ratelimit.py; per project
DEAD_LETTER_ACTIONS_PER_MINUTE = _cfg.rate_limit.dead_letter_actions_per_minute  # STATUS: ACTIVE — api/routers/dead_letter.py; in-memory bucket
DEAD_LETTER_BULK_ACTIONS_PER_MINUTE = _cfg.rate_limit.dead_letter_bulk_actions_per_minute  # STATUS: ACTIVE — api/routers/dead_letter.py; bulk actions, separate bucket

# ── Plans ──────────────────────────────────────────────────────────────
PLAN_LIMITS: Dict[PlanId, Dict[UsageMetric, int]] = _cfg.plans.limits  # STATUS: ACTIVE — admission/quota.py
PLAN_RANK: Dict[PlanId, int] = _cfg.plans.rank                         # STATUS: ACTIVE — admission/service.py plan gate

# ── Logging ────────────────────────────────────────────────────────────
LOG_LEVEL = _cfg.logging.level                    # STATUS: ACTIVE — api/main.py; "DEBUG", "INFO", "WARNING", "ERROR"
LOG_FORMAT = _cfg.logging.format.value            # STATUS: ACTIVE — api/main.py; "structured" or "json"


def plan_limit(plan: PlanId, metric: UsageMetric) -> int:
    """Monthly limit for *metric* under *plan*; unknown plans fall back to FREE."""
    limits = PLAN_LIMITS.get(plan) or PLAN_LIMITS[PlanId.FREE]
    return int(limits.get(metric, 0))


def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup and available via /api/config/validate.
    """
    issues = []

    if MAX_RUNNING_JOBS_PER_USER < 1:
        issues.append({
            "level": "ERROR",
            "message": (
                f"MAX_RUNNING_JOBS_PER_USER={MAX_RUNNING_JOBS_PER_USER} rejects every admission. "
                "Set it to 1 or more."
            ),
        })

    if MAX_JOB_ATTEMPTS < 1:
        issues.append({
            "level": "ERROR",
            "message": f"MAX_JOB_ATTEMPTS={MAX_JOB_ATTEMPTS} must be at least 1.",
        })

    if RETRY_BASE_MS * 2 ** max(MAX_JOB_ATTEMPTS - 1, 0) > RETRY_CAP_MS:
        issues.append({
            "level": "WARNING",
            "message": (
                f"Backoff reaches RETRY_CAP_MS={RETRY_CAP_MS} before MAX_JOB_ATTEMPTS={MAX_JOB_ATTEMPTS}; "
                "later retries all wait the capped delay."
            ),
        })

    if RATE_LIMIT_JOBS_PER_DAY < RATE_LIMIT_JOBS_PER_HOUR:
        issues.append({
            "level": "WARNING",
            "message": (
                f"RATE_LIMIT_JOBS_PER_DAY={RATE_LIMIT_JOBS_PER_DAY} is below "
                f"RATE_LIMIT_JOBS_PER_HOUR={RATE_LIMIT_JOBS_PER_HOUR}; the hourly window never binds."
            ),
        })

    for plan in PlanId:
        if plan not in PLAN_LIMITS:
            issues.append({
                "level": "WARNING",
                "message": f"PLAN_LIMITS has no entry for {plan.value}; FREE limits will apply.",
            })

    return issues
