"""Tests for config validation and runtime patching."""
import pytest

import stagegate.config as cfg
from stagegate.api.config import ApiSettings, RuntimeConfig
from stagegate.config_structured import PlanId, RetryConfig, UsageMetric


def test_defaults_are_consistent():
    assert cfg.validate_config() == []
    assert cfg.MAX_RUNNING_JOBS_PER_USER == 3
    assert cfg.plan_limit(PlanId.GROWTH, UsageMetric.VIDEO_JOBS) == 25
    assert cfg.plan_limit(PlanId.SCALE, UsageMetric.IMAGE_JOBS) == 500
    assert cfg.PLAN_RANK[PlanId.FREE] < cfg.PLAN_RANK[PlanId.GROWTH] < cfg.PLAN_RANK[PlanId.SCALE]


def test_validate_flags_zero_ceiling(monkeypatch):
    monkeypatch.setattr(cfg, "MAX_RUNNING_JOBS_PER_USER", 0)
    issues = cfg.validate_config()
    assert any(i["level"] == "ERROR" and "MAX_RUNNING_JOBS_PER_USER" in i["message"] for i in issues)


def test_structured_config_rejects_bad_values():
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0)


def test_runtime_patch_coerces_and_applies():
    rc = RuntimeConfig()
    state = rc.patch({"MAX_RUNNING_JOBS_PER_USER": "5"})
    assert state["MAX_RUNNING_JOBS_PER_USER"] == 5
    assert cfg.MAX_RUNNING_JOBS_PER_USER == 5


def test_runtime_patch_is_all_or_nothing():
    rc = RuntimeConfig()
    with pytest.raises(ValueError):
        rc.patch({"MAX_JOB_ATTEMPTS": 5, "MAX_RUNNING_JOBS_PER_USER": 0})
    assert cfg.MAX_JOB_ATTEMPTS == 3


def test_runtime_patch_rejects_unknown_keys_and_bools():
    rc = RuntimeConfig()
    with pytest.raises(KeyError):
        rc.patch({"RETRY_BASE_MS": 10})
    with pytest.raises(ValueError):
        rc.patch({"MAX_JOB_ATTEMPTS": True})


def test_settings_env_prefix(monkeypatch):
    monkeypatch.setenv("STAGEGATE_SWEEP_MODE", "true")
    monkeypatch.setenv("STAGEGATE_DEFAULT_PLAN", "GROWTH")
    settings = ApiSettings(_env_file=None)
    assert settings.sweep_mode is True
    assert settings.default_plan == "GROWTH"
