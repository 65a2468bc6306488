"""Shared test fixtures for the stagegate test suite."""
from __future__ import annotations

from typing import Any, Dict

import pytest

from stagegate.admission.collaborators import VendorConfig
from stagegate.admission.retry import RetryPolicy
from stagegate.admission.service import AdmissionRequest, AdmissionService
from stagegate.api.jobs.lifecycle import JobLifecycle
from stagegate.api.jobs.models import JobType
from stagegate.api.jobs.store import JobStore

USER = "user-1"
OTHER_USER = "user-2"

ALL_VENDORS = VendorConfig({"llm": "test-key", "image": "test-key", "video": "test-key"})

_ADJUSTABLE = (
    "MAX_RUNNING_JOBS_PER_USER",
    "MAX_JOB_ATTEMPTS",
    "RATE_LIMIT_JOBS_PER_HOUR",
    "RATE_LIMIT_JOBS_PER_DAY",
)


@pytest.fixture(autouse=True)
def _restore_runtime_config():
    """Undo any runtime patch of the adjustable config keys."""
    import stagegate.config as cfg

    snapshot = {k: getattr(cfg, k) for k in _ADJUSTABLE}
    yield
    for key, value in snapshot.items():
        setattr(cfg, key, value)


# ── Store & domain fixtures ──────────────────────────────────────────


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def project(store):
    """A GROWTH-plan user's project."""
    await store.set_user_plan(USER, "GROWTH")
    return await store.create_project(USER, "Launch video")


@pytest.fixture
def service(store):
    return AdmissionService(store, vendors=ALL_VENDORS)


@pytest.fixture
def lifecycle(store):
    return JobLifecycle(store, retry_policy=RetryPolicy(rng=lambda: 0.0, clock_ms=lambda: 1_000_000))


@pytest.fixture
def make_request():
    """Build an admission request with the attributes each stage needs by default."""

    def _make(project_id: str, stage: JobType, **kwargs: Any) -> AdmissionRequest:
        attrs: Dict[str, Any] = kwargs.pop("attrs", {})
        if stage is JobType.customer_research:
            attrs = {"productName": "Widget", "researchKind": "customer", **attrs}
        user_id = kwargs.pop("user_id", USER)
        return AdmissionRequest(stage=stage, project_id=project_id, user_id=user_id, attrs=attrs, **kwargs)

    return _make


@pytest.fixture
def finish(lifecycle):
    """Drive a PENDING job to COMPLETED with *result* as its reported output."""

    async def _finish(job_id: str, result: Dict[str, Any]):
        await lifecycle.start(job_id)
        return await lifecycle.complete(job_id, result, "done")

    return _finish


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def api_settings():
    from stagegate.api.config import ApiSettings

    return ApiSettings(
        _env_file=None,
        db_path=":memory:",
        auth_enabled=False,
        rate_limit_enabled=False,
        llm_api_key="test-key",
        image_api_key="test-key",
        video_api_key="test-key",
    )


@pytest.fixture
async def app(store, api_settings):
    """Create a test FastAPI app bound to the per-test store."""
    import stagegate.api.deps.providers as _prov
    from stagegate.api.main import create_app

    # Inject into the provider module
    _prov._job_store = store

    application = create_app(api_settings)
    yield application

    # Cleanup
    _prov._job_store = None
    _prov._admission_service = None
    _prov._lifecycle = None
    _prov._dead_letter_limiter = None
    _prov._dead_letter_bulk_limiter = None
    _prov._settings = None
    _prov.get_runtime_config.cache_clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app, identified as USER."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
        headers={"X-User-Id": USER},
    ) as ac:
        yield ac
