"""Tests for key derivation, find-or-create and supersession."""
import asyncio

import pytest

from stagegate.admission.errors import ConcurrencyExceeded
from stagegate.admission.idempotency import (
    SUPERSEDED_MARKER,
    IdempotencyResolver,
    derive_idempotency_key,
    supersede_key,
)
from stagegate.api.jobs.models import JobStatus, JobType


def test_key_is_deterministic_and_order_independent():
    a = derive_idempotency_key("p1", JobType.storyboard_generation, run_id="r1", refs={"scriptId": "S1", "x": 1})
    b = derive_idempotency_key("p1", JobType.storyboard_generation, run_id="r1", refs={"x": 1, "scriptId": "S1"})
    assert a == b
    assert a.startswith("storyboard_generation:")


@pytest.mark.parametrize(
    "change",
    [
        {"project_id": "p2"},
        {"run_id": "r2"},
        {"refs": {"scriptId": "S2"}},
        {"attrs": {"sceneCount": 4}},
        {"attempt": "retry-1"},
    ],
)
def test_any_differing_attribute_changes_the_key(change):
    base = {"project_id": "p1", "run_id": "r1", "refs": {"scriptId": "S1"}, "attrs": {}, "attempt": None}
    varied = {**base, **change}
    k1 = derive_idempotency_key(base["project_id"], JobType.storyboard_generation, run_id=base["run_id"],
                                refs=base["refs"], attrs=base["attrs"], attempt=base["attempt"])
    k2 = derive_idempotency_key(varied["project_id"], JobType.storyboard_generation, run_id=varied["run_id"],
                                refs=varied["refs"], attrs=varied["attrs"], attempt=varied["attempt"])
    assert k1 != k2


def test_stage_is_part_of_the_key():
    assert derive_idempotency_key("p1", JobType.video_review) != derive_idempotency_key("p1", JobType.video_upscale)


def test_supersede_key_derivation():
    assert supersede_key("k", "job1") == f"k{SUPERSEDED_MARKER}job1"


@pytest.mark.asyncio
async def test_find_or_create_then_reuse(store, project):
    resolver = IdempotencyResolver(store)
    first = await resolver.find_or_create(project.id, JobType.customer_research, "K", {"a": 1}, user_id="user-1")
    second = await resolver.find_or_create(project.id, JobType.customer_research, "K", {"a": 2}, user_id="user-1")
    assert first.created is True
    assert second.created is False
    assert second.job.id == first.job.id
    assert second.job.payload["a"] == 1
    assert first.job.payload["idempotencyKey"] == "K"


@pytest.mark.asyncio
async def test_concurrent_find_or_create_converges_on_one_row(store, project):
    resolver = IdempotencyResolver(store)
    results = await asyncio.gather(*[
        resolver.find_or_create(project.id, JobType.customer_research, "K", {}) for _ in range(5)
    ])
    assert sum(r.created for r in results) == 1
    assert len({r.job.id for r in results}) == 1
    assert len(await store.list_jobs(project.id)) == 1


@pytest.mark.asyncio
async def test_failed_holder_is_superseded(store, project):
    resolver = IdempotencyResolver(store)
    old = (await resolver.find_or_create(project.id, JobType.customer_research, "K", {})).job
    await store.transition_job(old.id, JobStatus.PENDING, JobStatus.FAILED, error="boom")

    fresh = await resolver.find_or_create(project.id, JobType.customer_research, "K", {})
    assert fresh.created is True
    assert fresh.superseded_job_id == old.id

    moved = await store.get_job(old.id)
    assert moved.idempotency_key == supersede_key("K", old.id)
    assert moved.payload["supersededKey"] == "K"
    holder = await store.get_job_by_key(project.id, JobType.customer_research, "K")
    assert holder.id == fresh.job.id


@pytest.mark.asyncio
async def test_supersede_rejects_non_failed_jobs(store, project):
    resolver = IdempotencyResolver(store)
    job = (await resolver.find_or_create(project.id, JobType.customer_research, "K", {})).job
    with pytest.raises(ValueError):
        await resolver.supersede(job)


@pytest.mark.asyncio
async def test_supersede_twice_is_a_noop(store, project):
    resolver = IdempotencyResolver(store)
    job = (await resolver.find_or_create(project.id, JobType.customer_research, "K", {})).job
    await store.transition_job(job.id, JobStatus.PENDING, JobStatus.FAILED, error="boom")
    failed = await store.get_job(job.id)
    assert await resolver.supersede(failed) == supersede_key("K", job.id)
    assert await resolver.supersede(failed) is None


@pytest.mark.asyncio
async def test_ceiling_refuses_new_keys_but_returns_live_holder(store, project):
    resolver = IdempotencyResolver(store)
    first = await resolver.find_or_create(project.id, JobType.customer_research, "K", {}, active_ceiling=1)
    assert first.created

    again = await resolver.find_or_create(project.id, JobType.customer_research, "K", {}, active_ceiling=1)
    assert again.created is False
    assert again.job.id == first.job.id

    with pytest.raises(ConcurrencyExceeded):
        await resolver.find_or_create(project.id, JobType.customer_research, "K2", {}, active_ceiling=1)
    assert await store.get_job_by_key(project.id, JobType.customer_research, "K2") is None
