"""Tests for end-to-end admission decisions."""
import asyncio
import sqlite3

import pytest

from stagegate.admission.collaborators import VendorConfig
from stagegate.admission.errors import (
    ConcurrencyExceeded,
    DependencyMissing,
    ExternalServiceUnavailable,
    Forbidden,
    InfrastructureError,
    QuotaExceeded,
    RateLimitExceeded,
    UpgradeRequired,
    ValidationError,
)
from stagegate.admission.idempotency import SUPERSEDED_MARKER
from stagegate.admission.quota import QuotaLedger
from stagegate.admission.ratelimit import StoreRateLimiter
from stagegate.admission.service import AdmissionService, Admitted, Rejected, Reused
from stagegate.api.jobs.models import JobStatus, JobType, ReservationState, RunStatus
from stagegate.config_structured import PlanId, UsageMetric


async def _usage(store, metric=UsageMetric.RESEARCH_QUERIES):
    return await QuotaLedger(store).usage("user-1", metric)


async def _script_ready_run(store, service, finish, make_request, project):
    """A run whose research and script stages have completed."""
    research = await service.admit(make_request(project.id, JobType.customer_research))
    run_id = research.job.run_id
    await finish(research.job.id, {"researchId": "R1"})
    script = await service.admit(make_request(project.id, JobType.script_generation, run_id=run_id))
    assert isinstance(script, Admitted)
    await finish(script.job.id, {"scriptId": "S1"})
    return run_id


@pytest.mark.asyncio
async def test_entry_stage_creates_run_and_pending_job(store, project, service, make_request):
    outcome = await service.admit(make_request(project.id, JobType.customer_research))
    assert isinstance(outcome, Admitted)
    assert outcome.started is True
    job = outcome.job
    assert job.status is JobStatus.PENDING
    assert job.run_id is not None
    assert (await store.get_run(job.run_id)).status is RunStatus.IN_PROGRESS
    assert job.payload["productName"] == "Widget"
    assert job.payload["quotaReservation"]["metric"] == "researchQueries"
    assert await _usage(store) == 1


@pytest.mark.asyncio
async def test_replay_is_reused_without_new_quota(store, project, service, make_request):
    req = make_request(project.id, JobType.customer_research)
    first = await service.admit(req)
    second = await service.admit(req)
    assert isinstance(second, Reused)
    assert second.job.id == first.job.id
    assert await _usage(store) == 1
    assert len(await store.list_jobs(project.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_replay_converges(store, project, service, make_request):
    run = await store.create_run(project.id)
    req = make_request(project.id, JobType.customer_research, run_id=run.id)
    outcomes = await asyncio.gather(*[service.admit(req) for _ in range(2)])

    assert sorted(type(o).__name__ for o in outcomes) == ["Admitted", "Reused"]
    assert outcomes[0].job.id == outcomes[1].job.id
    assert len(await store.list_jobs(project.id)) == 1
    assert await _usage(store) == 1


@pytest.mark.asyncio
async def test_concurrent_replay_without_run_abandons_loser_run(store, project, service, make_request):
    req = make_request(project.id, JobType.customer_research)
    outcomes = await asyncio.gather(*[service.admit(req) for _ in range(3)])

    job_ids = {o.job.id for o in outcomes}
    assert len(job_ids) == 1
    runs = await store.list_runs(project.id)
    winner_run = outcomes[0].job.run_id
    for run in runs:
        expected = RunStatus.IN_PROGRESS if run.id == winner_run else RunStatus.ABANDONED
        assert run.status is expected
    assert await _usage(store) == 1


@pytest.mark.asyncio
async def test_different_attributes_are_distinct_jobs(store, project, service, make_request):
    a = await service.admit(make_request(project.id, JobType.customer_research))
    b = await service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": "Gadget"}))
    c = await service.admit(make_request(project.id, JobType.customer_research, attempt_key="again"))
    assert len({a.job.id, b.job.id, c.job.id}) == 3


@pytest.mark.asyncio
async def test_concurrency_ceiling_rejects_and_creates_nothing(store, project, service, make_request):
    for name in ("A", "B", "C"):
        assert isinstance(
            await service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": name})),
            Admitted,
        )
    outcome = await service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": "D"}))
    assert isinstance(outcome, Rejected)
    assert isinstance(outcome.error, ConcurrencyExceeded)
    assert len(await store.list_jobs(project.id)) == 3
    assert await _usage(store) == 3


@pytest.mark.asyncio
async def test_pipeline_gating(store, project, service, finish, make_request):
    research = await service.admit(make_request(project.id, JobType.customer_research))
    run_id = research.job.run_id
    await finish(research.job.id, {"researchId": "R1"})

    script = await service.admit(make_request(project.id, JobType.script_generation, run_id=run_id))
    blocked = await service.admit(make_request(project.id, JobType.storyboard_generation, run_id=run_id))
    assert isinstance(blocked, Rejected)
    assert isinstance(blocked.error, DependencyMissing)
    assert blocked.error.required_stage == "script_generation"

    await finish(script.job.id, {"scriptId": "S1"})
    storyboard = await service.admit(make_request(project.id, JobType.storyboard_generation, run_id=run_id))
    assert isinstance(storyboard, Admitted)
    assert storyboard.job.run_id == run_id
    assert storyboard.job.payload["scriptId"] == "S1"
    assert storyboard.job.payload["upstreamJobId"] == script.job.id


@pytest.mark.asyncio
async def test_non_entry_stage_without_run_inherits_predecessor_run(store, project, service, finish, make_request):
    run_id = await _script_ready_run(store, service, finish, make_request, project)
    outcome = await service.admit(make_request(project.id, JobType.storyboard_generation))
    assert isinstance(outcome, Admitted)
    assert outcome.job.run_id == run_id


@pytest.mark.asyncio
async def test_explicit_run_must_belong_to_project(store, project, service, make_request):
    other = await store.create_project("user-1", "Other")
    foreign = await store.create_run(other.id)
    outcome = await service.admit(make_request(project.id, JobType.customer_research, run_id=foreign.id))
    assert isinstance(outcome.error, ValidationError)


@pytest.mark.asyncio
async def test_supersession_after_failure(store, project, service, lifecycle, make_request):
    req = make_request(project.id, JobType.customer_research)
    first = await service.admit(req)
    await lifecycle.fail(first.job.id, "vendor error")
    key = first.job.idempotency_key

    retry = await service.admit(req)
    assert isinstance(retry, Admitted)
    assert retry.job.id != first.job.id
    assert retry.job.idempotency_key == key

    old = await store.get_job(first.job.id)
    assert old.idempotency_key != key
    assert SUPERSEDED_MARKER in old.idempotency_key
    holders = [j for j in await store.list_jobs(project.id) if j.idempotency_key == key]
    assert [j.id for j in holders] == [retry.job.id]
    assert await _usage(store) == 1


@pytest.mark.asyncio
async def test_ownership_is_checked_first(store, project, service, make_request):
    outcome = await service.admit(make_request(project.id, JobType.customer_research, user_id="user-2"))
    assert isinstance(outcome.error, Forbidden)
    outcome = await service.admit(make_request("missing", JobType.customer_research))
    assert isinstance(outcome.error, Forbidden)


@pytest.mark.asyncio
async def test_plan_gate(store, project, service, make_request):
    free = await store.create_project("user-3", "Free tier")
    outcome = await service.admit(make_request(free.id, JobType.customer_research, user_id="user-3"))
    assert isinstance(outcome.error, UpgradeRequired)
    assert outcome.error.details == {"requiredPlan": "GROWTH"}

    upscale = await service.admit(make_request(project.id, JobType.video_upscale))
    assert isinstance(upscale.error, UpgradeRequired)
    assert upscale.error.required_plan == "SCALE"


@pytest.mark.asyncio
async def test_quota_exceeded_creates_nothing(store, project, service, make_request):
    ledger = QuotaLedger(store)
    for _ in range(10):
        await ledger.reserve("user-1", PlanId.GROWTH, UsageMetric.RESEARCH_QUERIES)
    outcome = await service.admit(make_request(project.id, JobType.customer_research))
    assert isinstance(outcome.error, QuotaExceeded)
    assert outcome.error.details["limit"] == 10
    assert await store.list_jobs(project.id) == []
    # the lazily-created run is never started for a rejected request
    assert await store.list_runs(project.id) == []


@pytest.mark.asyncio
async def test_vendor_not_configured(store, project, make_request):
    service = AdmissionService(store, vendors=VendorConfig({"llm": ""}))
    outcome = await service.admit(make_request(project.id, JobType.customer_research))
    assert isinstance(outcome.error, ExternalServiceUnavailable)
    assert outcome.error.vendor == "llm"
    assert await _usage(store) == 0


@pytest.mark.asyncio
async def test_rate_limit(store, project, make_request):
    service = AdmissionService(
        store,
        vendors=VendorConfig({"llm": "k"}),
        rate_limiter=StoreRateLimiter(store, per_hour=1, per_day=10),
    )
    assert isinstance(await service.admit(make_request(project.id, JobType.customer_research)), Admitted)
    outcome = await service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": "B"}))
    assert isinstance(outcome.error, RateLimitExceeded)


@pytest.mark.asyncio
async def test_dry_run_is_a_faithful_rehearsal(store, project, make_request):
    service = AdmissionService(store, vendors=VendorConfig({}))
    outcome = await service.admit(make_request(project.id, JobType.customer_research, dry_run=True))

    assert isinstance(outcome, Admitted)
    assert outcome.dry_run is True
    assert outcome.started is False
    job = outcome.job
    assert job.status is JobStatus.COMPLETED
    assert job.payload["skipped"] is True
    assert job.payload["result"] == {"skipped": True, "reason": "dry run"}
    assert await _usage(store) == 0
    reservation = await store.get_reservation(job.payload["quotaReservation"]["id"])
    assert reservation.state is ReservationState.rolled_back

    # A dry run never satisfies the real request's key.
    real = await AdmissionService(store, vendors=VendorConfig({"llm": "k"})).admit(
        make_request(project.id, JobType.customer_research)
    )
    assert isinstance(real, Admitted)
    assert real.job.id != job.id


@pytest.mark.asyncio
async def test_dry_run_still_enforces_quota(store, project, make_request):
    ledger = QuotaLedger(store)
    for _ in range(10):
        await ledger.reserve("user-1", PlanId.GROWTH, UsageMetric.RESEARCH_QUERIES)
    service = AdmissionService(store, sweep_mode=True)
    outcome = await service.admit(make_request(project.id, JobType.customer_research))
    assert isinstance(outcome.error, QuotaExceeded)


@pytest.mark.asyncio
async def test_store_failure_after_reservation_rolls_back(store, project, service, make_request, monkeypatch):
    async def _broken_insert(rec, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "insert_job", _broken_insert)
    with pytest.raises(InfrastructureError):
        await service.admit(make_request(project.id, JobType.customer_research))
    assert await _usage(store) == 0
    assert all(r.status is RunStatus.ABANDONED for r in await store.list_runs(project.id))


@pytest.mark.asyncio
async def test_rejections_are_audited(store, project, service, make_request):
    await service.admit(make_request(project.id, JobType.storyboard_generation))
    rows = await store.list_audit()
    assert rows[-1]["action"] == "job.reject"
    assert rows[-1]["metadata"]["code"] == "dependency_missing"


@pytest.mark.asyncio
async def test_status_reads(store, project, service, finish, make_request):
    run_id = await _script_ready_run(store, service, finish, make_request, project)
    stages = await service.pipeline_status("user-1", project.id, run_id=run_id)
    by_stage = {s["stage"]: s["job"] for s in stages}
    assert by_stage["customer_research"]["status"] == "COMPLETED"
    assert by_stage["script_generation"]["status"] == "COMPLETED"
    assert by_stage["storyboard_generation"] is None
    assert [s["stage"] for s in stages][0] == "customer_research"

    single = await service.stage_status("user-1", project.id, "script-generation", run_id=run_id)
    assert single["runId"] == run_id

    with pytest.raises(Forbidden):
        await service.pipeline_status("user-2", project.id)


@pytest.mark.asyncio
async def test_dry_run_never_hides_a_real_predecessor(store, project, service, finish, make_request):
    run_id = await _script_ready_run(store, service, finish, make_request, project)
    rehearsal = await service.admit(
        make_request(project.id, JobType.script_generation, run_id=run_id, attrs={"tone": "bold"}, dry_run=True)
    )
    assert isinstance(rehearsal, Admitted)
    assert rehearsal.job.status is JobStatus.COMPLETED

    outcome = await service.admit(make_request(project.id, JobType.storyboard_generation, run_id=run_id))
    assert isinstance(outcome, Admitted)
    assert outcome.job.payload["scriptId"] == "S1"
    assert outcome.job.payload["upstreamJobId"] != rehearsal.job.id

    single = await service.stage_status("user-1", project.id, JobType.script_generation, run_id=run_id)
    assert single["jobId"] != rehearsal.job.id


@pytest.mark.asyncio
async def test_concurrent_distinct_admissions_respect_ceiling(store, project, service, make_request):
    for name in ("A", "B"):
        await service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": name}))

    outcomes = await asyncio.gather(*[
        service.admit(make_request(project.id, JobType.customer_research, attrs={"productName": name}))
        for name in ("C", "D", "E")
    ])

    admitted = [o for o in outcomes if isinstance(o, Admitted)]
    rejected = [o for o in outcomes if isinstance(o, Rejected)]
    assert len(admitted) == 1
    assert all(isinstance(o.error, ConcurrencyExceeded) for o in rejected)
    assert await store.count_active_jobs_for_user("user-1") == 3
    assert await _usage(store) == 3


@pytest.mark.asyncio
async def test_reservation_kept_when_attach_fails_after_insert(store, project, service, finish, make_request, monkeypatch):
    async def _broken_attach(reservation_id, job_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "attach_reservation", _broken_attach)
    with pytest.raises(InfrastructureError):
        await service.admit(make_request(project.id, JobType.customer_research))

    [job] = await store.list_jobs(project.id)
    assert job.status is JobStatus.PENDING
    assert await _usage(store) == 1
    reservation_id = job.payload["quotaReservation"]["id"]
    assert (await store.get_reservation(reservation_id)).state is ReservationState.reserved

    await finish(job.id, {"researchId": "R1"})
    assert (await store.get_reservation(reservation_id)).state is ReservationState.consumed
    assert await _usage(store) == 1
