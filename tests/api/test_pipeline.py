"""HTTP tests for stage admission and pipeline status reads."""
import pytest

from stagegate.api.jobs.models import JobRecord, JobStatus, JobType

USER = "user-1"
OTHER_USER = "user-2"


async def _seed_script(store, project, run):
    """A completed script job in *run* that produced S1."""
    return await store.insert_job(JobRecord(
        id="job-script",
        project_id=project.id,
        user_id=USER,
        run_id=run.id,
        type=JobType.script_generation,
        status=JobStatus.COMPLETED,
        idempotency_key="seed-script",
        payload={"result": {"scriptId": "S1"}},
    ))


@pytest.mark.asyncio
async def test_storyboard_admission_then_replay(client, store, project):
    run = await store.create_run(project.id)
    await _seed_script(store, project, run)

    body = {"projectId": project.id, "runId": run.id}
    first = await client.post("/api/pipeline/storyboard-generation", json=body)
    assert first.status_code == 202
    data = first.json()["data"]
    assert data["started"] is True
    assert data["reused"] is False
    assert data["status"] == "PENDING"
    assert data["runId"] == run.id

    second = await client.post("/api/pipeline/storyboard-generation", json=body)
    assert second.status_code == 200
    replay = second.json()["data"]
    assert replay["reused"] is True
    assert replay["jobId"] == data["jobId"]

    job = await store.get_job(data["jobId"])
    assert job.payload["upstreamJobId"] == "job-script"
    assert job.payload["scriptId"] == "S1"


@pytest.mark.asyncio
async def test_entry_stage_creates_a_run(client, project):
    resp = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": project.id, "productName": "Widget"},
    )
    assert resp.status_code == 202
    assert resp.json()["data"]["runId"]


@pytest.mark.asyncio
async def test_free_plan_needs_upgrade(client, store):
    rec = await store.create_project(USER, "Free project")
    await store.set_user_plan(USER, "FREE")
    resp = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": rec.id, "productName": "Widget"},
    )
    assert resp.status_code == 402
    body = resp.json()
    assert body["ok"] is False
    assert body["details"]["code"] == "upgrade_required"
    assert body["details"]["requiredPlan"] == "GROWTH"


@pytest.mark.asyncio
async def test_foreign_project_is_forbidden(client, store):
    other = await store.create_project(OTHER_USER, "Theirs")
    resp = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": other.id, "productName": "Widget"},
    )
    assert resp.status_code == 403
    assert resp.json()["details"]["code"] == "forbidden"


@pytest.mark.asyncio
async def test_missing_predecessor(client, project):
    resp = await client.post("/api/pipeline/storyboard-generation", json={"projectId": project.id})
    assert resp.status_code == 400
    details = resp.json()["details"]
    assert details["code"] == "dependency_missing"
    assert details["requiredStage"] == "script_generation"


@pytest.mark.asyncio
async def test_unknown_field_is_rejected(client, project):
    resp = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": project.id, "productName": "Widget", "bogus": 1},
    )
    assert resp.status_code == 400
    assert resp.json()["details"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_concurrency_ceiling(client, project):
    import stagegate.config as cfg

    cfg.MAX_RUNNING_JOBS_PER_USER = 1
    first = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": project.id, "productName": "Widget"},
    )
    assert first.status_code == 202
    second = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": project.id, "productName": "Gadget"},
    )
    assert second.status_code == 429
    assert second.json()["details"]["code"] == "concurrency_exceeded"


@pytest.mark.asyncio
async def test_dry_run_returns_200(client, store, project):
    resp = await client.post(
        "/api/pipeline/customer-research",
        json={"projectId": project.id, "productName": "Widget", "dryRun": True},
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["dryRun"] is True
    assert data["started"] is False
    assert data["status"] == "COMPLETED"
    job = await store.get_job(data["jobId"])
    assert job.payload["skipped"] is True


@pytest.mark.asyncio
async def test_pipeline_status(client, store, project):
    run = await store.create_run(project.id)
    await _seed_script(store, project, run)

    resp = await client.get(f"/api/projects/{project.id}/pipeline", params={"runId": run.id})
    assert resp.status_code == 200
    stages = resp.json()["data"]["stages"]
    assert [s["stage"] for s in stages][:3] == [
        "customer_research",
        "script_generation",
        "storyboard_generation",
    ]
    by_stage = {s["stage"]: s["job"] for s in stages}
    assert by_stage["customer_research"] is None
    assert by_stage["script_generation"]["jobId"] == "job-script"

    one = await client.get(f"/api/projects/{project.id}/pipeline/script-generation", params={"runId": run.id})
    assert one.status_code == 200
    assert one.json()["data"]["job"]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_unknown_stage_status(client, project):
    resp = await client.get(f"/api/projects/{project.id}/pipeline/not-a-stage")
    assert resp.status_code == 400
