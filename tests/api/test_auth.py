"""Tests for service and worker token checks."""
import pytest
from httpx import ASGITransport, AsyncClient

from stagegate.api.config import ApiSettings


@pytest.fixture
def api_settings():
    return ApiSettings(
        _env_file=None,
        db_path=":memory:",
        auth_enabled=True,
        api_token="user-secret",
        worker_token="worker-secret",
        rate_limit_enabled=False,
        llm_api_key="test-key",
    )


@pytest.fixture
async def raw_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.mark.asyncio
async def test_user_endpoints_need_the_service_token(raw_client):
    resp = await raw_client.get("/api/projects", headers={"X-User-Id": "user-1"})
    assert resp.status_code == 401

    resp = await raw_client.get(
        "/api/projects", headers={"X-User-Id": "user-1", "Authorization": "Bearer wrong"}
    )
    assert resp.status_code == 401

    resp = await raw_client.get(
        "/api/projects", headers={"X-User-Id": "user-1", "Authorization": "Bearer user-secret"}
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_worker_endpoints_need_the_worker_token(raw_client):
    resp = await raw_client.post("/api/jobs/claim", headers={"Authorization": "Bearer user-secret"})
    assert resp.status_code == 401

    resp = await raw_client.post("/api/jobs/claim", headers={"X-API-Key": "worker-secret"})
    assert resp.status_code == 200
    assert resp.json()["data"] is None
