"""
Integration tests for the Cloud Actions API: tenant scoping, RBAC, and the
dispatch/run endpoints.
"""
import pytest

from backend.app.core.security import Role

BASE = "/api/v1/cloud-actions"
APP = "orders-app"


@pytest.fixture
async def created(client, auth_headers, credential_id):
    response = await client.post(
        f"{BASE}/",
        json={
            "app_id": APP,
            "environment_name": "acceptance",
            "operation_type": "start",
            "credential_id": credential_id,
        },
        headers=auth_headers(),
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_takes_tenant_from_token(created):
    assert created["tenant_id"] == "tenant-a"
    assert created["status"] == "scheduled"
    assert created["created_by"] == "operator-1"
    assert created["current_step"] is None
    assert created["attempt_count"] == 0


@pytest.mark.asyncio
async def test_create_transport_without_source_is_rejected(client, auth_headers):
    response = await client.post(
        f"{BASE}/",
        json={"app_id": APP, "environment_name": "production", "operation_type": "transport"},
        headers=auth_headers(),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_viewer_cannot_create(client, auth_headers):
    response = await client.post(
        f"{BASE}/",
        json={"app_id": APP, "environment_name": "test", "operation_type": "stop"},
        headers=auth_headers(role=Role.VIEWER),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_list_and_get_are_tenant_scoped(client, auth_headers, created):
    listed = await client.get(f"{BASE}/", headers=auth_headers(role=Role.VIEWER))
    assert listed.status_code == 200
    assert [a["id"] for a in listed.json()] == [created["id"]]

    mine = await client.get(f"{BASE}/{created['id']}", headers=auth_headers())
    assert mine.status_code == 200

    other_tenant = auth_headers(tenant_id="tenant-b", username="operator-b")
    assert (await client.get(f"{BASE}/", headers=other_tenant)).json() == []
    assert (await client.get(f"{BASE}/{created['id']}", headers=other_tenant)).status_code == 404
    assert (await client.get(f"{BASE}/{created['id']}/logs", headers=other_tenant)).status_code == 404


@pytest.mark.asyncio
async def test_list_filters_by_status(client, auth_headers, created):
    response = await client.get(f"{BASE}/", params={"status": "running"}, headers=auth_headers())
    assert response.json() == []


@pytest.mark.asyncio
async def test_cancel_then_conflict(client, auth_headers, created):
    first = await client.post(f"{BASE}/{created['id']}/cancel", headers=auth_headers())
    assert first.status_code == 200
    assert first.json()["status"] == "canceled"

    second = await client.post(f"{BASE}/{created['id']}/cancel", headers=auth_headers())
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_run_now_advances_and_logs(client, auth_headers, platform, created):
    platform.add_environment(APP, "Acceptance", status="Stopped")

    response = await client.post(f"{BASE}/{created['id']}/run", headers=auth_headers())

    assert response.status_code == 200, response.text
    assert response.json()["outcome"] == "advanced"
    assert response.json()["next_step"] == "wait_running"

    logs = await client.get(f"{BASE}/{created['id']}/logs", headers=auth_headers())
    messages = [entry["message"] for entry in logs.json()]
    assert messages[0] == "Started processing start action - Step: call_start"


@pytest.mark.asyncio
async def test_run_now_on_cancelled_action_conflicts(client, auth_headers, created):
    await client.post(f"{BASE}/{created['id']}/cancel", headers=auth_headers())

    response = await client.post(f"{BASE}/{created['id']}/run", headers=auth_headers())
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_run_now_unknown_action(client, auth_headers):
    response = await client.post(f"{BASE}/does-not-exist/run", headers=auth_headers())
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_dispatch_requires_dispatch_scope(client, auth_headers, platform, created):
    platform.add_environment(APP, "Acceptance", status="Stopped")

    denied = await client.post(f"{BASE}/dispatch", headers=auth_headers())
    assert denied.status_code == 403

    response = await client.post(
        f"{BASE}/dispatch", headers=auth_headers(role=Role.SCHEDULER, tenant_id=None, username="cron")
    )
    assert response.status_code == 200
    report = response.json()
    assert report["skipped"] is False
    assert report["selected"] == 1
    assert report["outcomes"] == {"advanced": 1}


@pytest.mark.asyncio
async def test_missing_or_invalid_token_is_unauthorized(client):
    assert (await client.get(f"{BASE}/")).status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert (await client.get(f"{BASE}/", headers=bad)).status_code == 401


@pytest.mark.asyncio
async def test_token_without_tenant_is_forbidden(client, auth_headers):
    response = await client.get(f"{BASE}/", headers=auth_headers(tenant_id=None))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_health_and_correlation_header(client):
    response = await client.get("/health", headers={"X-Correlation-ID": "corr-123"})
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Correlation-ID"] == "corr-123"
