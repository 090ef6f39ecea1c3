from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from devops_insights.api.main import create_app
from devops_insights.api.routers import system_config
from devops_insights.models import SyncJob
from devops_insights.services.cache import CacheKeys
from devops_insights.services.users import UserService
from devops_insights.sync.orchestrator import SyncService, set_sync_service


@pytest_asyncio.fixture
async def client(database):
    app = create_app()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _login(client, database, access_roles, role: str, login: str) -> dict:
    async with database.session() as session:
        await UserService(session).create(
            name=login.title(),
            email=f"{login}@contoso.com",
            login=login,
            password="s3cret!",
            role_id=access_roles[role].id,
        )
    response = await client.post(
        "/api/v1/auth/login",
        json={"emailOrLogin": login, "password": "s3cret!"},
    )
    assert response.status_code == 200
    token = response.json()["data"]["accessToken"]
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def admin_headers(client, database, access_roles):
    return await _login(client, database, access_roles, "admin", "admin")


@pytest_asyncio.fixture
async def viewer_headers(client, database, access_roles):
    return await _login(client, database, access_roles, "user", "viewer")


@pytest.fixture
def sync_service(database, kv_store):
    pipeline = MagicMock()
    pipeline.sync_repository = AsyncMock(return_value={"pullRequests": 0})
    service = SyncService(database, kv_store=kv_store, pipeline=pipeline)
    set_sync_service(service)
    return service


async def _job_count(database) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count()).select_from(SyncJob))


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"] == {"database": "ok", "redis": "ok"}


@pytest.mark.asyncio
async def test_missing_token_is_401(client):
    response = await client.get("/api/v1/teams")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "MISSING_TOKEN"
    assert body["path"] == "/api/v1/teams"
    assert body["method"] == "GET"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_missing_permission_is_403(client, viewer_headers):
    response = await client.post(
        "/api/v1/teams", json={"name": "Platform"}, headers=viewer_headers
    )
    assert response.status_code == 403
    assert response.json()["error"] == "INSUFFICIENT_PERMISSIONS"
    assert response.json()["details"] == {"required": "teams:write"}


@pytest.mark.asyncio
async def test_me_and_logout(client, admin_headers):
    response = await client.get("/api/v1/auth/me", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["login"] == "admin"

    response = await client.post("/api/v1/auth/logout", headers=admin_headers)
    assert response.status_code == 200

    response = await client.get("/api/v1/auth/me", headers=admin_headers)
    assert response.status_code == 401
    assert response.json()["error"] == "REVOKED_TOKEN"


@pytest.mark.asyncio
async def test_bad_login_is_401(client, access_roles):
    response = await client.post(
        "/api/v1/auth/login", json={"emailOrLogin": "ghost", "password": "nope"}
    )
    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_team_crud_flow(client, admin_headers):
    response = await client.post(
        "/api/v1/teams",
        json={"name": "Platform", "management": "Operations"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    team_id = response.json()["data"]["id"]

    response = await client.post(
        "/api/v1/teams", json={"name": "Platform"}, headers=admin_headers
    )
    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"

    response = await client.get(
        "/api/v1/teams", params={"pageSize": 5}, headers=admin_headers
    )
    body = response.json()
    assert body["success"] is True
    assert body["pagination"]["pageSize"] == 5
    assert [t["name"] for t in body["data"]] == ["Platform"]

    response = await client.delete(f"/api/v1/teams/{team_id}", headers=admin_headers)
    assert response.status_code == 200

    response = await client.get(f"/api/v1/teams/{team_id}", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_request_validation_error_is_400(client, admin_headers):
    response = await client.post("/api/v1/teams", json={}, headers=admin_headers)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "VALIDATION_ERROR"
    assert any(d["field"].endswith("name") for d in body["details"])


@pytest.mark.asyncio
async def test_start_sync_returns_job(
    client, admin_headers, database, repository, sync_service
):
    response = await client.post(
        f"/api/v1/sync/{repository.id}",
        json={"syncType": "full"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    job = response.json()["data"]
    assert job["syncType"] == "full"
    assert job["repositoryId"] == str(repository.id)

    finished = await sync_service.wait_for_job(job["id"])
    assert finished.status == "completed"

    response = await client.get(
        f"/api/v1/sync/{repository.id}/status", headers=admin_headers
    )
    assert response.json()["data"]["status"] == "completed"

    response = await client.get(
        f"/api/v1/sync/{repository.id}/history", headers=admin_headers
    )
    assert response.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_start_sync_while_locked_is_409(
    client, admin_headers, database, kv_store, repository, sync_service
):
    kv_store.set(CacheKeys.sync_lock(repository.id), {"acquiredAt": "now"}, 60)

    response = await client.post(
        f"/api/v1/sync/{repository.id}", headers=admin_headers
    )

    assert response.status_code == 409
    assert await _job_count(database) == 0


@pytest.mark.asyncio
async def test_start_sync_invalid_type_is_400(
    client, admin_headers, repository, sync_service
):
    response = await client.post(
        f"/api/v1/sync/{repository.id}",
        json={"syncType": "partial"},
        headers=admin_headers,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_viewer_cannot_start_sync(
    client, viewer_headers, repository, sync_service
):
    response = await client.post(
        f"/api/v1/sync/{repository.id}", headers=viewer_headers
    )
    assert response.status_code == 403

    response = await client.get(
        f"/api/v1/sync/{repository.id}/status", headers=viewer_headers
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "no_jobs"


@pytest.mark.asyncio
async def test_cancel_sync(client, admin_headers, repository, sync_service):
    release = asyncio.Event()

    async def slow_sync(*args):
        await release.wait()
        return {}

    sync_service.pipeline.sync_repository.side_effect = slow_sync
    response = await client.post(
        f"/api/v1/sync/{repository.id}", headers=admin_headers
    )
    job_id = response.json()["data"]["id"]

    response = await client.delete(
        f"/api/v1/sync/{repository.id}", headers=admin_headers
    )
    assert response.status_code == 200

    release.set()
    job = await sync_service.wait_for_job(job_id)
    assert job.status == "failed"


@pytest.mark.asyncio
async def test_kpi_endpoints(client, viewer_headers, repository):
    response = await client.get(
        "/api/v1/kpis/pr-commit",
        params={"teamId": "all", "startDate": "2025-01-01", "endDate": "2025-12-31"},
        headers=viewer_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": []}

    response = await client.get("/api/v1/kpis", headers=viewer_headers)
    assert response.status_code == 200
    assert response.json()["data"]["totalPullRequests"] == 0

    response = await client.get(
        "/api/v1/kpis/top-cycle-time", headers=viewer_headers
    )
    assert response.json()["pagination"]["total"] == 0

    response = await client.get(
        "/api/v1/kpis/cycle-time",
        params={"startDate": "garbage", "endDate": "2025-01-01"},
        headers=viewer_headers,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_repository_endpoints(client, admin_headers):
    response = await client.post(
        "/api/v1/repositories",
        json={
            "name": "web",
            "organization": "contoso",
            "project": "shop",
            "url": "https://dev.azure.com/contoso/shop/_git/web",
            "accessToken": "repo-pat",
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    repo = response.json()["data"]
    assert repo["hasAccessToken"] is True

    response = await client.get(
        f"/api/v1/repositories/{repo['id']}/stats", headers=admin_headers
    )
    assert response.json()["data"]["totals"]["pullRequests"] == 0

    response = await client.get(
        "/api/v1/repositories/not-a-uuid", headers=admin_headers
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_azure_devops_config(client, admin_headers):
    validation = AsyncMock(
        return_value={"valid": True, "message": "Connection successful"}
    )
    with patch.object(
        system_config, "validate_connection_with_credentials", validation
    ):
        response = await client.post(
            "/api/v1/system-config/azure-devops/config",
            json={"organization": "contoso", "personalAccessToken": "pat"},
            headers=admin_headers,
        )
    assert response.status_code == 200
    validation.assert_awaited_once_with("contoso", "pat")

    response = await client.get(
        "/api/v1/system-config/azure-devops/config", headers=admin_headers
    )
    data = response.json()["data"]
    assert data == {
        "organization": "contoso",
        "personalAccessToken": "********",
        "isConfigured": True,
    }


@pytest.mark.asyncio
async def test_azure_devops_browse_requires_configuration(client, admin_headers):
    response = await client.get("/api/v1/azure-devops/projects", headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "AZURE_DEVOPS_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_user_admin(client, admin_headers, access_roles):
    response = await client.post(
        "/api/v1/users",
        json={
            "name": "New Person",
            "email": "new@contoso.com",
            "login": "newbie",
            "password": "s3cret!",
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    user = response.json()["data"]
    assert user["role"]["name"] == "user"

    response = await client.get("/api/v1/users", headers=admin_headers)
    assert response.json()["pagination"]["total"] == 2

    response = await client.get(
        "/api/v1/user-roles/permissions", headers=admin_headers
    )
    assert response.status_code == 200
