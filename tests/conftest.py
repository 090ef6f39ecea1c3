from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from devops_insights.db import Database, set_database
from devops_insights.models import (
    DEFAULT_ROLES,
    Developer,
    PullRequest,
    Repository,
    UserRole,
)
from devops_insights.services import auth as auth_service
from devops_insights.services.cache import MemoryBackend, set_kv_store
from devops_insights.sync.orchestrator import set_sync_service


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("SETTINGS_ENCRYPTION_KEY", "test-encryption-key")
    monkeypatch.setenv("JWT_SECRET_KEY", "test-jwt-secret")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(auth_service, "LOGIN_DELAY_RANGE", (0, 0))


@pytest.fixture
def kv_store():
    backend = MemoryBackend()
    set_kv_store(backend)
    yield backend
    set_kv_store(None)


@pytest_asyncio.fixture
async def database(tmp_path, kv_store):
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.create_all()
    set_database(db)
    set_sync_service(None)
    yield db
    set_sync_service(None)
    set_database(None)
    await db.close()


@pytest_asyncio.fixture
async def session(database):
    async with database.session() as session:
        yield session


@pytest_asyncio.fixture
async def access_roles(database):
    async with database.session() as session:
        roles = {}
        for name, definition in DEFAULT_ROLES.items():
            role = UserRole(
                name=name,
                description=definition["description"],
                permissions=list(definition["permissions"]),
                is_system=definition["is_system"],
                is_default=definition["is_default"],
            )
            session.add(role)
            roles[name] = role
    return roles


@pytest_asyncio.fixture
async def repository(database):
    async with database.session() as session:
        repo = Repository(
            name="web",
            organization="contoso",
            project="shop",
            url="https://dev.azure.com/contoso/shop/_git/web",
            azure_id="repo-guid",
        )
        session.add(repo)
    return repo


def make_developer(session, login: str, **fields) -> Developer:
    developer = Developer(
        name=fields.pop("name", login.split("@")[0].title()),
        login=login,
        email=fields.pop("email", login if "@" in login else None),
        **fields,
    )
    session.add(developer)
    return developer


_pr_counter = iter(range(1000, 100000))


def make_pull_request(
    session, repository_id, created_by: Developer, **fields
) -> PullRequest:
    created_at = fields.pop(
        "created_at", datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
    )
    closed_at = fields.pop("closed_at", None)
    pr = PullRequest(
        id=uuid.uuid4(),
        azure_id=fields.pop("azure_id", next(_pr_counter)),
        title=fields.pop("title", "Change"),
        status=fields.pop("status", "completed" if closed_at else "active"),
        source_branch="feature",
        target_branch="main",
        repository_id=repository_id,
        created_by=created_by,
        created_at=created_at,
        updated_at=created_at,
        closed_at=closed_at,
        merged_at=closed_at,
        cycle_time_days=(
            (closed_at - created_at) / timedelta(days=1) if closed_at else None
        ),
        **fields,
    )
    session.add(pr)
    return pr
