from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_developer, make_pull_request
from devops_insights.exceptions import ConflictError, NotFoundError, ValidationError
from devops_insights.models import Repository
from devops_insights.services.catalog import (
    DeveloperService,
    RepositoryService,
    RoleService,
    StackService,
    TeamService,
)
from devops_insights.services.crypto import decrypt_value


@pytest.mark.asyncio
async def test_team_crud(session):
    teams = TeamService(session)
    team = await teams.create(name="Platform", management="Operations")
    await teams.create(name="Mobile")

    with pytest.raises(ConflictError):
        await teams.create(name="Platform")

    updated = await teams.update(team.id, management="Engineering")
    assert updated.management == "Engineering"
    assert updated.name == "Platform"

    listing = await teams.list_paginated(sort_by="name", sort_order="desc")
    assert [t["name"] for t in listing["data"]] == ["Platform", "Mobile"]
    assert listing["pagination"]["total"] == 2

    found = await teams.list_paginated(search="mob")
    assert [t["name"] for t in found["data"]] == ["Mobile"]

    await teams.delete(team.id)
    with pytest.raises(NotFoundError):
        await teams.get(team.id)


@pytest.mark.asyncio
async def test_team_with_developers_cannot_be_deleted(session):
    team = await TeamService(session).create(name="Platform")
    make_developer(session, "alice@contoso.com", team_id=team.id)
    await session.flush()

    with pytest.raises(ConflictError):
        await TeamService(session).delete(team.id)


@pytest.mark.asyncio
async def test_role_in_use_cannot_be_deleted(session):
    role = await RoleService(session).create(name="Backend")
    await DeveloperService(session).create(
        name="Alice", login="alice", role_id=str(role.id)
    )

    with pytest.raises(ConflictError):
        await RoleService(session).delete(role.id)


@pytest.mark.asyncio
async def test_developer_create_and_filters(session):
    team = await TeamService(session).create(name="Platform")
    other = await TeamService(session).create(name="Mobile")
    python = await StackService(session).create(name="Python", color="#3776ab")
    developers = DeveloperService(session)

    alice = await developers.create(
        name="Alice",
        login="alice",
        team_id=str(team.id),
        stack_ids=[str(python.id)],
    )
    await developers.create(name="Bob", login="bob", team_id=str(other.id))
    await developers.create(name="Carol", login="carol")

    assert alice.email == "alice@company.com"
    data = developers.serialize(alice)
    assert data["team"]["name"] == "Platform"
    assert [s["name"] for s in data["stacks"]] == ["Python"]

    with pytest.raises(ConflictError):
        await developers.create(name="Alice 2", login="alice")

    by_teams = await developers.list_paginated(team_id=f"{team.id},{other.id}")
    assert [d["login"] for d in by_teams["data"]] == ["alice", "bob"]

    by_stack = await developers.list_paginated(stack_id=str(python.id))
    assert [d["login"] for d in by_stack["data"]] == ["alice"]

    with pytest.raises(ValidationError):
        await developers.list_paginated(team_id="bogus")


@pytest.mark.asyncio
async def test_developer_update_replaces_stacks(session):
    stacks = StackService(session)
    python = await stacks.create(name="Python")
    go = await stacks.create(name="Go")
    developers = DeveloperService(session)
    dev = await developers.create(
        name="Alice", login="alice", stack_ids=[str(python.id)]
    )

    dev = await developers.update(dev.id, stack_ids=[str(go.id)], name="Alice B")

    assert dev.name == "Alice B"
    assert [s.name for s in dev.stacks] == ["Go"]

    with pytest.raises(NotFoundError):
        await developers.update(
            dev.id, stack_ids=["00000000-0000-0000-0000-000000000000"]
        )


@pytest.mark.asyncio
async def test_repository_token_is_encrypted(session):
    repositories = RepositoryService(session)
    repo = await repositories.create(
        name="web",
        organization="contoso",
        project="shop",
        url="https://dev.azure.com/contoso/shop/_git/web",
        access_token="repo-pat",
    )

    assert repo.access_token != "repo-pat"
    assert decrypt_value(repo.access_token) == "repo-pat"
    assert repositories.serialize(repo)["hasAccessToken"] is True
    assert "accessToken" not in repositories.serialize(repo)

    with pytest.raises(ConflictError):
        await repositories.create(
            name="web2",
            organization="contoso",
            project="shop",
            url="https://dev.azure.com/contoso/shop/_git/web",
        )

    repo = await repositories.update(repo.id, access_token=None)
    assert repo.access_token is None


@pytest.mark.asyncio
async def test_repository_stats(session):
    repo = Repository(
        name="web",
        organization="contoso",
        project="shop",
        url="https://dev.azure.com/contoso/shop/_git/web",
    )
    session.add(repo)
    alice = make_developer(session, "alice@contoso.com")
    await session.flush()

    created = datetime(2025, 1, 1, tzinfo=timezone.utc)
    make_pull_request(
        session,
        repo.id,
        alice,
        created_at=created,
        closed_at=datetime(2025, 1, 4, tzinfo=timezone.utc),
        files_changed=3,
        lines_added=10,
        lines_deleted=2,
    )
    make_pull_request(session, repo.id, alice, created_at=created)
    await session.flush()

    stats = await RepositoryService(session).get_stats(repo.id)

    assert stats["totals"]["pullRequests"] == 2
    assert stats["totals"]["mergedPRs"] == 1
    assert stats["totals"]["openPRs"] == 1
    assert stats["totals"]["filesChanged"] == 3
    assert stats["totals"]["linesChanged"] == 12
    assert stats["averages"]["cycleTimeDays"] == 3
