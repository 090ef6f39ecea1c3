"""Teams, job roles, stacks and developers."""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.api.schemas import (
    DeveloperCreate,
    DeveloperUpdate,
    RoleCreate,
    RoleUpdate,
    StackCreate,
    StackUpdate,
    TeamCreate,
    TeamUpdate,
)
from devops_insights.services.catalog import (
    DeveloperService,
    RoleService,
    StackService,
    TeamService,
)

teams_router = APIRouter(prefix="/api/v1/teams", tags=["teams"])
roles_router = APIRouter(prefix="/api/v1/roles", tags=["roles"])
stacks_router = APIRouter(prefix="/api/v1/stacks", tags=["stacks"])
developers_router = APIRouter(prefix="/api/v1/developers", tags=["developers"])

PageSize = Annotated[int, Query(alias="pageSize", ge=1, le=100)]
SortBy = Annotated[str, Query(alias="sortBy")]
SortOrder = Annotated[str, Query(alias="sortOrder", pattern="^(asc|desc)$")]

can_read_teams = [Depends(require_permission("teams:read"))]
can_write_teams = [Depends(require_permission("teams:write"))]
can_delete_teams = [Depends(require_permission("teams:delete"))]


def _page(result: dict) -> dict:
    return ok(result["data"], pagination=result["pagination"])


# --- Teams ---


@teams_router.get("", dependencies=can_read_teams)
async def list_teams(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    sort_by: SortBy = "name",
    sort_order: SortOrder = "asc",
    search: Optional[str] = None,
) -> dict:
    return _page(
        await TeamService(session).list_paginated(
            page, page_size, sort_by, sort_order, search
        )
    )


@teams_router.get("/{team_id}", dependencies=can_read_teams)
async def get_team(team_id: str, session: SessionDep) -> dict:
    service = TeamService(session)
    return ok(service.serialize(await service.get(team_id)))


@teams_router.post("", status_code=201, dependencies=can_write_teams)
async def create_team(payload: TeamCreate, session: SessionDep) -> dict:
    service = TeamService(session)
    team = await service.create(**payload.model_dump())
    await session.commit()
    return ok(service.serialize(team), message="Team created successfully")


@teams_router.put("/{team_id}", dependencies=can_write_teams)
async def update_team(team_id: str, payload: TeamUpdate, session: SessionDep) -> dict:
    service = TeamService(session)
    team = await service.update(team_id, **payload.model_dump(exclude_unset=True))
    await session.commit()
    return ok(service.serialize(team), message="Team updated successfully")


@teams_router.delete("/{team_id}", dependencies=can_delete_teams)
async def delete_team(team_id: str, session: SessionDep) -> dict:
    await TeamService(session).delete(team_id)
    await session.commit()
    return ok(message="Team deleted successfully")


# --- Job roles ---


@roles_router.get("", dependencies=can_read_teams)
async def list_roles(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    sort_by: SortBy = "name",
    sort_order: SortOrder = "asc",
    search: Optional[str] = None,
) -> dict:
    return _page(
        await RoleService(session).list_paginated(
            page, page_size, sort_by, sort_order, search
        )
    )


@roles_router.get("/{role_id}", dependencies=can_read_teams)
async def get_role(role_id: str, session: SessionDep) -> dict:
    service = RoleService(session)
    return ok(service.serialize(await service.get(role_id)))


@roles_router.post("", status_code=201, dependencies=can_write_teams)
async def create_role(payload: RoleCreate, session: SessionDep) -> dict:
    service = RoleService(session)
    role = await service.create(**payload.model_dump())
    await session.commit()
    return ok(service.serialize(role), message="Role created successfully")


@roles_router.put("/{role_id}", dependencies=can_write_teams)
async def update_role(role_id: str, payload: RoleUpdate, session: SessionDep) -> dict:
    service = RoleService(session)
    role = await service.update(role_id, **payload.model_dump(exclude_unset=True))
    await session.commit()
    return ok(service.serialize(role), message="Role updated successfully")


@roles_router.delete("/{role_id}", dependencies=can_delete_teams)
async def delete_role(role_id: str, session: SessionDep) -> dict:
    await RoleService(session).delete(role_id)
    await session.commit()
    return ok(message="Role deleted successfully")


# --- Stacks ---


@stacks_router.get("", dependencies=can_read_teams)
async def list_stacks(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    sort_by: SortBy = "name",
    sort_order: SortOrder = "asc",
    search: Optional[str] = None,
) -> dict:
    return _page(
        await StackService(session).list_paginated(
            page, page_size, sort_by, sort_order, search
        )
    )


@stacks_router.get("/{stack_id}", dependencies=can_read_teams)
async def get_stack(stack_id: str, session: SessionDep) -> dict:
    service = StackService(session)
    return ok(service.serialize(await service.get(stack_id)))


@stacks_router.post("", status_code=201, dependencies=can_write_teams)
async def create_stack(payload: StackCreate, session: SessionDep) -> dict:
    service = StackService(session)
    stack = await service.create(**payload.model_dump())
    await session.commit()
    return ok(service.serialize(stack), message="Stack created successfully")


@stacks_router.put("/{stack_id}", dependencies=can_write_teams)
async def update_stack(
    stack_id: str, payload: StackUpdate, session: SessionDep
) -> dict:
    service = StackService(session)
    stack = await service.update(stack_id, **payload.model_dump(exclude_unset=True))
    await session.commit()
    return ok(service.serialize(stack), message="Stack updated successfully")


@stacks_router.delete("/{stack_id}", dependencies=can_delete_teams)
async def delete_stack(stack_id: str, session: SessionDep) -> dict:
    await StackService(session).delete(stack_id)
    await session.commit()
    return ok(message="Stack deleted successfully")


# --- Developers ---


@developers_router.get(
    "", dependencies=[Depends(require_permission("developers:read"))]
)
async def list_developers(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    sort_by: SortBy = "name",
    sort_order: SortOrder = "asc",
    search: Optional[str] = None,
    team_id: Annotated[Optional[str], Query(alias="teamId")] = None,
    role_id: Annotated[Optional[str], Query(alias="roleId")] = None,
    stack_id: Annotated[Optional[str], Query(alias="stackId")] = None,
) -> dict:
    """Developers, optionally filtered by comma-separated ``teamId`` values."""
    return _page(
        await DeveloperService(session).list_paginated(
            page,
            page_size,
            sort_by,
            sort_order,
            search,
            team_id=team_id,
            role_id=role_id,
            stack_id=stack_id,
        )
    )


@developers_router.get(
    "/{developer_id}", dependencies=[Depends(require_permission("developers:read"))]
)
async def get_developer(developer_id: str, session: SessionDep) -> dict:
    service = DeveloperService(session)
    return ok(service.serialize(await service.get(developer_id)))


@developers_router.post(
    "",
    status_code=201,
    dependencies=[Depends(require_permission("developers:write"))],
)
async def create_developer(payload: DeveloperCreate, session: SessionDep) -> dict:
    service = DeveloperService(session)
    developer = await service.create(**payload.model_dump())
    await session.commit()
    return ok(service.serialize(developer), message="Developer created successfully")


@developers_router.put(
    "/{developer_id}", dependencies=[Depends(require_permission("developers:write"))]
)
async def update_developer(
    developer_id: str, payload: DeveloperUpdate, session: SessionDep
) -> dict:
    service = DeveloperService(session)
    developer = await service.update(
        developer_id, **payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    return ok(service.serialize(developer), message="Developer updated successfully")


@developers_router.delete(
    "/{developer_id}", dependencies=[Depends(require_permission("developers:delete"))]
)
async def delete_developer(developer_id: str, session: SessionDep) -> dict:
    await DeveloperService(session).delete(developer_id)
    await session.commit()
    return ok(message="Developer deleted successfully")
