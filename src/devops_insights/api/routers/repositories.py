from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.api.schemas import RepositoryCreate, RepositoryUpdate
from devops_insights.services.catalog import RepositoryService

router = APIRouter(prefix="/api/v1/repositories", tags=["repositories"])

can_read = [Depends(require_permission("repositories:read"))]


@router.get("", dependencies=can_read)
async def list_repositories(
    session: SessionDep,
    page: int = 1,
    page_size: Annotated[int, Query(alias="pageSize", ge=1, le=100)] = 10,
    sort_by: Annotated[str, Query(alias="sortBy")] = "name",
    sort_order: Annotated[
        str, Query(alias="sortOrder", pattern="^(asc|desc)$")
    ] = "asc",
    search: Optional[str] = None,
    team_id: Annotated[Optional[str], Query(alias="teamId")] = None,
) -> dict:
    result = await RepositoryService(session).list_paginated(
        page, page_size, sort_by, sort_order, search, team_id=team_id
    )
    return ok(result["data"], pagination=result["pagination"])


@router.get("/{repository_id}", dependencies=can_read)
async def get_repository(repository_id: str, session: SessionDep) -> dict:
    service = RepositoryService(session)
    return ok(service.serialize(await service.get(repository_id)))


@router.get("/{repository_id}/stats", dependencies=can_read)
async def repository_stats(repository_id: str, session: SessionDep) -> dict:
    return ok(await RepositoryService(session).get_stats(repository_id))


@router.post(
    "",
    status_code=201,
    dependencies=[Depends(require_permission("repositories:write"))],
)
async def create_repository(payload: RepositoryCreate, session: SessionDep) -> dict:
    """Register a repository. ``accessToken`` is stored encrypted."""
    service = RepositoryService(session)
    repository = await service.create(**payload.model_dump())
    await session.commit()
    return ok(service.serialize(repository), message="Repository created successfully")


@router.put(
    "/{repository_id}",
    dependencies=[Depends(require_permission("repositories:write"))],
)
async def update_repository(
    repository_id: str, payload: RepositoryUpdate, session: SessionDep
) -> dict:
    service = RepositoryService(session)
    repository = await service.update(
        repository_id, **payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    return ok(service.serialize(repository), message="Repository updated successfully")


@router.delete(
    "/{repository_id}",
    dependencies=[Depends(require_permission("repositories:delete"))],
)
async def delete_repository(repository_id: str, session: SessionDep) -> dict:
    await RepositoryService(session).delete(repository_id)
    await session.commit()
    return ok(message="Repository deleted successfully")
