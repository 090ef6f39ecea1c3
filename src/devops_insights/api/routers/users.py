from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.api.schemas import (
    LinkDeveloperRequest,
    UserCreate,
    UserRoleCreate,
    UserRoleUpdate,
    UserUpdate,
)
from devops_insights.models import STANDARD_PERMISSIONS
from devops_insights.services.users import (
    UserRoleService,
    UserService,
    serialize_role,
    serialize_user,
)

router = APIRouter(prefix="/api/v1/users", tags=["users"])
roles_router = APIRouter(prefix="/api/v1/user-roles", tags=["user-roles"])

PageSize = Annotated[int, Query(alias="pageSize", ge=1, le=100)]


@router.get("", dependencies=[Depends(require_permission("users:read"))])
async def list_users(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    search: Optional[str] = None,
    status: Optional[str] = None,
) -> dict:
    result = await UserService(session).list_paginated(page, page_size, search, status)
    return ok(result["data"], pagination=result["pagination"])


@router.get("/{user_id}", dependencies=[Depends(require_permission("users:read"))])
async def get_user(user_id: str, session: SessionDep) -> dict:
    return ok(serialize_user(await UserService(session).get(user_id)))


@router.post(
    "", status_code=201, dependencies=[Depends(require_permission("users:write"))]
)
async def create_user(payload: UserCreate, session: SessionDep) -> dict:
    user = await UserService(session).create(**payload.model_dump())
    await session.commit()
    return ok(serialize_user(user), message="User created successfully")


@router.put("/{user_id}", dependencies=[Depends(require_permission("users:write"))])
async def update_user(user_id: str, payload: UserUpdate, session: SessionDep) -> dict:
    user = await UserService(session).update(
        user_id, **payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    return ok(serialize_user(user), message="User updated successfully")


@router.delete(
    "/{user_id}", dependencies=[Depends(require_permission("users:delete"))]
)
async def delete_user(user_id: str, session: SessionDep) -> dict:
    await UserService(session).delete(user_id)
    await session.commit()
    return ok(message="User deleted successfully")


@router.post(
    "/{user_id}/activate", dependencies=[Depends(require_permission("users:write"))]
)
async def activate_user(user_id: str, session: SessionDep) -> dict:
    """Approve a pending user."""
    user = await UserService(session).activate(user_id)
    await session.commit()
    return ok(serialize_user(user), message="User activated successfully")


@router.post(
    "/{user_id}/developer", dependencies=[Depends(require_permission("users:write"))]
)
async def link_developer(
    user_id: str, payload: LinkDeveloperRequest, session: SessionDep
) -> dict:
    user = await UserService(session).link_developer(user_id, payload.developer_id)
    await session.commit()
    return ok(serialize_user(user))


@router.delete(
    "/{user_id}/developer", dependencies=[Depends(require_permission("users:write"))]
)
async def unlink_developer(user_id: str, session: SessionDep) -> dict:
    user = await UserService(session).unlink_developer(user_id)
    await session.commit()
    return ok(serialize_user(user))


@roles_router.get(
    "/permissions", dependencies=[Depends(require_permission("user-roles:read"))]
)
async def list_permissions() -> dict:
    return ok(
        [{"name": name, "description": desc} for name, desc in STANDARD_PERMISSIONS]
    )


@roles_router.get("", dependencies=[Depends(require_permission("user-roles:read"))])
async def list_roles(
    session: SessionDep,
    page: int = 1,
    page_size: PageSize = 10,
    sort_by: Annotated[str, Query(alias="sortBy")] = "name",
    sort_order: Annotated[str, Query(alias="sortOrder")] = "asc",
    search: Optional[str] = None,
) -> dict:
    result = await UserRoleService(session).list_paginated(
        page, page_size, sort_by, sort_order, search
    )
    return ok(result["data"], pagination=result["pagination"])


@roles_router.get(
    "/{role_id}", dependencies=[Depends(require_permission("user-roles:read"))]
)
async def get_role(role_id: str, session: SessionDep) -> dict:
    return ok(serialize_role(await UserRoleService(session).get(role_id)))


@roles_router.post(
    "", status_code=201, dependencies=[Depends(require_permission("user-roles:write"))]
)
async def create_role(payload: UserRoleCreate, session: SessionDep) -> dict:
    role = await UserRoleService(session).create(**payload.model_dump())
    await session.commit()
    return ok(serialize_role(role), message="Role created successfully")


@roles_router.put(
    "/{role_id}", dependencies=[Depends(require_permission("user-roles:write"))]
)
async def update_role(
    role_id: str, payload: UserRoleUpdate, session: SessionDep
) -> dict:
    role = await UserRoleService(session).update(
        role_id, **payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    return ok(serialize_role(role), message="Role updated successfully")


@roles_router.delete(
    "/{role_id}", dependencies=[Depends(require_permission("user-roles:delete"))]
)
async def delete_role(role_id: str, session: SessionDep) -> dict:
    await UserRoleService(session).delete(role_id)
    await session.commit()
    return ok(message="Role deleted successfully")
