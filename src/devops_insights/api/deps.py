"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from typing import Annotated, Any, Callable

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from devops_insights.db import session_dependency
from devops_insights.exceptions import ForbiddenError, UnauthorizedError
from devops_insights.models import User
from devops_insights.services.auth import AuthService, extract_token_from_header
from devops_insights.services.permissions import has_permission
from devops_insights.sync.orchestrator import SyncService, get_sync_service


SessionDep = Annotated[AsyncSession, Depends(session_dependency)]


def get_access_token(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Bearer token from the Authorization header.

    Raises UnauthorizedError (401) when missing or malformed.
    """
    if not authorization:
        raise UnauthorizedError("Access token required", code="MISSING_TOKEN")
    token = extract_token_from_header(authorization)
    if not token:
        raise UnauthorizedError(
            "Invalid authorization header", code="INVALID_TOKEN"
        )
    return token


async def get_current_user(
    session: SessionDep,
    token: Annotated[str, Depends(get_access_token)],
) -> User:
    return await AuthService(session).verify(token)


CurrentUser = Annotated[User, Depends(get_current_user)]


def require_permission(permission: str) -> Callable[..., Any]:
    """Dependency factory rejecting users without ``permission`` (403)."""

    async def dependency(user: CurrentUser) -> User:
        if not has_permission(user, permission):
            raise ForbiddenError(
                f"Missing permission: {permission}",
                details={"required": permission},
            )
        return user

    return dependency


def sync_service_dependency() -> SyncService:
    return get_sync_service()


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    """Success envelope used by every endpoint."""
    return {"success": True, "data": data, **extra}
