from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from devops_insights.api.deps import (
    CurrentUser,
    SessionDep,
    get_access_token,
    ok,
)
from devops_insights.api.schemas import (
    AzureAdLoginRequest,
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
)
from devops_insights.services.auth import AuthService
from devops_insights.services.users import serialize_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login")
async def login(payload: LoginRequest, session: SessionDep) -> dict:
    """Authenticate with email (or login) and password."""
    result = await AuthService(session).login(payload.email_or_login, payload.password)
    await session.commit()
    return ok(result, message="Login successful")


@router.post("/azure-ad")
async def login_azure_ad(payload: AzureAdLoginRequest, session: SessionDep) -> dict:
    """Sign in with an Azure AD identity already verified by the frontend.

    New identities are created pending; the response then carries no tokens
    and ``requiresApproval`` is true.
    """
    result = await AuthService(session).login_with_azure_ad(
        payload.azure_ad_id,
        payload.email,
        payload.name,
        payload.azure_ad_email,
    )
    await session.commit()
    message = (
        "Account pending approval" if result["requiresApproval"] else "Login successful"
    )
    return ok(result, message=message)


@router.post("/refresh")
async def refresh(payload: RefreshRequest, session: SessionDep) -> dict:
    result = await AuthService(session).refresh(payload.refresh_token)
    await session.commit()
    return ok(result)


@router.post("/logout")
async def logout(
    user: CurrentUser,
    session: SessionDep,
    token: Annotated[str, Depends(get_access_token)],
) -> dict:
    await AuthService(session).logout(token)
    await session.commit()
    logger.info("User %s logged out", user.id)
    return ok(message="Logout successful")


@router.get("/me")
async def me(user: CurrentUser) -> dict:
    return ok(serialize_user(user))


@router.post("/change-password")
async def change_password(
    payload: ChangePasswordRequest, user: CurrentUser, session: SessionDep
) -> dict:
    """Change the caller's password. All their tokens are revoked."""
    await AuthService(session).change_password(
        user.id, payload.current_password, payload.new_password
    )
    await session.commit()
    return ok(message="Password changed successfully")
