from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import select

from conftest import make_developer
from devops_insights.exceptions import (
    ConflictError,
    UnauthorizedError,
    ValidationError,
)
from devops_insights.models import UserToken
from devops_insights.services.auth import (
    JWT_ALGORITHM,
    AuthService,
    extract_token_from_header,
)
from devops_insights.services.permissions import has_any_permission, has_permission
from devops_insights.services.users import UserRoleService, UserService


async def _create_user(session, access_roles, **fields):
    values = {
        "name": "Dana Admin",
        "email": "Dana@Contoso.com",
        "login": "dana",
        "password": "s3cret!",
        "role_id": access_roles["admin"].id,
    }
    values.update(fields)
    return await UserService(session).create(**values)


@pytest.mark.asyncio
async def test_login_by_email_or_login(session, access_roles):
    user = await _create_user(session, access_roles)
    service = AuthService(session)

    result = await service.login("dana@contoso.com", "s3cret!")
    assert result["user"]["id"] == str(user.id)
    assert "password" not in result["user"]
    assert result["tokenType"] == "bearer"

    payload = jwt.decode(
        result["accessToken"], "test-jwt-secret", algorithms=[JWT_ALGORITHM]
    )
    assert payload["sub"] == str(user.id)
    assert payload["type"] == "access"
    assert payload["role"] == "admin"

    again = await service.login("DANA", "s3cret!")
    assert again["accessToken"] != result["accessToken"]
    assert user.last_login is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "identifier, password",
    [("dana", "wrong-password"), ("nobody@contoso.com", "s3cret!")],
)
async def test_login_rejects_bad_credentials(
    session, access_roles, identifier, password
):
    await _create_user(session, access_roles)

    with pytest.raises(UnauthorizedError) as excinfo:
        await AuthService(session).login(identifier, password)
    assert excinfo.value.code == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_login_rejects_inactive_user(session, access_roles):
    await _create_user(session, access_roles, is_active=False)

    with pytest.raises(UnauthorizedError) as excinfo:
        await AuthService(session).login("dana", "s3cret!")
    assert excinfo.value.code == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_verify_and_logout(session, access_roles):
    user = await _create_user(session, access_roles)
    service = AuthService(session)
    tokens = await service.login("dana", "s3cret!")

    assert (await service.verify(tokens["accessToken"])).id == user.id

    await service.logout(tokens["accessToken"])
    with pytest.raises(UnauthorizedError) as excinfo:
        await service.verify(tokens["accessToken"])
    assert excinfo.value.code == "REVOKED_TOKEN"


@pytest.mark.asyncio
async def test_verify_rejects_unknown_and_expired_tokens(session, access_roles):
    await _create_user(session, access_roles)
    service = AuthService(session)

    with pytest.raises(UnauthorizedError) as excinfo:
        await service.verify("not-a-token")
    assert excinfo.value.code == "INVALID_TOKEN"

    tokens = await service.login("dana", "s3cret!")
    row = await session.scalar(
        select(UserToken).where(UserToken.access_token == tokens["accessToken"])
    )
    row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await session.flush()

    with pytest.raises(UnauthorizedError) as excinfo:
        await service.verify(tokens["accessToken"])
    assert excinfo.value.code == "EXPIRED_TOKEN"


@pytest.mark.asyncio
async def test_verify_rejects_deactivated_user(session, access_roles):
    user = await _create_user(session, access_roles)
    service = AuthService(session)
    tokens = await service.login("dana", "s3cret!")

    await UserService(session).update(user.id, is_active=False)

    with pytest.raises(UnauthorizedError) as excinfo:
        await service.verify(tokens["accessToken"])
    assert excinfo.value.code == "USER_INACTIVE"


@pytest.mark.asyncio
async def test_refresh_rotates_tokens(session, access_roles):
    await _create_user(session, access_roles)
    service = AuthService(session)
    tokens = await service.login("dana", "s3cret!")

    refreshed = await service.refresh(tokens["refreshToken"])
    assert refreshed["accessToken"] != tokens["accessToken"]
    await service.verify(refreshed["accessToken"])

    with pytest.raises(UnauthorizedError) as excinfo:
        await service.refresh(tokens["refreshToken"])
    assert excinfo.value.code == "INVALID_REFRESH_TOKEN"


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(session, access_roles):
    await _create_user(session, access_roles)
    service = AuthService(session)
    tokens = await service.login("dana", "s3cret!")

    with pytest.raises(UnauthorizedError):
        await service.refresh(tokens["accessToken"])


@pytest.mark.asyncio
async def test_change_password_revokes_tokens(session, access_roles):
    user = await _create_user(session, access_roles)
    service = AuthService(session)
    tokens = await service.login("dana", "s3cret!")

    with pytest.raises(ValidationError):
        await service.change_password(user.id, "wrong", "n3w-secret")

    await service.change_password(user.id, "s3cret!", "n3w-secret")

    with pytest.raises(UnauthorizedError):
        await service.verify(tokens["accessToken"])
    await service.login("dana", "n3w-secret")


@pytest.mark.asyncio
async def test_azure_ad_signup_is_pending(session, access_roles):
    developer = make_developer(session, "erin@contoso.com", azure_id="aad-erin")
    await session.flush()
    service = AuthService(session)

    result = await service.login_with_azure_ad(
        "aad-erin", "Erin@contoso.com", "Erin"
    )

    assert result["requiresApproval"] is True
    assert result["accessToken"] is None
    user_data = result["user"]
    assert user_data["status"] == "pending"
    assert user_data["isActive"] is False
    assert user_data["login"] == "Erin"
    assert user_data["role"]["name"] == "user"
    assert user_data["developerId"] == str(developer.id)

    await UserService(session).activate(user_data["id"])
    result = await service.login_with_azure_ad("aad-erin", "erin@contoso.com", "Erin")
    assert result["requiresApproval"] is False
    assert result["accessToken"]


@pytest.mark.asyncio
async def test_duplicate_user_conflicts(session, access_roles):
    await _create_user(session, access_roles)
    with pytest.raises(ConflictError) as excinfo:
        await _create_user(session, access_roles, login="other")
    assert excinfo.value.code == "EMAIL_ALREADY_EXISTS"


@pytest.mark.asyncio
async def test_short_password_rejected(session, access_roles):
    with pytest.raises(ValidationError):
        await _create_user(session, access_roles, password="12345")


@pytest.mark.asyncio
async def test_permissions_follow_role(session, access_roles):
    admin = await _create_user(session, access_roles)
    viewer = await _create_user(
        session,
        access_roles,
        email="vic@contoso.com",
        login="vic",
        role_id=access_roles["user"].id,
    )

    assert has_permission(admin, "system-config:write")
    assert not has_permission(viewer, "system-config:write")
    assert has_permission(viewer, "reports:read")
    assert not has_permission(admin, "made:up")
    assert has_any_permission(viewer, "users:write", "users:read")


@pytest.mark.asyncio
async def test_role_rules(session, access_roles):
    roles = UserRoleService(session)

    with pytest.raises(ValidationError):
        await roles.delete(access_roles["admin"].id)
    with pytest.raises(ConflictError):
        await roles.create("auditor", ["reports:read"], is_default=True)

    auditor = await roles.create("auditor", ["reports:read"])
    await _create_user(session, access_roles, role_id=auditor.id)
    with pytest.raises(ConflictError) as excinfo:
        await roles.delete(auditor.id)
    assert excinfo.value.code == "ROLE_IN_USE"


@pytest.mark.asyncio
async def test_seed_defaults_is_idempotent(session):
    roles = UserRoleService(session)

    created = await roles.seed_defaults()
    assert sorted(role.name for role in created) == ["admin", "user"]
    assert (await roles.get_default()).name == "user"
    assert await roles.seed_defaults() == []


def test_extract_token_from_header():
    assert extract_token_from_header("Bearer abc") == "abc"
    assert extract_token_from_header("bearer abc") == "abc"
    assert extract_token_from_header("Basic abc") is None
    assert extract_token_from_header("Bearer") is None
    assert extract_token_from_header(None) is None
