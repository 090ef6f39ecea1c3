"""Dashboard user and access-role CRUD services."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import bcrypt
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from devops_insights.exceptions import ConflictError, NotFoundError, ValidationError
from devops_insights.models import (
    DEFAULT_ROLES,
    Developer,
    User,
    UserRole,
    UserStatus,
    ViewScope,
)
from devops_insights.utils.logging import sanitize_for_log
from devops_insights.utils.pagination import (
    build_pagination,
    normalize_page,
    parse_uuid,
)

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 6


def _hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def serialize_role(role: UserRole | None) -> dict[str, Any] | None:
    if role is None:
        return None
    return {
        "id": str(role.id),
        "name": role.name,
        "description": role.description,
        "permissions": list(role.permissions or []),
        "isSystem": role.is_system,
        "isDefault": role.is_default,
    }


def serialize_user(user: User) -> dict[str, Any]:
    """Public view of a user. Never includes the password hash."""
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "login": user.login,
        "isActive": user.is_active,
        "status": user.status,
        "viewScope": user.view_scope,
        "azureAdId": user.azure_ad_id,
        "azureAdEmail": user.azure_ad_email,
        "developerId": str(user.developer_id) if user.developer_id else None,
        "role": serialize_role(user.role),
        "permissions": user.permissions,
        "lastLogin": user.last_login.isoformat() if user.last_login else None,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


def _check_password(password: str) -> None:
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
        )


class UserService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: Any) -> User | None:
        return await self.session.get(User, parse_uuid(user_id, "user id"))

    async def get(self, user_id: Any) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_by_email_or_login(self, identifier: str) -> User | None:
        value = identifier.strip().lower()
        stmt = select(User).where(
            or_(func.lower(User.email) == value, func.lower(User.login) == value)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_all(self) -> list[User]:
        result = await self.session.execute(
            select(User).order_by(User.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_paginated(
        self,
        page: int = 1,
        page_size: int = 10,
        search: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        page, page_size, offset = normalize_page(page, page_size)
        stmt = select(User)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(User.name).like(pattern),
                    func.lower(User.email).like(pattern),
                    func.lower(User.login).like(pattern),
                )
            )
        if status:
            stmt = stmt.where(User.status == status)
        total = await self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        )
        result = await self.session.execute(
            stmt.order_by(User.created_at.desc()).offset(offset).limit(page_size)
        )
        return {
            "data": [serialize_user(u) for u in result.scalars().all()],
            "pagination": build_pagination(page, page_size, total or 0),
        }

    async def _ensure_unique(
        self, email: str | None, login: str | None, exclude_id: Any = None
    ) -> None:
        if email:
            stmt = select(User.id).where(func.lower(User.email) == email.lower())
            if exclude_id is not None:
                stmt = stmt.where(User.id != exclude_id)
            if await self.session.scalar(stmt):
                raise ConflictError("Email already in use", code="EMAIL_ALREADY_EXISTS")
        if login:
            stmt = select(User.id).where(func.lower(User.login) == login.lower())
            if exclude_id is not None:
                stmt = stmt.where(User.id != exclude_id)
            if await self.session.scalar(stmt):
                raise ConflictError("Login already in use", code="LOGIN_ALREADY_EXISTS")

    async def _resolve_role(self, role_id: Any) -> UserRole:
        if role_id:
            role = await self.session.get(UserRole, parse_uuid(role_id, "role id"))
            if role is None:
                raise NotFoundError("Role not found", code="ROLE_NOT_FOUND")
            return role
        role = await UserRoleService(self.session).get_default()
        if role is None:
            raise ValidationError(
                "No default role configured", code="DEFAULT_ROLE_NOT_FOUND"
            )
        return role

    async def create(
        self,
        name: str,
        email: str,
        login: str,
        password: str,
        role_id: Any = None,
        is_active: bool = True,
        view_scope: str = ViewScope.OWN.value,
    ) -> User:
        _check_password(password)
        await self._ensure_unique(email, login)
        role = await self._resolve_role(role_id)
        user = User(
            name=name,
            email=email.strip().lower(),
            login=login.strip(),
            password=_hash_password(password),
            role=role,
            is_active=is_active,
            status=UserStatus.ACTIVE.value if is_active else UserStatus.INACTIVE.value,
            view_scope=view_scope,
        )
        self.session.add(user)
        await self.session.flush()
        logger.info("Created user %s", sanitize_for_log(user.email))
        return user

    async def update(self, user_id: Any, **fields: Any) -> User:
        user = await self.get(user_id)
        await self._ensure_unique(
            fields.get("email"), fields.get("login"), exclude_id=user.id
        )
        if fields.get("name") is not None:
            user.name = fields["name"]
        if fields.get("email") is not None:
            user.email = fields["email"].strip().lower()
        if fields.get("login") is not None:
            user.login = fields["login"].strip()
        if fields.get("password"):
            _check_password(fields["password"])
            user.password = _hash_password(fields["password"])
        if fields.get("role_id") is not None:
            user.role = await self._resolve_role(fields["role_id"])
        if fields.get("is_active") is not None:
            user.is_active = fields["is_active"]
            user.status = (
                UserStatus.ACTIVE.value if user.is_active else UserStatus.INACTIVE.value
            )
        if fields.get("view_scope") is not None:
            if fields["view_scope"] not in {s.value for s in ViewScope}:
                raise ValidationError(f"Invalid view scope: {fields['view_scope']}")
            user.view_scope = fields["view_scope"]
        await self.session.flush()
        return user

    async def delete(self, user_id: Any) -> None:
        user = await self.get(user_id)
        await self.session.delete(user)
        await self.session.flush()
        logger.info("Deleted user %s", sanitize_for_log(user.email))

    async def activate(self, user_id: Any) -> User:
        """Approve a pending (Azure AD) user."""
        user = await self.get(user_id)
        if user.status == UserStatus.ACTIVE.value and user.is_active:
            raise ValidationError("User is already active", code="USER_ALREADY_ACTIVE")
        user.status = UserStatus.ACTIVE.value
        user.is_active = True
        await self.session.flush()
        logger.info("Activated user %s", sanitize_for_log(user.email))
        return user

    async def link_developer(self, user_id: Any, developer_id: Any) -> User:
        developer = await self.session.get(
            Developer, parse_uuid(developer_id, "developer id")
        )
        if developer is None:
            raise NotFoundError("Developer not found", code="DEVELOPER_NOT_FOUND")
        user = await self.get(user_id)
        user.developer_id = developer.id
        await self.session.flush()
        return user

    async def unlink_developer(self, user_id: Any) -> User:
        user = await self.get(user_id)
        user.developer_id = None
        await self.session.flush()
        return user

    async def auto_link_developer(
        self, user: User, email: str, azure_ad_id: str | None = None
    ) -> Developer | None:
        """Link ``user`` to the developer with the same email or Azure id."""
        clauses = [func.lower(Developer.email) == email.lower()]
        if azure_ad_id:
            clauses.append(Developer.azure_id == azure_ad_id)
        result = await self.session.execute(
            select(Developer).where(or_(*clauses)).limit(1)
        )
        developer = result.scalar_one_or_none()
        if developer is None:
            logger.info(
                "No matching developer found for user %s", sanitize_for_log(email)
            )
            return None
        user.developer_id = developer.id
        await self.session.flush()
        logger.info("Linked user %s with developer %s", user.id, developer.id)
        return developer


class UserRoleService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, role_id: Any) -> UserRole:
        role = await self.session.get(UserRole, parse_uuid(role_id, "role id"))
        if role is None:
            raise NotFoundError("Role not found", code="ROLE_NOT_FOUND")
        return role

    async def get_by_name(self, name: str) -> UserRole | None:
        result = await self.session.execute(
            select(UserRole).where(UserRole.name == name)
        )
        return result.scalar_one_or_none()

    async def get_default(self) -> UserRole | None:
        result = await self.session.execute(
            select(UserRole).where(UserRole.is_default.is_(True)).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[UserRole]:
        result = await self.session.execute(select(UserRole).order_by(UserRole.name))
        return list(result.scalars().all())

    async def list_paginated(
        self,
        page: int = 1,
        page_size: int = 10,
        sort_by: str = "name",
        sort_order: str = "asc",
        search: str | None = None,
    ) -> dict[str, Any]:
        page, page_size, offset = normalize_page(page, page_size)
        stmt = select(UserRole)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(UserRole.name).like(pattern),
                    func.lower(UserRole.description).like(pattern),
                )
            )
        column = getattr(UserRole, sort_by, None)
        if column is None or sort_by not in ("name", "created_at", "updated_at"):
            column = UserRole.name
        order = column.desc() if sort_order == "desc" else column.asc()
        total = await self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        )
        result = await self.session.execute(
            stmt.order_by(order).offset(offset).limit(page_size)
        )
        return {
            "data": [serialize_role(r) for r in result.scalars().all()],
            "pagination": build_pagination(page, page_size, total or 0),
        }

    async def _ensure_single_default(self, exclude_id: Any = None) -> None:
        stmt = select(UserRole.id).where(UserRole.is_default.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(UserRole.id != exclude_id)
        if await self.session.scalar(stmt):
            raise ConflictError(
                "Another role is already the default role", code="DEFAULT_ROLE_EXISTS"
            )

    async def create(
        self,
        name: str,
        permissions: list[str],
        description: str | None = None,
        is_default: bool = False,
        is_system: bool = False,
    ) -> UserRole:
        if await self.get_by_name(name) is not None:
            raise ConflictError(f"Role '{name}' already exists")
        if is_default:
            await self._ensure_single_default()
        role = UserRole(
            name=name,
            description=description,
            permissions=list(permissions),
            is_default=is_default,
            is_system=is_system,
        )
        self.session.add(role)
        await self.session.flush()
        logger.info("Created user role %s", sanitize_for_log(name))
        return role

    async def update(self, role_id: Any, **fields: Any) -> UserRole:
        role = await self.get(role_id)
        if fields.get("name") and fields["name"] != role.name:
            if await self.get_by_name(fields["name"]) is not None:
                raise ConflictError(f"Role '{fields['name']}' already exists")
            role.name = fields["name"]
        if fields.get("description") is not None:
            role.description = fields["description"]
        if fields.get("permissions") is not None:
            role.permissions = list(fields["permissions"])
        if fields.get("is_default") is not None:
            if fields["is_default"]:
                await self._ensure_single_default(exclude_id=role.id)
            role.is_default = fields["is_default"]
        await self.session.flush()
        return role

    async def delete(self, role_id: Any) -> None:
        role = await self.get(role_id)
        if role.is_system:
            raise ValidationError(
                "System roles cannot be deleted", code="SYSTEM_ROLE"
            )
        in_use = await self.session.scalar(
            select(func.count()).select_from(User).where(User.role_id == role.id)
        )
        if in_use:
            raise ConflictError(
                "Role is assigned to users and cannot be deleted", code="ROLE_IN_USE"
            )
        await self.session.delete(role)
        await self.session.flush()
        logger.info("Deleted user role %s", sanitize_for_log(role.name))

    async def seed_defaults(self) -> list[UserRole]:
        """Create the built-in roles that are missing. Existing rows are kept."""
        created = []
        for name, definition in DEFAULT_ROLES.items():
            if await self.get_by_name(name) is not None:
                continue
            if definition["is_default"] and await self.get_default() is not None:
                definition = {**definition, "is_default": False}
            created.append(
                await self.create(
                    name,
                    definition["permissions"],
                    description=definition["description"],
                    is_default=definition["is_default"],
                    is_system=definition["is_system"],
                )
            )
        return created
