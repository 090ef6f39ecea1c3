"""CRUD services for teams, job roles, stacks, developers and repositories."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from devops_insights.exceptions import ConflictError, NotFoundError
from devops_insights.models import (
    Comment,
    Commit,
    Developer,
    PullRequest,
    PullRequestStatus,
    Repository,
    Review,
    Role,
    Stack,
    Team,
)
from devops_insights.services.crypto import encrypt_value
from devops_insights.utils.logging import sanitize_for_log
from devops_insights.utils.pagination import (
    build_pagination,
    normalize_page,
    parse_uuid,
)

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_team(team: Team) -> dict[str, Any]:
    return {
        "id": str(team.id),
        "name": team.name,
        "management": team.management,
        "createdAt": _iso(team.created_at),
        "updatedAt": _iso(team.updated_at),
    }


def serialize_role(role: Role) -> dict[str, Any]:
    return {
        "id": str(role.id),
        "name": role.name,
        "createdAt": _iso(role.created_at),
        "updatedAt": _iso(role.updated_at),
    }


def serialize_stack(stack: Stack) -> dict[str, Any]:
    return {
        "id": str(stack.id),
        "name": stack.name,
        "color": stack.color,
        "createdAt": _iso(stack.created_at),
        "updatedAt": _iso(stack.updated_at),
    }


def serialize_developer(developer: Developer) -> dict[str, Any]:
    return {
        "id": str(developer.id),
        "name": developer.name,
        "login": developer.login,
        "email": developer.email,
        "azureId": developer.azure_id,
        "teamId": str(developer.team_id) if developer.team_id else None,
        "roleId": str(developer.role_id) if developer.role_id else None,
        "team": serialize_team(developer.team) if developer.team else None,
        "role": serialize_role(developer.role) if developer.role else None,
        "stacks": [serialize_stack(s) for s in developer.stacks],
        "createdAt": _iso(developer.created_at),
        "updatedAt": _iso(developer.updated_at),
    }


def serialize_repository(repository: Repository) -> dict[str, Any]:
    return {
        "id": str(repository.id),
        "name": repository.name,
        "organization": repository.organization,
        "project": repository.project,
        "url": repository.url,
        "azureId": repository.azure_id,
        "teamId": str(repository.team_id) if repository.team_id else None,
        "team": serialize_team(repository.team) if repository.team else None,
        "hasAccessToken": bool(repository.access_token),
        "lastSyncAt": _iso(repository.last_sync_at),
        "createdAt": _iso(repository.created_at),
        "updatedAt": _iso(repository.updated_at),
    }


class _NamedCatalogService:
    """List/get/create/update/delete for a catalog entity with a unique name."""

    model: ClassVar[Any]
    label: ClassVar[str]
    sortable: ClassVar[tuple[str, ...]] = ("name", "created_at", "updated_at")
    fields: ClassVar[tuple[str, ...]] = ("name",)

    def __init__(self, session: AsyncSession):
        self.session = session

    def serialize(self, obj: Any) -> dict[str, Any]:
        raise NotImplementedError

    def _options(self) -> list[Any]:
        return []

    def _filters(self, search: str | None, **params: Any) -> list[Any]:
        if search:
            return [func.lower(self.model.name).like(f"%{search.lower()}%")]
        return []

    async def list_paginated(
        self,
        page: int = 1,
        page_size: int = 10,
        sort_by: str = "name",
        sort_order: str = "asc",
        search: str | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        page, page_size, offset = normalize_page(page, page_size)
        filters = self._filters(search, **params)
        total = await self.session.scalar(
            select(func.count()).select_from(self.model).where(*filters)
        )
        column = getattr(
            self.model, sort_by if sort_by in self.sortable else "name"
        )
        order = column.desc() if sort_order == "desc" else column.asc()
        result = await self.session.execute(
            select(self.model)
            .options(*self._options())
            .where(*filters)
            .order_by(order)
            .offset(offset)
            .limit(page_size)
        )
        return {
            "data": [self.serialize(obj) for obj in result.scalars().all()],
            "pagination": build_pagination(page, page_size, total or 0),
        }

    async def get(self, obj_id: Any) -> Any:
        result = await self.session.execute(
            select(self.model)
            .options(*self._options())
            .where(self.model.id == parse_uuid(obj_id))
            .execution_options(populate_existing=True)
        )
        obj = result.scalar_one_or_none()
        if obj is None:
            raise NotFoundError(f"{self.label} not found")
        return obj

    async def _ensure_unique_name(self, name: str, exclude_id: Any = None) -> None:
        stmt = select(self.model.id).where(self.model.name == name)
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        if await self.session.scalar(stmt):
            raise ConflictError(f"{self.label} with this name already exists")

    async def create(self, **data: Any) -> Any:
        await self._ensure_unique_name(data["name"])
        obj = self.model(**{k: v for k, v in data.items() if k in self.fields})
        self.session.add(obj)
        await self.session.flush()
        logger.info("Created %s %s", self.label.lower(), sanitize_for_log(obj.name))
        return await self.get(obj.id)

    async def update(self, obj_id: Any, **data: Any) -> Any:
        obj = await self.get(obj_id)
        if data.get("name") and data["name"] != obj.name:
            await self._ensure_unique_name(data["name"], exclude_id=obj.id)
        for key in self.fields:
            if data.get(key) is not None:
                setattr(obj, key, data[key])
        await self.session.flush()
        return await self.get(obj.id)

    async def _check_deletable(self, obj: Any) -> None:
        pass

    async def delete(self, obj_id: Any) -> None:
        obj = await self.get(obj_id)
        await self._check_deletable(obj)
        await self.session.delete(obj)
        await self.session.flush()
        logger.info("Deleted %s %s", self.label.lower(), sanitize_for_log(obj.name))


class TeamService(_NamedCatalogService):
    model = Team
    label = "Team"
    fields = ("name", "management")

    def serialize(self, obj: Team) -> dict[str, Any]:
        return serialize_team(obj)

    async def _check_deletable(self, obj: Team) -> None:
        developers = await self.session.scalar(
            select(func.count())
            .select_from(Developer)
            .where(Developer.team_id == obj.id)
        )
        if developers:
            raise ConflictError(
                "Cannot delete team with developers. Reassign developers first."
            )
        repositories = await self.session.scalar(
            select(func.count())
            .select_from(Repository)
            .where(Repository.team_id == obj.id)
        )
        if repositories:
            raise ConflictError(
                "Cannot delete team with repositories. Reassign repositories first."
            )


class RoleService(_NamedCatalogService):
    model = Role
    label = "Role"

    def serialize(self, obj: Role) -> dict[str, Any]:
        return serialize_role(obj)

    async def _check_deletable(self, obj: Role) -> None:
        developers = await self.session.scalar(
            select(func.count())
            .select_from(Developer)
            .where(Developer.role_id == obj.id)
        )
        if developers:
            raise ConflictError(
                "Cannot delete role with developers. Reassign developers first."
            )


class StackService(_NamedCatalogService):
    model = Stack
    label = "Stack"
    fields = ("name", "color")

    def serialize(self, obj: Stack) -> dict[str, Any]:
        return serialize_stack(obj)


class DeveloperService(_NamedCatalogService):
    model = Developer
    label = "Developer"
    sortable = ("name", "login", "email", "created_at", "updated_at")
    fields = ("name", "login", "email", "team_id", "role_id")

    def serialize(self, obj: Developer) -> dict[str, Any]:
        return serialize_developer(obj)

    def _options(self) -> list[Any]:
        return [
            selectinload(Developer.team),
            selectinload(Developer.role),
            selectinload(Developer.stacks),
        ]

    def _filters(
        self,
        search: str | None,
        team_id: str | None = None,
        role_id: str | None = None,
        stack_id: str | None = None,
        **params: Any,
    ) -> list[Any]:
        filters: list[Any] = []
        if search:
            pattern = f"%{search.lower()}%"
            filters.append(
                or_(
                    func.lower(Developer.name).like(pattern),
                    func.lower(Developer.login).like(pattern),
                )
            )
        if team_id:
            team_ids = [
                parse_uuid(t, "team id") for t in team_id.split(",") if t.strip()
            ]
            if team_ids:
                filters.append(Developer.team_id.in_(team_ids))
        if role_id:
            filters.append(Developer.role_id == parse_uuid(role_id, "role id"))
        if stack_id:
            filters.append(
                Developer.stacks.any(Stack.id == parse_uuid(stack_id, "stack id"))
            )
        return filters

    async def _ensure_unique_name(self, name: str, exclude_id: Any = None) -> None:
        # Developer names repeat; uniqueness is on login.
        return None

    async def _ensure_unique_login(self, login: str, exclude_id: Any = None) -> None:
        stmt = select(Developer.id).where(Developer.login == login)
        if exclude_id is not None:
            stmt = stmt.where(Developer.id != exclude_id)
        if await self.session.scalar(stmt):
            raise ConflictError("Developer with this login already exists")

    async def _load_stacks(self, stack_ids: list[Any]) -> list[Stack]:
        ids = [parse_uuid(s, "stack id") for s in stack_ids]
        if not ids:
            return []
        result = await self.session.execute(select(Stack).where(Stack.id.in_(ids)))
        stacks = list(result.scalars().all())
        if len(stacks) != len(set(ids)):
            raise NotFoundError("Stack not found")
        return stacks

    def _coerce_ids(self, data: dict[str, Any]) -> dict[str, Any]:
        for key in ("team_id", "role_id"):
            if data.get(key):
                data[key] = parse_uuid(data[key], key.replace("_", " "))
        return data

    async def create(self, **data: Any) -> Developer:
        await self._ensure_unique_login(data["login"])
        data = self._coerce_ids(dict(data))
        data.setdefault("email", None)
        if not data["email"]:
            data["email"] = f"{data['login']}@company.com"
        developer = Developer(**{k: v for k, v in data.items() if k in self.fields})
        developer.stacks = await self._load_stacks(data.get("stack_ids") or [])
        self.session.add(developer)
        await self.session.flush()
        logger.info("Created developer %s", sanitize_for_log(developer.login))
        return await self.get(developer.id)

    async def update(self, obj_id: Any, **data: Any) -> Developer:
        developer = await self.get(obj_id)
        if data.get("login") and data["login"] != developer.login:
            await self._ensure_unique_login(data["login"], exclude_id=developer.id)
        data = self._coerce_ids(dict(data))
        for key in self.fields:
            if data.get(key) is not None:
                setattr(developer, key, data[key])
        if data.get("stack_ids") is not None:
            developer.stacks = await self._load_stacks(data["stack_ids"])
        await self.session.flush()
        return await self.get(developer.id)


class RepositoryService(_NamedCatalogService):
    model = Repository
    label = "Repository"
    sortable = ("name", "organization", "project", "created_at", "last_sync_at")
    fields = ("name", "organization", "project", "url", "azure_id", "team_id")

    def serialize(self, obj: Repository) -> dict[str, Any]:
        return serialize_repository(obj)

    def _options(self) -> list[Any]:
        return [selectinload(Repository.team)]

    def _filters(
        self, search: str | None, team_id: str | None = None, **params: Any
    ) -> list[Any]:
        filters: list[Any] = []
        if search:
            pattern = f"%{search.lower()}%"
            filters.append(
                or_(
                    func.lower(Repository.name).like(pattern),
                    func.lower(Repository.project).like(pattern),
                )
            )
        if team_id:
            filters.append(Repository.team_id == parse_uuid(team_id, "team id"))
        return filters

    async def _ensure_unique_name(self, name: str, exclude_id: Any = None) -> None:
        return None

    async def _ensure_unique_url(self, url: str, exclude_id: Any = None) -> None:
        stmt = select(Repository.id).where(Repository.url == url)
        if exclude_id is not None:
            stmt = stmt.where(Repository.id != exclude_id)
        if await self.session.scalar(stmt):
            raise ConflictError("Repository with this URL already exists")

    async def create(self, **data: Any) -> Repository:
        await self._ensure_unique_url(data["url"])
        if data.get("team_id"):
            data["team_id"] = parse_uuid(data["team_id"], "team id")
        repository = Repository(
            **{k: v for k, v in data.items() if k in self.fields}
        )
        if data.get("access_token"):
            repository.access_token = encrypt_value(data["access_token"])
        self.session.add(repository)
        await self.session.flush()
        logger.info("Created repository %s", sanitize_for_log(repository.name))
        return await self.get(repository.id)

    async def update(self, obj_id: Any, **data: Any) -> Repository:
        repository = await self.get(obj_id)
        if data.get("url") and data["url"] != repository.url:
            await self._ensure_unique_url(data["url"], exclude_id=repository.id)
        if data.get("team_id"):
            data["team_id"] = parse_uuid(data["team_id"], "team id")
        for key in self.fields:
            if data.get(key) is not None:
                setattr(repository, key, data[key])
        if "access_token" in data:
            token = data["access_token"]
            repository.access_token = encrypt_value(token) if token else None
        await self.session.flush()
        return await self.get(repository.id)

    async def get_stats(self, obj_id: Any) -> dict[str, Any]:
        repository = await self.get(obj_id)
        pr_filter = PullRequest.repository_id == repository.id

        pr_row = (
            await self.session.execute(
                select(
                    func.count(PullRequest.id),
                    func.count(PullRequest.id).filter(
                        PullRequest.status == PullRequestStatus.COMPLETED.value
                    ),
                    func.count(PullRequest.id).filter(
                        PullRequest.status == PullRequestStatus.ACTIVE.value
                    ),
                    func.coalesce(func.sum(PullRequest.files_changed), 0),
                    func.coalesce(
                        func.sum(
                            func.coalesce(PullRequest.lines_added, 0)
                            + func.coalesce(PullRequest.lines_deleted, 0)
                        ),
                        0,
                    ),
                    func.avg(PullRequest.cycle_time_days).filter(
                        PullRequest.cycle_time_days > 0
                    ),
                ).where(pr_filter)
            )
        ).one()
        commits = await self.session.scalar(
            select(func.count(Commit.id)).where(Commit.repository_id == repository.id)
        )
        reviews = await self.session.scalar(
            select(func.count(Review.id))
            .select_from(Review)
            .join(PullRequest, Review.pull_request_id == PullRequest.id)
            .where(pr_filter)
        )
        comments = await self.session.scalar(
            select(func.count(Comment.id))
            .select_from(Comment)
            .join(PullRequest, Comment.pull_request_id == PullRequest.id)
            .where(pr_filter)
        )
        total_prs, merged, open_prs, files, lines, avg_cycle = pr_row
        return {
            "repositoryId": str(repository.id),
            "repositoryName": repository.name,
            "organization": repository.organization,
            "project": repository.project,
            "team": repository.team.name if repository.team else None,
            "totals": {
                "pullRequests": total_prs,
                "mergedPRs": merged,
                "openPRs": open_prs,
                "commits": commits or 0,
                "reviews": reviews or 0,
                "comments": comments or 0,
                "filesChanged": int(files or 0),
                "linesChanged": int(lines or 0),
            },
            "averages": {"cycleTimeDays": round(float(avg_cycle or 0))},
        }
