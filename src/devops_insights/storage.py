"""Persistence gateway for the sync pipeline.

Each public coroutine opens its own short session and commits on exit, so
a sync that fails half way leaves every row written so far in place.
Writes are upserts keyed on the upstream ``azure_id`` and can be repeated.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from devops_insights.db import Database
from devops_insights.models import (
    Comment,
    Commit,
    Developer,
    PullRequest,
    Repository,
    Review,
)
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

PULL_REQUEST_UPDATE_COLUMNS = [
    "title",
    "description",
    "status",
    "source_branch",
    "target_branch",
    "created_by_id",
    "created_at",
    "updated_at",
    "merged_at",
    "closed_at",
    "cycle_time_days",
    "is_draft",
]


class SyncStore:
    """Async upsert helpers backed by a :class:`Database` handle."""

    def __init__(self, database: Database):
        self.database = database

    def _insert_for_dialect(self, model: Any):
        dialect = self.database.engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(model)
        if dialect in ("postgres", "postgresql"):
            return pg_insert(model)
        raise ValueError(f"Unsupported SQL dialect for upserts: {dialect}")

    async def _upsert_many(
        self,
        model: Any,
        rows: List[Dict[str, Any]],
        conflict_columns: List[str],
        update_columns: List[str],
    ) -> None:
        if not rows:
            return
        stmt = self._insert_for_dialect(model)
        stmt = stmt.on_conflict_do_update(
            index_elements=[getattr(model, col) for col in conflict_columns],
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
        async with self.database.session() as session:
            await session.execute(stmt, rows)

    async def get_repository(self, repository_id: uuid.UUID) -> Repository | None:
        async with self.database.session() as session:
            return await session.get(Repository, repository_id)

    async def find_or_create_developer(
        self,
        display_name: str | None,
        unique_name: str | None,
        azure_id: str | None = None,
    ) -> Developer:
        """Return the developer for an upstream identity, creating it once.

        The login is ``uniqueName`` falling back to ``displayName``. The
        insert ignores conflicts and the row is then read back, so two
        concurrent callers for the same login end up with the same row.
        """
        login = (unique_name or display_name or "").strip()
        if not login:
            raise ValueError("Identity has neither uniqueName nor displayName")
        name = (display_name or login).strip()
        email = login if "@" in login else None

        stmt = self._insert_for_dialect(Developer).values(
            id=uuid.uuid4(),
            name=name,
            login=login,
            email=email,
            azure_id=azure_id,
        )
        stmt = stmt.on_conflict_do_nothing()

        async with self.database.session() as session:
            await session.execute(stmt)
            result = await session.execute(
                select(Developer).where(Developer.login == login)
            )
            developer = result.scalar_one_or_none()
            if developer is None:
                # Conflict was on email or azure_id held by another login.
                clauses = []
                if email:
                    clauses.append(Developer.email == email)
                if azure_id:
                    clauses.append(Developer.azure_id == azure_id)
                if clauses:
                    result = await session.execute(
                        select(Developer).where(or_(*clauses)).limit(1)
                    )
                    developer = result.scalar_one_or_none()
            if developer is None:
                raise RuntimeError(
                    f"Developer {sanitize_for_log(login)} could not be created"
                )
            return developer

    async def upsert_pull_request(self, row: Dict[str, Any]) -> uuid.UUID:
        """Upsert one pull request and return its local id."""
        row = {"id": uuid.uuid4(), **row}
        await self._upsert_many(
            PullRequest,
            [row],
            conflict_columns=["azure_id"],
            update_columns=PULL_REQUEST_UPDATE_COLUMNS,
        )
        async with self.database.session() as session:
            result = await session.execute(
                select(PullRequest.id).where(PullRequest.azure_id == row["azure_id"])
            )
            return result.scalar_one()

    async def upsert_commits(self, rows: List[Dict[str, Any]]) -> None:
        await self._upsert_many(
            Commit,
            [{"id": uuid.uuid4(), **row} for row in rows],
            conflict_columns=["azure_id"],
            update_columns=["message"],
        )

    async def upsert_reviews(self, rows: List[Dict[str, Any]]) -> None:
        now = datetime.now(timezone.utc)
        await self._upsert_many(
            Review,
            [{"id": uuid.uuid4(), "updated_at": now, **row} for row in rows],
            conflict_columns=["azure_id"],
            update_columns=["status", "vote", "updated_at"],
        )

    async def upsert_comments(self, rows: List[Dict[str, Any]]) -> None:
        await self._upsert_many(
            Comment,
            [{"id": uuid.uuid4(), **row} for row in rows],
            conflict_columns=["azure_id"],
            update_columns=["content", "updated_at"],
        )

    async def update_pull_request_file_stats(
        self,
        pull_request_id: uuid.UUID,
        files_changed: int,
        lines_added: int,
        lines_deleted: int,
    ) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(PullRequest)
                .where(PullRequest.id == pull_request_id)
                .values(
                    files_changed=files_changed,
                    lines_added=lines_added,
                    lines_deleted=lines_deleted,
                )
            )

    async def list_pull_requests_for_details(
        self,
        repository_id: uuid.UUID,
        updated_since: Optional[datetime],
        limit: int = 500,
        lookback_days: int = 180,
    ) -> List[Dict[str, Any]]:
        """PRs whose reviews, comments and file stats should be refreshed."""
        stmt = select(PullRequest.id, PullRequest.azure_id).where(
            PullRequest.repository_id == repository_id
        )
        if updated_since is not None:
            stmt = stmt.where(PullRequest.updated_at >= updated_since)
        else:
            cutoff = datetime.now(timezone.utc) - timedelta(days=lookback_days)
            stmt = stmt.where(PullRequest.created_at >= cutoff)
        stmt = stmt.order_by(PullRequest.created_at.desc()).limit(limit)

        async with self.database.session() as session:
            result = await session.execute(stmt)
            return [{"id": row.id, "azure_id": row.azure_id} for row in result]
