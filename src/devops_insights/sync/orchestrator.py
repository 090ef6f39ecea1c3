"""Sync job orchestration.

:class:`SyncService` guards each repository with an advisory lock in the
key-value store, records every attempt as a :class:`SyncJob` row and runs
the pipeline as a detached asyncio task.

The lock has a TTL and no fencing token: a sync that outlives the TTL can
overlap with a newer one. Cancellation only flips the job row; the running
pipeline finishes its current work.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload

from devops_insights.db import Database, get_database
from devops_insights.exceptions import ConflictError, NotFoundError, ValidationError
from devops_insights.models import Repository, SyncJob, SyncJobStatus, SyncType
from devops_insights.services.cache import (
    SYNC_LOCK_TTL_SECONDS,
    CacheBackend,
    CacheKeys,
    get_kv_store,
)
from devops_insights.sync.pipeline import AzureSyncService
from devops_insights.utils.pagination import (
    build_pagination,
    normalize_page,
    parse_uuid,
)

logger = logging.getLogger(__name__)

SYNC_TIMEOUTS = {
    SyncType.FULL.value: 1800,
    SyncType.INCREMENTAL.value: 900,
}
CANCELLED_MESSAGE = "Cancelled by user"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_job(job: SyncJob, include_repository: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(job.id),
        "repositoryId": str(job.repository_id),
        "status": job.status,
        "syncType": job.sync_type,
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "error": job.error,
        "createdAt": _iso(job.created_at),
        "updatedAt": _iso(job.updated_at),
    }
    if include_repository and job.repository is not None:
        data["repository"] = {
            "id": str(job.repository.id),
            "name": job.repository.name,
            "organization": job.repository.organization,
            "project": job.repository.project,
        }
    return data


class SyncService:
    """Starts, tracks and cancels repository syncs."""

    def __init__(
        self,
        database: Database,
        kv_store: Optional[CacheBackend] = None,
        pipeline: Optional[AzureSyncService] = None,
    ):
        self.database = database
        self.kv_store = kv_store or get_kv_store()
        self.pipeline = pipeline or AzureSyncService(database)
        self._tasks: Dict[uuid.UUID, asyncio.Task] = {}

    async def start_sync(
        self,
        repository_id: Any,
        sync_type: str = SyncType.INCREMENTAL.value,
    ) -> SyncJob:
        """Create a pending job and launch the pipeline in the background.

        Raises ConflictError without creating a job when a sync of the
        repository already holds the lock.
        """
        if sync_type not in SYNC_TIMEOUTS:
            raise ValidationError(f"Invalid sync type: {sync_type}")
        repository_id = parse_uuid(repository_id, "repository id")

        async with self.database.session() as session:
            repository = await session.get(Repository, repository_id)
        if repository is None:
            raise NotFoundError("Repository not found")

        lock_key = CacheKeys.sync_lock(repository_id)
        acquired = self.kv_store.set_if_absent(
            lock_key,
            {"acquiredAt": datetime.now(timezone.utc).isoformat()},
            SYNC_LOCK_TTL_SECONDS,
        )
        if not acquired:
            raise ConflictError("Sync already running for this repository")

        try:
            async with self.database.session() as session:
                job = SyncJob(
                    repository_id=repository_id,
                    status=SyncJobStatus.PENDING.value,
                    sync_type=sync_type,
                )
                session.add(job)
        except Exception:
            self.kv_store.delete(lock_key)
            raise

        logger.info(
            "Queued %s sync job %s for repository %s", sync_type, job.id, repository_id
        )
        task = asyncio.create_task(
            self._perform_sync(job.id, repository_id, sync_type),
            name=f"sync-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return job

    async def _set_job(self, job_id: uuid.UUID, **values: Any) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(SyncJob).where(SyncJob.id == job_id).values(**values)
            )

    async def _perform_sync(
        self,
        job_id: uuid.UUID,
        repository_id: uuid.UUID,
        sync_type: str,
    ) -> None:
        lock_key = CacheKeys.sync_lock(repository_id)
        timeout = SYNC_TIMEOUTS[sync_type]
        try:
            await self._set_job(
                job_id,
                status=SyncJobStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            )
            await asyncio.wait_for(
                self.pipeline.sync_repository(repository_id, sync_type),
                timeout=timeout,
            )
            now = datetime.now(timezone.utc)
            async with self.database.session() as session:
                await session.execute(
                    update(Repository)
                    .where(Repository.id == repository_id)
                    .values(last_sync_at=now)
                )
                await session.execute(
                    update(SyncJob)
                    .where(
                        SyncJob.id == job_id,
                        SyncJob.status == SyncJobStatus.RUNNING.value,
                    )
                    .values(status=SyncJobStatus.COMPLETED.value, completed_at=now)
                )
            logger.info("Sync job %s completed", job_id)
        except asyncio.TimeoutError:
            message = f"Sync timeout after {timeout // 60} minutes"
            logger.error("Sync job %s failed: %s", job_id, message)
            await self._fail_job(job_id, message)
        except Exception as e:
            logger.error("Sync job %s failed: %s", job_id, e, exc_info=True)
            await self._fail_job(job_id, str(e) or e.__class__.__name__)
        finally:
            self.kv_store.delete(lock_key)

    async def _fail_job(self, job_id: uuid.UUID, message: str) -> None:
        try:
            async with self.database.session() as session:
                await session.execute(
                    update(SyncJob)
                    .where(
                        SyncJob.id == job_id,
                        SyncJob.status.in_(
                            [SyncJobStatus.PENDING.value, SyncJobStatus.RUNNING.value]
                        ),
                    )
                    .values(
                        status=SyncJobStatus.FAILED.value,
                        completed_at=datetime.now(timezone.utc),
                        error=message,
                    )
                )
        except Exception:
            logger.exception("Could not record failure of sync job %s", job_id)

    async def wait_for_job(self, job_id: Any) -> SyncJob:
        """Wait for a job started by this service and return its final row."""
        job_id = parse_uuid(job_id, "job id")
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_job(job_id)

    async def get_job(self, job_id: Any) -> SyncJob:
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncJob)
                .options(selectinload(SyncJob.repository))
                .where(SyncJob.id == parse_uuid(job_id, "job id"))
            )
            job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError("Sync job not found")
        return job

    async def get_sync_status(self, repository_id: Any) -> Dict[str, Any]:
        repository_id = parse_uuid(repository_id, "repository id")
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncJob)
                .options(selectinload(SyncJob.repository))
                .where(SyncJob.repository_id == repository_id)
                .order_by(SyncJob.created_at.desc())
                .limit(1)
            )
            job = result.scalar_one_or_none()
        if job is None:
            return {"status": "no_jobs", "repositoryId": str(repository_id)}
        data = serialize_job(job, include_repository=True)
        data["repository"]["lastSyncAt"] = _iso(job.repository.last_sync_at)
        return data

    async def get_sync_history(
        self, repository_id: Any, page: int = 1, page_size: int = 10
    ) -> Dict[str, Any]:
        repository_id = parse_uuid(repository_id, "repository id")
        page, page_size, offset = normalize_page(page, page_size, default_size=10)
        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count())
                .select_from(SyncJob)
                .where(SyncJob.repository_id == repository_id)
            )
            result = await session.execute(
                select(SyncJob)
                .where(SyncJob.repository_id == repository_id)
                .order_by(SyncJob.created_at.desc())
                .offset(offset)
                .limit(page_size)
            )
            jobs = list(result.scalars().all())
        return {
            "data": [serialize_job(job) for job in jobs],
            "pagination": build_pagination(page, page_size, total or 0),
        }

    async def get_all_jobs(
        self, page: int = 1, page_size: int = 20, status: Optional[str] = None
    ) -> Dict[str, Any]:
        page, page_size, offset = normalize_page(page, page_size, default_size=20)
        filters = []
        if status:
            filters.append(SyncJob.status == status)
        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(SyncJob).where(*filters)
            )
            result = await session.execute(
                select(SyncJob)
                .options(selectinload(SyncJob.repository))
                .where(*filters)
                .order_by(SyncJob.created_at.desc())
                .offset(offset)
                .limit(page_size)
            )
            jobs = list(result.scalars().all())
        return {
            "data": [serialize_job(job, include_repository=True) for job in jobs],
            "pagination": build_pagination(page, page_size, total or 0),
        }

    async def cancel_sync(self, repository_id: Any) -> Dict[str, Any]:
        """Release the lock and fail running jobs of the repository."""
        repository_id = parse_uuid(repository_id, "repository id")
        self.kv_store.delete(CacheKeys.sync_lock(repository_id))
        async with self.database.session() as session:
            result = await session.execute(
                update(SyncJob)
                .where(
                    SyncJob.repository_id == repository_id,
                    SyncJob.status == SyncJobStatus.RUNNING.value,
                )
                .values(
                    status=SyncJobStatus.FAILED.value,
                    completed_at=datetime.now(timezone.utc),
                    error=CANCELLED_MESSAGE,
                )
            )
            cancelled = result.rowcount or 0
        logger.info(
            "Cancelled %d running sync jobs of repository %s", cancelled, repository_id
        )
        return {"repositoryId": str(repository_id), "cancelledJobs": cancelled}


_sync_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """Process-wide orchestrator so background tasks outlive requests."""
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService(get_database())
    return _sync_service


def set_sync_service(service: Optional[SyncService]) -> None:
    global _sync_service
    _sync_service = service
