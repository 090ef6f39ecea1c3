"""Celery tasks for scheduled repository syncs.

- dispatch_scheduled_syncs: enqueue an incremental sync per repository
- run_repository_sync: run one sync to completion in the worker process
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import select

from devops_insights.db import Database, require_database_uri
from devops_insights.exceptions import ConflictError
from devops_insights.models import Repository, SyncType
from devops_insights.sync.orchestrator import SyncService
from devops_insights.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _create_database() -> Database:
    # Engines are bound to the event loop; each task run gets its own.
    return Database(require_database_uri())


def _build_sync_service(database: Database) -> SyncService:
    return SyncService(database)


async def _list_repository_ids() -> list[str]:
    database = _create_database()
    try:
        async with database.session() as session:
            result = await session.execute(
                select(Repository.id).order_by(Repository.name)
            )
            return [str(repository_id) for repository_id in result.scalars().all()]
    finally:
        await database.close()


async def _run_sync(repository_id: str, sync_type: str) -> dict[str, Any]:
    database = _create_database()
    try:
        service = _build_sync_service(database)
        try:
            job = await service.start_sync(repository_id, sync_type)
        except ConflictError:
            logger.info(
                "Sync already running for repository %s, skipping", repository_id
            )
            return {"repositoryId": repository_id, "status": "skipped"}
        job = await service.wait_for_job(job.id)
        return {
            "repositoryId": repository_id,
            "jobId": str(job.id),
            "status": job.status,
            "error": job.error,
        }
    finally:
        await database.close()


@celery_app.task(bind=True)
def dispatch_scheduled_syncs(self) -> dict:
    """Enqueue an incremental sync for every registered repository."""
    repository_ids = asyncio.run(_list_repository_ids())
    for repository_id in repository_ids:
        run_repository_sync.apply_async(
            kwargs={
                "repository_id": repository_id,
                "sync_type": SyncType.INCREMENTAL.value,
            },
            queue="sync",
        )
    logger.info("Scheduled sync dispatch: dispatched=%d", len(repository_ids))
    return {"dispatched": repository_ids}


@celery_app.task(bind=True, queue="sync")
def run_repository_sync(
    self,
    repository_id: str,
    sync_type: str = SyncType.INCREMENTAL.value,
) -> dict:
    logger.info(
        "Starting %s sync task for repository %s (task %s)",
        sync_type,
        repository_id,
        self.request.id,
    )
    result = asyncio.run(_run_sync(repository_id, sync_type))
    logger.info(
        "Sync task for repository %s finished: %s", repository_id, result["status"]
    )
    return result
