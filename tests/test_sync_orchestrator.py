from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from devops_insights.exceptions import ConflictError, NotFoundError, ValidationError
from devops_insights.models import Repository, SyncJob
from devops_insights.services.cache import CacheKeys
from devops_insights.sync.orchestrator import CANCELLED_MESSAGE, SyncService


def _service(database, kv_store, sync_result=None, side_effect=None) -> SyncService:
    pipeline = MagicMock()
    pipeline.sync_repository = AsyncMock(
        return_value=sync_result or {"pullRequests": 3}, side_effect=side_effect
    )
    return SyncService(database, kv_store=kv_store, pipeline=pipeline)


async def _job_count(database) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count()).select_from(SyncJob))


@pytest.mark.asyncio
async def test_successful_sync_completes_job(database, kv_store, repository):
    service = _service(database, kv_store)

    job = await service.start_sync(repository.id, "full")
    assert job.status == "pending"
    job = await service.wait_for_job(job.id)

    assert job.status == "completed"
    assert job.started_at is not None
    assert job.completed_at is not None
    assert job.error is None
    service.pipeline.sync_repository.assert_awaited_once_with(repository.id, "full")
    async with database.session() as session:
        repo = await session.get(Repository, repository.id)
    assert repo.last_sync_at is not None
    assert kv_store.get(CacheKeys.sync_lock(repository.id)) is None


@pytest.mark.asyncio
async def test_lock_held_raises_conflict_without_job(database, kv_store, repository):
    kv_store.set(CacheKeys.sync_lock(repository.id), {"acquiredAt": "now"}, 60)
    service = _service(database, kv_store)

    with pytest.raises(ConflictError):
        await service.start_sync(repository.id, "incremental")

    assert await _job_count(database) == 0
    service.pipeline.sync_repository.assert_not_awaited()


@pytest.mark.asyncio
async def test_second_start_while_running_conflicts(database, kv_store, repository):
    release = asyncio.Event()

    async def slow_sync(*args):
        await release.wait()
        return {}

    service = _service(database, kv_store, side_effect=slow_sync)
    job = await service.start_sync(repository.id, "incremental")

    with pytest.raises(ConflictError):
        await service.start_sync(repository.id, "incremental")
    assert await _job_count(database) == 1

    release.set()
    job = await service.wait_for_job(job.id)
    assert job.status == "completed"


@pytest.mark.asyncio
async def test_pipeline_failure_marks_job_failed(database, kv_store, repository):
    service = _service(database, kv_store, side_effect=RuntimeError("upstream down"))

    job = await service.start_sync(repository.id, "full")
    job = await service.wait_for_job(job.id)

    assert job.status == "failed"
    assert job.error == "upstream down"
    async with database.session() as session:
        repo = await session.get(Repository, repository.id)
    assert repo.last_sync_at is None
    assert kv_store.get(CacheKeys.sync_lock(repository.id)) is None


@pytest.mark.asyncio
async def test_timeout_marks_job_failed(database, kv_store, repository, monkeypatch):
    from devops_insights.sync import orchestrator

    monkeypatch.setitem(orchestrator.SYNC_TIMEOUTS, "full", 0.01)

    async def hang(*args):
        await asyncio.sleep(5)

    service = _service(database, kv_store, side_effect=hang)
    job = await service.start_sync(repository.id, "full")
    job = await service.wait_for_job(job.id)

    assert job.status == "failed"
    assert job.error.startswith("Sync timeout")


@pytest.mark.asyncio
async def test_invalid_sync_type(database, kv_store, repository):
    service = _service(database, kv_store)
    with pytest.raises(ValidationError):
        await service.start_sync(repository.id, "partial")
    assert kv_store.get(CacheKeys.sync_lock(repository.id)) is None


@pytest.mark.asyncio
async def test_unknown_repository(database, kv_store):
    service = _service(database, kv_store)
    with pytest.raises(NotFoundError):
        await service.start_sync(uuid.uuid4(), "full")
    assert await _job_count(database) == 0


@pytest.mark.asyncio
async def test_cancel_fails_running_job_and_releases_lock(
    database, kv_store, repository
):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_sync(*args):
        started.set()
        await release.wait()
        return {}

    service = _service(database, kv_store, side_effect=slow_sync)
    job = await service.start_sync(repository.id, "incremental")
    await started.wait()

    result = await service.cancel_sync(repository.id)

    assert result == {"repositoryId": str(repository.id), "cancelledJobs": 1}
    assert kv_store.get(CacheKeys.sync_lock(repository.id)) is None

    release.set()
    job = await service.wait_for_job(job.id)
    assert job.status == "failed"
    assert job.error == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_status_and_history(database, kv_store, repository):
    service = _service(database, kv_store)

    status = await service.get_sync_status(repository.id)
    assert status == {"status": "no_jobs", "repositoryId": str(repository.id)}

    for _ in range(3):
        job = await service.start_sync(repository.id, "incremental")
        await service.wait_for_job(job.id)

    status = await service.get_sync_status(repository.id)
    assert status["status"] == "completed"
    assert status["repository"]["name"] == "web"
    assert status["repository"]["lastSyncAt"] is not None

    history = await service.get_sync_history(repository.id, page=1, page_size=2)
    assert len(history["data"]) == 2
    assert history["pagination"]["total"] == 3
    assert history["pagination"]["hasNext"] is True

    jobs = await service.get_all_jobs(status="completed")
    assert jobs["pagination"]["total"] == 3
    assert jobs["data"][0]["repository"]["project"] == "shop"
