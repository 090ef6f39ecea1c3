from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from devops_insights.api.deps import ok, require_permission, sync_service_dependency
from devops_insights.api.schemas import SyncRequest
from devops_insights.sync.orchestrator import SyncService, serialize_job

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])

SyncServiceDep = Annotated[SyncService, Depends(sync_service_dependency)]

can_execute = [Depends(require_permission("sync:manual:execute"))]
can_read = [Depends(require_permission("sync:status:read"))]


@router.get("", dependencies=can_read)
async def list_jobs(
    service: SyncServiceDep,
    status: Optional[str] = None,
    page: int = 1,
    page_size: Annotated[int, Query(alias="pageSize")] = 20,
) -> dict:
    result = await service.get_all_jobs(page, page_size, status)
    return ok(result["data"], pagination=result["pagination"])


@router.get("/jobs/{job_id}", dependencies=can_read)
async def get_job(job_id: str, service: SyncServiceDep) -> dict:
    job = await service.get_job(job_id)
    return ok(serialize_job(job, include_repository=True))


@router.post("/{repository_id}", status_code=201, dependencies=can_execute)
async def start_sync(
    repository_id: str,
    service: SyncServiceDep,
    payload: Optional[SyncRequest] = None,
) -> dict:
    """Queue a sync of one repository. 409 while another one is running."""
    sync_type = payload.sync_type if payload else SyncRequest().sync_type
    job = await service.start_sync(repository_id, sync_type)
    return ok(serialize_job(job), message="Sync started")


@router.get("/{repository_id}/status", dependencies=can_read)
async def sync_status(repository_id: str, service: SyncServiceDep) -> dict:
    return ok(await service.get_sync_status(repository_id))


@router.get("/{repository_id}/history", dependencies=can_read)
async def sync_history(
    repository_id: str,
    service: SyncServiceDep,
    page: int = 1,
    page_size: Annotated[int, Query(alias="pageSize")] = 10,
) -> dict:
    result = await service.get_sync_history(repository_id, page, page_size)
    return ok(result["data"], pagination=result["pagination"])


@router.delete("/{repository_id}", dependencies=can_execute)
async def cancel_sync(repository_id: str, service: SyncServiceDep) -> dict:
    result = await service.cancel_sync(repository_id)
    return ok(result, message="Sync cancelled")
