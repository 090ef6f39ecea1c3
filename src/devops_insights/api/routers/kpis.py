from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.services.kpi_filters import KpiFilters
from devops_insights.services.kpis import KpiService

router = APIRouter(
    prefix="/api/v1/kpis",
    tags=["kpis"],
    dependencies=[Depends(require_permission("reports:read"))],
)


def kpi_filters(
    start_date: Annotated[Optional[str], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate")] = None,
    status: Optional[str] = None,
    repository_id: Annotated[Optional[str], Query(alias="repositoryId")] = None,
    developer_id: Annotated[Optional[str], Query(alias="developerId")] = None,
    team_id: Annotated[Optional[str], Query(alias="teamId")] = None,
    role_id: Annotated[Optional[str], Query(alias="roleId")] = None,
    stack_id: Annotated[Optional[str], Query(alias="stackId")] = None,
    management: Optional[str] = None,
) -> KpiFilters:
    return KpiFilters.from_params(
        start_date=start_date,
        end_date=end_date,
        status=status,
        repository_id=repository_id,
        developer_id=developer_id,
        team_id=team_id,
        role_id=role_id,
        stack_id=stack_id,
        management=management,
    )


def kpi_service(session: SessionDep) -> KpiService:
    return KpiService(session)


Filters = Annotated[KpiFilters, Depends(kpi_filters)]
Service = Annotated[KpiService, Depends(kpi_service)]
Page = Annotated[int, Query(ge=1)]
PageSize = Annotated[int, Query(alias="pageSize", ge=1, le=100)]


@router.get("")
@router.get("/dashboard-summary")
async def dashboard_summary(filters: Filters, service: Service) -> dict:
    return ok(await service.get_dashboard_summary(filters))


@router.get("/pr-review-comments")
async def pr_review_comments(filters: Filters, service: Service) -> dict:
    return ok(await service.get_pr_review_comments(filters))


@router.get("/pr-commit")
async def pr_commit(filters: Filters, service: Service) -> dict:
    return ok(await service.get_pr_commit(filters))


@router.get("/pr-review")
async def pr_review(filters: Filters, service: Service) -> dict:
    return ok(await service.get_pr_review(filters))


@router.get("/pr-review-team")
async def pr_review_team(filters: Filters, service: Service) -> dict:
    return ok(await service.get_pr_review_by_team(filters))


@router.get("/reviews-performed")
async def reviews_performed(filters: Filters, service: Service) -> dict:
    return ok(await service.get_reviews_performed(filters))


@router.get("/reviews-performed-team")
async def reviews_performed_team(filters: Filters, service: Service) -> dict:
    return ok(await service.get_reviews_performed_by_team(filters))


@router.get("/roles-by-team")
async def roles_by_team(filters: Filters, service: Service) -> dict:
    return ok(await service.get_roles_by_team(filters))


@router.get("/cycle-time")
async def cycle_time(filters: Filters, service: Service) -> dict:
    return ok(await service.get_cycle_time(filters))


@router.get("/cycle-time-team")
async def cycle_time_team(filters: Filters, service: Service) -> dict:
    return ok(await service.get_cycle_time_by_team(filters))


@router.get("/files-changed-team")
async def files_changed_team(filters: Filters, service: Service) -> dict:
    return ok(await service.get_files_changed_by_team(filters))


@router.get("/top-cycle-time")
async def top_cycle_time(
    filters: Filters, service: Service, page: Page = 1, page_size: PageSize = 10
) -> dict:
    result = await service.get_top_cycle_time(filters, page, page_size)
    return ok(result["data"], pagination=result["pagination"])


@router.get("/top-cycle-time-prs")
async def top_cycle_time_prs(
    filters: Filters, service: Service, page: Page = 1, page_size: PageSize = 10
) -> dict:
    return ok(await service.get_top_cycle_time_prs(filters, page, page_size))
