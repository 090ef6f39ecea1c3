"""Browse the configured Azure DevOps organization."""

from __future__ import annotations

from typing import Annotated, AsyncGenerator

from fastapi import APIRouter, Depends

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.connectors.azure_devops import AzureDevOpsClient
from devops_insights.exceptions import ValidationError
from devops_insights.services.system_config import SystemConfigService

router = APIRouter(
    prefix="/api/v1/azure-devops",
    tags=["azure-devops"],
    dependencies=[Depends(require_permission("repositories:read"))],
)


async def azure_devops_client(
    session: SessionDep,
) -> AsyncGenerator[AzureDevOpsClient, None]:
    config = await SystemConfigService(session).get_azure_devops_config()
    if not config["organization"] or not config["personalAccessToken"]:
        raise ValidationError(
            "Azure DevOps is not configured", code="AZURE_DEVOPS_NOT_CONFIGURED"
        )
    async with AzureDevOpsClient(
        config["organization"], config["personalAccessToken"]
    ) as client:
        yield client


Client = Annotated[AzureDevOpsClient, Depends(azure_devops_client)]


def _summary(item: dict, *keys: str) -> dict:
    return {key: item.get(key) for key in keys}


@router.get("/status")
async def api_status(client: Client) -> dict:
    return ok(await client.check_api_status())


@router.get("/projects")
async def list_projects(client: Client) -> dict:
    projects = await client.get_projects()
    return ok(
        [
            _summary(p, "id", "name", "description", "state", "lastUpdateTime")
            for p in projects
        ]
    )


@router.get("/projects/{project}/repositories")
async def list_repositories(project: str, client: Client) -> dict:
    repositories = await client.get_repositories(project)
    return ok(
        [
            {
                **_summary(r, "id", "name", "defaultBranch", "webUrl", "size"),
                "project": (r.get("project") or {}).get("name", project),
            }
            for r in repositories
        ]
    )
