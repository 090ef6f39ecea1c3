from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from devops_insights.api.deps import SessionDep, ok, require_permission
from devops_insights.api.schemas import (
    AzureDevOpsCredentials,
    SystemConfigCreate,
    SystemConfigUpdate,
)
from devops_insights.connectors.azure_devops import (
    validate_connection_with_credentials,
)
from devops_insights.models import AZURE_DEVOPS_ORGANIZATION_KEY, AZURE_DEVOPS_PAT_KEY
from devops_insights.services.system_config import (
    MASKED_VALUE,
    SystemConfigService,
    serialize_config,
)
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/system-config", tags=["system-config"])

can_read = [Depends(require_permission("system-config:read"))]
can_write = [Depends(require_permission("system-config:write"))]


@router.get("", dependencies=can_read)
async def list_configs(session: SessionDep) -> dict:
    return ok(await SystemConfigService(session).get_all())


@router.get("/azure-devops/config", dependencies=can_read)
async def get_azure_devops_config(session: SessionDep) -> dict:
    config = await SystemConfigService(session).get_azure_devops_config()
    return ok(
        {
            "organization": config["organization"],
            "personalAccessToken": (
                MASKED_VALUE if config["personalAccessToken"] else None
            ),
            "isConfigured": bool(
                config["organization"] and config["personalAccessToken"]
            ),
        }
    )


@router.post("/azure-devops/config", dependencies=can_write)
async def save_azure_devops_config(
    payload: AzureDevOpsCredentials, session: SessionDep
) -> dict:
    """Validate the organization/PAT pair, then store it (PAT encrypted)."""
    result = await validate_connection_with_credentials(
        payload.organization, payload.personal_access_token
    )
    if not result["valid"]:
        return ok(result, message=result["message"])
    service = SystemConfigService(session)
    await service.upsert(
        AZURE_DEVOPS_ORGANIZATION_KEY,
        payload.organization,
        "Azure DevOps organization",
    )
    await service.upsert(
        AZURE_DEVOPS_PAT_KEY,
        payload.personal_access_token,
        "Azure DevOps personal access token",
        is_encrypted=True,
    )
    await session.commit()
    logger.info(
        "Saved Azure DevOps configuration for %s",
        sanitize_for_log(payload.organization),
    )
    return ok(result, message="Azure DevOps configuration saved")


@router.post("/azure-devops/validate", dependencies=can_read)
async def validate_azure_devops(payload: AzureDevOpsCredentials) -> dict:
    result = await validate_connection_with_credentials(
        payload.organization, payload.personal_access_token
    )
    return ok(result, message=result["message"])


@router.get("/{key}", dependencies=can_read)
async def get_config(key: str, session: SessionDep) -> dict:
    config = await SystemConfigService(session).get_by_key(key)
    return ok(serialize_config(config))


@router.post("", status_code=201, dependencies=can_write)
async def create_config(payload: SystemConfigCreate, session: SessionDep) -> dict:
    config = await SystemConfigService(session).create(
        payload.key, payload.value, payload.description, payload.is_encrypted
    )
    await session.commit()
    return ok(serialize_config(config), message="Configuration created")


@router.put("/{key}", dependencies=can_write)
async def update_config(
    key: str, payload: SystemConfigUpdate, session: SessionDep
) -> dict:
    config = await SystemConfigService(session).update(
        key, payload.value, payload.description, payload.is_encrypted
    )
    await session.commit()
    return ok(serialize_config(config), message="Configuration updated")


@router.delete("/{key}", dependencies=can_write)
async def delete_config(key: str, session: SessionDep) -> dict:
    await SystemConfigService(session).delete(key)
    await session.commit()
    return ok(message="Configuration deleted")
