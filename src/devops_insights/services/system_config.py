"""System configuration service.

Key-value settings with optional encryption. The Azure DevOps organization
and PAT used by the sync pipeline live here.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from devops_insights.exceptions import ConflictError, NotFoundError
from devops_insights.models import (
    AZURE_DEVOPS_ORGANIZATION_KEY,
    AZURE_DEVOPS_PAT_KEY,
    SystemConfig,
)
from devops_insights.services.crypto import decrypt_value, encrypt_value
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

MASKED_VALUE = "********"


def serialize_config(config: SystemConfig) -> dict[str, Any]:
    return {
        "id": str(config.id),
        "key": config.key,
        "value": MASKED_VALUE if config.is_encrypted else config.value,
        "description": config.description,
        "isEncrypted": config.is_encrypted,
        "createdAt": config.created_at.isoformat() if config.created_at else None,
        "updatedAt": config.updated_at.isoformat() if config.updated_at else None,
    }


class SystemConfigService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get(self, key: str) -> Optional[SystemConfig]:
        result = await self.session.execute(
            select(SystemConfig).where(SystemConfig.key == key)
        )
        return result.scalar_one_or_none()

    async def get_all(self) -> list[dict[str, Any]]:
        """All settings, encrypted values masked."""
        result = await self.session.execute(
            select(SystemConfig).order_by(SystemConfig.key)
        )
        return [serialize_config(c) for c in result.scalars().all()]

    async def get_by_key(self, key: str) -> SystemConfig:
        config = await self._get(key)
        if config is None:
            raise NotFoundError(f"Configuration '{key}' not found")
        return config

    async def get_decrypted_value(self, key: str) -> Optional[str]:
        """Plain value for ``key`` or None when unset."""
        config = await self._get(key)
        if config is None:
            return None
        if config.is_encrypted and config.value:
            return decrypt_value(config.value)
        return config.value

    async def create(
        self,
        key: str,
        value: str,
        description: str | None = None,
        is_encrypted: bool = False,
    ) -> SystemConfig:
        if await self._get(key) is not None:
            raise ConflictError(f"Configuration '{key}' already exists")
        config = SystemConfig(
            key=key,
            value=encrypt_value(value) if is_encrypted else value,
            description=description,
            is_encrypted=is_encrypted,
        )
        self.session.add(config)
        await self.session.flush()
        logger.info("Created system config %s", sanitize_for_log(key))
        return config

    async def update(
        self,
        key: str,
        value: str | None = None,
        description: str | None = None,
        is_encrypted: bool | None = None,
    ) -> SystemConfig:
        config = await self.get_by_key(key)
        encrypt = config.is_encrypted if is_encrypted is None else is_encrypted
        if value is None and encrypt != config.is_encrypted:
            plain = await self.get_decrypted_value(key)
            value = plain
        if value is not None:
            config.value = encrypt_value(value) if encrypt else value
        config.is_encrypted = encrypt
        if description is not None:
            config.description = description
        await self.session.flush()
        logger.info("Updated system config %s", sanitize_for_log(key))
        return config

    async def upsert(
        self,
        key: str,
        value: str,
        description: str | None = None,
        is_encrypted: bool = False,
    ) -> SystemConfig:
        if await self._get(key) is None:
            return await self.create(key, value, description, is_encrypted)
        return await self.update(key, value, description, is_encrypted)

    async def delete(self, key: str) -> None:
        config = await self.get_by_key(key)
        await self.session.delete(config)
        await self.session.flush()
        logger.info("Deleted system config %s", sanitize_for_log(key))

    async def get_azure_devops_config(self) -> dict[str, Optional[str]]:
        return {
            "organization": await self.get_decrypted_value(
                AZURE_DEVOPS_ORGANIZATION_KEY
            ),
            "personalAccessToken": await self.get_decrypted_value(
                AZURE_DEVOPS_PAT_KEY
            ),
        }
