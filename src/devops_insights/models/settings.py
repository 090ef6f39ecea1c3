"""Key-value system configuration.

Sensitive values (the Azure DevOps PAT) are stored Fernet-encrypted with
``is_encrypted=True``; see :mod:`devops_insights.services.crypto`.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, Text

from devops_insights.models.base import (
    GUID,
    Base,
    created_at_column,
    updated_at_column,
)

AZURE_DEVOPS_ORGANIZATION_KEY = "azure_devops_organization"
AZURE_DEVOPS_PAT_KEY = "azure_devops_personal_access_token"


class SystemConfig(Base):
    __tablename__ = "system_configs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    key = Column(Text, nullable=False, unique=True, index=True)
    value = Column(Text, nullable=False, comment="Config value (may be encrypted)")
    description = Column(Text, nullable=True)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()
    updated_at = updated_at_column()

    def __repr__(self) -> str:
        return f"<SystemConfig {self.key}>"
