"""Request bodies. The frontend sends camelCase; fields are snake_case."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from devops_insights.models import SyncType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Auth ---


class LoginRequest(CamelModel):
    """Login with email or login name and password."""

    email_or_login: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AzureAdLoginRequest(CamelModel):
    azure_ad_id: str = Field(min_length=1)
    email: EmailStr
    name: str = Field(min_length=1)
    azure_ad_email: str | None = None


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str = Field(min_length=6)


# --- Users ---


class UserCreate(CamelModel):
    name: str = Field(min_length=1)
    email: EmailStr
    login: str = Field(min_length=1)
    password: str = Field(min_length=6)
    role_id: str | None = None
    is_active: bool = True
    view_scope: str = "own"


class UserUpdate(CamelModel):
    name: str | None = None
    email: EmailStr | None = None
    login: str | None = None
    password: str | None = None
    role_id: str | None = None
    is_active: bool | None = None
    view_scope: str | None = None


class LinkDeveloperRequest(CamelModel):
    developer_id: str


class UserRoleCreate(CamelModel):
    name: str = Field(min_length=1)
    description: str | None = None
    permissions: list[str] = []
    is_default: bool = False


class UserRoleUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    permissions: list[str] | None = None
    is_default: bool | None = None


# --- Catalog ---


class TeamCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    management: str | None = None


class TeamUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    management: str | None = None


class RoleCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)


class RoleUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)


class StackCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    color: str | None = None


class StackUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = None


class DeveloperCreate(CamelModel):
    name: str = Field(min_length=1)
    login: str = Field(min_length=1)
    email: str | None = None
    team_id: str | None = None
    role_id: str | None = None
    stack_ids: list[str] = []


class DeveloperUpdate(CamelModel):
    name: str | None = None
    login: str | None = None
    email: str | None = None
    team_id: str | None = None
    role_id: str | None = None
    stack_ids: list[str] | None = None


class RepositoryCreate(CamelModel):
    name: str = Field(min_length=1)
    organization: str = Field(min_length=1)
    project: str = Field(min_length=1)
    url: str = Field(min_length=1)
    azure_id: str | None = None
    team_id: str | None = None
    access_token: str | None = None


class RepositoryUpdate(CamelModel):
    name: str | None = None
    organization: str | None = None
    project: str | None = None
    url: str | None = None
    azure_id: str | None = None
    team_id: str | None = None
    access_token: str | None = None


# --- Sync ---


class SyncRequest(CamelModel):
    sync_type: str = SyncType.INCREMENTAL.value


# --- System config ---


class SystemConfigCreate(CamelModel):
    key: str = Field(min_length=1)
    value: str
    description: str | None = None
    is_encrypted: bool = False


class SystemConfigUpdate(CamelModel):
    value: str | None = None
    description: str | None = None
    is_encrypted: bool | None = None


class AzureDevOpsCredentials(CamelModel):
    organization: str = Field(min_length=1)
    personal_access_token: str = Field(min_length=1)
