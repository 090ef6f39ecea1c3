"""Dashboard users, access roles and issued tokens.

- UserRole: named permission set; exactly one may be the default role
  given to users provisioned through Azure AD.
- User: dashboard account, password or Azure AD federated.
- UserToken: persisted access/refresh pair so tokens can be revoked.
"""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
)
from sqlalchemy.orm import relationship

from devops_insights.models.base import (
    GUID,
    Base,
    created_at_column,
    updated_at_column,
)


class UserStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"  # Azure AD sign-up awaiting admin approval
    INACTIVE = "inactive"


class ViewScope(str, Enum):
    OWN = "own"
    TEAM = "team"
    ALL = "all"


STANDARD_PERMISSIONS = [
    # (name, description)
    ("users:read", "View dashboard users"),
    ("users:write", "Create and update dashboard users"),
    ("users:delete", "Delete dashboard users"),
    ("user-roles:read", "View access roles"),
    ("user-roles:write", "Create and update access roles"),
    ("user-roles:delete", "Delete access roles"),
    ("teams:read", "View teams, job roles and stacks"),
    ("teams:write", "Create and update teams, job roles and stacks"),
    ("teams:delete", "Delete teams, job roles and stacks"),
    ("repositories:read", "View repositories"),
    ("repositories:write", "Create and update repositories"),
    ("repositories:delete", "Delete repositories"),
    ("developers:read", "View developers"),
    ("developers:write", "Create and update developers"),
    ("developers:delete", "Delete developers"),
    ("reports:read", "View KPI dashboards"),
    ("sync:status:read", "View sync status and history"),
    ("sync:manual:execute", "Start and cancel repository syncs"),
    ("system-config:read", "View system configuration"),
    ("system-config:write", "Change system configuration"),
]

DEFAULT_ROLES = {
    "admin": {
        "description": "System administrator with full access",
        "permissions": [name for name, _ in STANDARD_PERMISSIONS],
        "is_system": True,
        "is_default": False,
    },
    "user": {
        "description": "Default dashboard user",
        "permissions": [
            "users:read",
            "teams:read",
            "repositories:read",
            "developers:read",
            "reports:read",
            "sync:status:read",
        ],
        "is_system": True,
        "is_default": True,
    },
}


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False, default=list)
    is_system = Column(Boolean, nullable=False, default=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()
    updated_at = updated_at_column()

    users = relationship("User", back_populates="role", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<UserRole {self.name}>"


class User(Base):
    __tablename__ = "users"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False, unique=True, index=True)
    login = Column(Text, nullable=False, unique=True, index=True)
    password = Column(Text, nullable=True)  # Null for Azure AD users

    role_id = Column(
        GUID(), ForeignKey("user_roles.id", ondelete="SET NULL"), nullable=True
    )
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(Text, nullable=False, default=UserStatus.ACTIVE.value)
    view_scope = Column(Text, nullable=False, default=ViewScope.OWN.value)

    azure_ad_id = Column(Text, nullable=True, unique=True)
    azure_ad_email = Column(Text, nullable=True)
    developer_id = Column(
        GUID(), ForeignKey("developers.id", ondelete="SET NULL"), nullable=True
    )

    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    role = relationship("UserRole", back_populates="users", lazy="selectin")
    developer = relationship("Developer")
    tokens = relationship(
        "UserToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def permissions(self) -> list[str]:
        if self.role is None:
            return []
        return list(self.role.permissions or [])

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class UserToken(Base):
    __tablename__ = "user_tokens"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    access_token = Column(Text, nullable=False, unique=True)
    refresh_token = Column(Text, nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()
    updated_at = updated_at_column()

    user = relationship("User", back_populates="tokens", lazy="selectin")

    __table_args__ = (Index("ix_user_tokens_user", "user_id"),)
