from .base import GUID, Base
from .catalog import Developer, Role, Stack, Team, developer_stacks
from .git import (
    Comment,
    Commit,
    PullRequest,
    PullRequestStatus,
    Repository,
    Review,
    ReviewStatus,
)
from .settings import (
    AZURE_DEVOPS_ORGANIZATION_KEY,
    AZURE_DEVOPS_PAT_KEY,
    SystemConfig,
)
from .sync import SyncJob, SyncJobStatus, SyncType
from .users import (
    DEFAULT_ROLES,
    STANDARD_PERMISSIONS,
    User,
    UserRole,
    UserStatus,
    UserToken,
    ViewScope,
)

__all__ = [
    "AZURE_DEVOPS_ORGANIZATION_KEY",
    "AZURE_DEVOPS_PAT_KEY",
    "Base",
    "Comment",
    "Commit",
    "DEFAULT_ROLES",
    "Developer",
    "GUID",
    "PullRequest",
    "PullRequestStatus",
    "Repository",
    "Review",
    "ReviewStatus",
    "Role",
    "STANDARD_PERMISSIONS",
    "Stack",
    "SyncJob",
    "SyncJobStatus",
    "SyncType",
    "SystemConfig",
    "Team",
    "User",
    "UserRole",
    "UserStatus",
    "UserToken",
    "ViewScope",
    "developer_stacks",
]
