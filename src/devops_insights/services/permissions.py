"""Permission checks against a user's access role."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from devops_insights.models import STANDARD_PERMISSIONS

if TYPE_CHECKING:
    from devops_insights.models import User

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_all_permission_names() -> frozenset[str]:
    """Get all defined permission names."""
    return frozenset(p[0] for p in STANDARD_PERMISSIONS)


def has_permission(user: "User", permission: str) -> bool:
    """Check if ``user`` may perform ``permission`` (e.g. "teams:write")."""
    if permission not in _get_all_permission_names():
        logger.warning("Unknown permission requested: %s", permission)
        return False
    if not user.is_active:
        return False
    return permission in user.permissions


def has_any_permission(user: "User", *permissions: str) -> bool:
    return any(has_permission(user, p) for p in permissions)
