"""Dashboard filter parsing and the SQL conditions derived from it."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy import select

from devops_insights.exceptions import ValidationError
from devops_insights.models import (
    Commit,
    Developer,
    PullRequest,
    Review,
    Stack,
    Team,
)
from devops_insights.utils.datetime import parse_datetime, to_utc
from devops_insights.utils.pagination import parse_uuid

UNSET_VALUES = ("", "all")
_ID_FIELDS = ("repository_id", "developer_id", "team_id", "role_id", "stack_id")

_PARAM_ALIASES = {
    "startDate": "start_date",
    "endDate": "end_date",
    "repositoryId": "repository_id",
    "developerId": "developer_id",
    "teamId": "team_id",
    "roleId": "role_id",
    "stackId": "stack_id",
}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if value.lower() in UNSET_VALUES:
        return None
    return value


def _parse_date(
    value: Optional[str], field: str, end_of_day: bool
) -> Optional[datetime]:
    if value is None:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"Invalid {field}: {value}")
    # A bare date as the upper bound covers the whole day.
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return to_utc(parsed)


@dataclass(frozen=True)
class KpiFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None
    repository_id: Optional[uuid.UUID] = None
    developer_id: Optional[uuid.UUID] = None
    team_id: Optional[uuid.UUID] = None
    role_id: Optional[uuid.UUID] = None
    stack_id: Optional[uuid.UUID] = None
    management: Optional[str] = None

    @classmethod
    def from_params(cls, params: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        """Build filters from query parameters (camelCase or snake_case).

        ``"all"`` and empty strings count as unset.
        """
        raw = {}
        for key, value in {**(params or {}), **kwargs}.items():
            raw[_PARAM_ALIASES.get(key, key)] = _clean(value)

        values: dict[str, Any] = {
            "start_date": _parse_date(raw.get("start_date"), "startDate", False),
            "end_date": _parse_date(raw.get("end_date"), "endDate", True),
            "status": raw.get("status"),
            "management": raw.get("management"),
        }
        for name in _ID_FIELDS:
            value = raw.get(name)
            values[name] = parse_uuid(value, name) if value is not None else None
        return cls(**values)

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None and self.end_date is not None

    @property
    def has_population_filter(self) -> bool:
        """True when the developer population is narrowed down."""
        return any((self.team_id, self.role_id, self.stack_id, self.developer_id))

    def cache_key(self) -> dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        return {k: (str(v) if v is not None else None) for k, v in values.items()}

    def __str__(self) -> str:
        return json.dumps(self.cache_key(), sort_keys=True)


def _team_developers(filters: KpiFilters):
    """Developer ids in the filtered team and management line."""
    query = select(Developer.id)
    if filters.team_id is not None:
        query = query.where(Developer.team_id == filters.team_id)
    if filters.management is not None:
        query = query.join(Team, Developer.team_id == Team.id).where(
            Team.management == filters.management
        )
    return query


def _person_conditions(column, filters: KpiFilters) -> List[Any]:
    conditions: List[Any] = []
    if filters.developer_id is not None:
        conditions.append(column == filters.developer_id)
    if filters.team_id is not None or filters.management is not None:
        conditions.append(column.in_(_team_developers(filters)))
    return conditions


def pull_request_conditions(filters: KpiFilters) -> List[Any]:
    conditions: List[Any] = []
    if filters.has_date_range:
        conditions.append(
            PullRequest.created_at.between(filters.start_date, filters.end_date)
        )
    if filters.status is not None:
        conditions.append(PullRequest.status == filters.status)
    if filters.repository_id is not None:
        conditions.append(PullRequest.repository_id == filters.repository_id)
    conditions.extend(_person_conditions(PullRequest.created_by_id, filters))
    return conditions


def commit_conditions(filters: KpiFilters) -> List[Any]:
    conditions: List[Any] = []
    if filters.has_date_range:
        conditions.append(
            Commit.created_at.between(filters.start_date, filters.end_date)
        )
    if filters.repository_id is not None:
        conditions.append(Commit.repository_id == filters.repository_id)
    conditions.extend(_person_conditions(Commit.author_id, filters))
    return conditions


def review_conditions(filters: KpiFilters) -> List[Any]:
    conditions: List[Any] = []
    if filters.has_date_range:
        conditions.append(
            Review.created_at.between(filters.start_date, filters.end_date)
        )
    if filters.repository_id is not None:
        conditions.append(
            Review.pull_request_id.in_(
                select(PullRequest.id).where(
                    PullRequest.repository_id == filters.repository_id
                )
            )
        )
    conditions.extend(_person_conditions(Review.reviewer_id, filters))
    return conditions


def developer_conditions(filters: KpiFilters) -> List[Any]:
    """Conditions selecting the developer population."""
    conditions: List[Any] = []
    if filters.developer_id is not None:
        conditions.append(Developer.id == filters.developer_id)
    if filters.team_id is not None:
        conditions.append(Developer.team_id == filters.team_id)
    if filters.role_id is not None:
        conditions.append(Developer.role_id == filters.role_id)
    if filters.stack_id is not None:
        conditions.append(Developer.stacks.any(Stack.id == filters.stack_id))
    return conditions


def population_ids(filters: KpiFilters):
    """Subquery of developer ids in the filtered population."""
    return select(Developer.id).where(*developer_conditions(filters))


__all__ = [
    "KpiFilters",
    "commit_conditions",
    "developer_conditions",
    "population_ids",
    "pull_request_conditions",
    "review_conditions",
]
