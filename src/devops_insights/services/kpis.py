"""Dashboard KPI aggregation.

Every chart dataset is computed from the mirrored pull requests, commits,
reviews and comments under one :class:`KpiFilters`. Team-bucketed datasets
start from the teams of the filtered developer population; the ``No team``
bucket exists only while the population is unfiltered, and empty buckets
are dropped from the result.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from devops_insights.models import (
    Comment,
    Commit,
    Developer,
    PullRequest,
    Review,
    Role,
    Stack,
    Team,
    developer_stacks,
)
from devops_insights.services.cache import (
    KPI_CACHE_TTL_SECONDS,
    CacheKeys,
    TTLCache,
    get_kv_store,
)
from devops_insights.services.kpi_filters import (
    KpiFilters,
    commit_conditions,
    developer_conditions,
    population_ids,
    pull_request_conditions,
    review_conditions,
)
from devops_insights.utils.pagination import build_pagination, normalize_page

logger = logging.getLogger(__name__)

NO_TEAM = "No team"
NO_ROLE = "No role"
UNKNOWN = "Unknown"
IDEAL_RATIO = 1.0
TOP_DEVELOPERS = 10
MS_PER_DAY = 24 * 60 * 60 * 1000


def _round(value: float, digits: int = 0) -> float:
    """Round half up, as dashboards expect (2.5 -> 3)."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _team_name(developer: Optional[Developer]) -> str:
    if developer is not None and developer.team is not None:
        return developer.team.name
    return NO_TEAM


def _developer_info(developer: Developer) -> Dict[str, Any]:
    return {
        "id": str(developer.id),
        "name": developer.name,
        "login": developer.login,
        "team": {"name": developer.team.name} if developer.team else None,
        "role": {"name": developer.role.name} if developer.role else None,
    }


def _author_info(developer: Developer) -> Dict[str, Any]:
    return {
        "name": developer.name,
        "team": {"name": developer.team.name} if developer.team else None,
    }


class KpiService:
    """Read-only aggregation over the mirrored Azure DevOps activity."""

    def __init__(self, session: AsyncSession, cache: Optional[TTLCache] = None):
        self.session = session
        self.cache = cache or TTLCache(KPI_CACHE_TTL_SECONDS, get_kv_store())

    async def _population(self, filters: KpiFilters) -> List[Developer]:
        result = await self.session.execute(
            select(Developer)
            .options(selectinload(Developer.team), selectinload(Developer.role))
            .where(*developer_conditions(filters))
            .order_by(Developer.name)
        )
        return list(result.scalars().all())

    async def _developers(self, ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Developer]:
        ids = set(ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(Developer)
            .options(selectinload(Developer.team), selectinload(Developer.role))
            .where(Developer.id.in_(ids))
        )
        return {dev.id: dev for dev in result.scalars().all()}

    async def _grouped_counts(self, query) -> Dict[Any, int]:
        result = await self.session.execute(query)
        return {key: int(count) for key, count in result.all()}

    async def _pull_requests_by_creator(
        self, filters: KpiFilters, *extra: Any
    ) -> Dict[uuid.UUID, int]:
        return await self._grouped_counts(
            select(PullRequest.created_by_id, func.count(PullRequest.id))
            .where(*pull_request_conditions(filters), *extra)
            .group_by(PullRequest.created_by_id)
        )

    async def _reviews_by_creator(
        self, filters: KpiFilters, *extra: Any
    ) -> Dict[uuid.UUID, int]:
        """Reviews received on the filtered pull requests, per PR creator."""
        return await self._grouped_counts(
            select(PullRequest.created_by_id, func.count(Review.id))
            .select_from(Review)
            .join(PullRequest, Review.pull_request_id == PullRequest.id)
            .where(*pull_request_conditions(filters), *extra)
            .group_by(PullRequest.created_by_id)
        )

    async def _comments_by_creator(
        self, filters: KpiFilters, *extra: Any
    ) -> Dict[uuid.UUID, int]:
        return await self._grouped_counts(
            select(PullRequest.created_by_id, func.count(Comment.id))
            .select_from(Comment)
            .join(PullRequest, Comment.pull_request_id == PullRequest.id)
            .where(*pull_request_conditions(filters), *extra)
            .group_by(PullRequest.created_by_id)
        )

    async def _team_buckets(self, filters: KpiFilters) -> List[str]:
        """Team names charted for ``filters``, in display order."""
        result = await self.session.execute(
            select(Team.name)
            .where(
                Team.id.in_(
                    select(Developer.team_id).where(*developer_conditions(filters))
                )
            )
            .order_by(Team.name)
        )
        names = list(result.scalars().all())
        if not filters.has_population_filter:
            names.append(NO_TEAM)
        return names

    async def _counts_by_team(
        self,
        buckets: List[str],
        counts: Dict[uuid.UUID, int],
    ) -> Dict[str, int]:
        """Fold per-developer counts into the given team buckets."""
        developers = await self._developers(counts)
        totals = {name: 0 for name in buckets}
        for developer_id, count in counts.items():
            name = _team_name(developers.get(developer_id))
            if name in totals:
                totals[name] += count
        return totals

    async def get_pr_review_comments(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        """Pull requests, reviews received and comments per developer."""
        cache_key = CacheKeys.kpis("pr-review-comments", filters.cache_key())
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("KPI cache hit: %s", cache_key)
            return cached

        population = await self._population(filters)
        if not population:
            return []

        in_population = PullRequest.created_by_id.in_(population_ids(filters))
        prs = await self._pull_requests_by_creator(filters, in_population)
        reviews = await self._reviews_by_creator(filters, in_population)
        comments = await self._comments_by_creator(filters, in_population)
        average = int(_round(sum(prs.values()) / len(population)))

        data = [
            {
                "developer": _developer_info(dev),
                "pullRequests": prs[dev.id],
                "reviews": reviews.get(dev.id, 0),
                "comments": comments.get(dev.id, 0),
                "averagePRs": average,
            }
            for dev in population
            if prs.get(dev.id)
        ]
        data.sort(key=lambda row: row["pullRequests"], reverse=True)
        self.cache.set(cache_key, data)
        return data

    async def get_pr_commit(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        buckets = await self._team_buckets(filters)
        prs = await self._counts_by_team(
            buckets, await self._pull_requests_by_creator(filters)
        )
        commits = await self._counts_by_team(
            buckets,
            await self._grouped_counts(
                select(Commit.author_id, func.count(Commit.id))
                .where(*commit_conditions(filters))
                .group_by(Commit.author_id)
            ),
        )
        data = []
        for name in buckets:
            if not prs[name] and not commits[name]:
                continue
            data.append(
                {
                    "team": {"name": name},
                    "pullRequests": prs[name],
                    "commits": commits[name],
                    "ratio": _round(commits[name] / prs[name], 2) if prs[name] else 0,
                    "idealRatio": IDEAL_RATIO,
                }
            )
        return data

    async def get_pr_review_by_team(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        buckets = await self._team_buckets(filters)
        prs = await self._counts_by_team(
            buckets, await self._pull_requests_by_creator(filters)
        )
        reviews = await self._counts_by_team(
            buckets, await self._reviews_by_creator(filters)
        )
        data = []
        for name in buckets:
            if not prs[name] and not reviews[name]:
                continue
            data.append(
                {
                    "team": {"name": name},
                    "pullRequests": prs[name],
                    "reviews": reviews[name],
                    "ratio": _round(reviews[name] / prs[name], 2) if prs[name] else 0,
                    "idealRatio": IDEAL_RATIO,
                }
            )
        return data

    async def get_reviews_performed_by_team(
        self, filters: KpiFilters
    ) -> List[Dict[str, Any]]:
        buckets = await self._team_buckets(filters)
        reviews = await self._counts_by_team(
            buckets, await self._reviews_by_creator(filters)
        )
        return [
            {"team": {"name": name}, "count": count}
            for name, count in reviews.items()
            if count
        ]

    async def get_pr_review(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        population = await self._population(filters)
        if not population:
            return []
        in_population = PullRequest.created_by_id.in_(population_ids(filters))
        prs = await self._pull_requests_by_creator(filters, in_population)
        reviews = await self._reviews_by_creator(filters, in_population)
        data = [
            {
                "developer": _developer_info(dev),
                "pullRequests": prs[dev.id],
                "reviews": reviews.get(dev.id, 0),
            }
            for dev in population
            if prs.get(dev.id)
        ]
        data.sort(key=lambda row: row["pullRequests"], reverse=True)
        return data

    async def get_reviews_performed(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        population = await self._population(filters)
        if not population:
            return []
        reviews = await self._grouped_counts(
            select(Review.reviewer_id, func.count(Review.id))
            .where(
                *review_conditions(filters),
                Review.reviewer_id.in_(population_ids(filters)),
            )
            .group_by(Review.reviewer_id)
        )
        data = [
            {"reviewer": _developer_info(dev), "reviews": reviews[dev.id]}
            for dev in population
            if reviews.get(dev.id)
        ]
        data.sort(key=lambda row: row["reviews"], reverse=True)
        return data

    async def get_roles_by_team(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(Team.name, Role.name, func.count(Developer.id))
            .select_from(Developer)
            .outerjoin(Team, Developer.team_id == Team.id)
            .outerjoin(Role, Developer.role_id == Role.id)
            .where(*developer_conditions(filters))
            .group_by(Team.name, Role.name)
            .order_by(Team.name, Role.name)
        )
        return [
            {"team": team or UNKNOWN, "role": role or UNKNOWN, "count": int(count)}
            for team, role, count in result.all()
        ]

    def _cycle_time_query(self, filters: KpiFilters):
        return select(PullRequest).where(
            *pull_request_conditions(filters),
            PullRequest.cycle_time_days.is_not(None),
        )

    async def get_cycle_time(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            self._cycle_time_query(filters)
            .options(
                selectinload(PullRequest.created_by).selectinload(Developer.team)
            )
            .order_by(PullRequest.cycle_time_days.desc())
        )
        return [
            {
                "pullRequest": {"id": str(pr.id), "title": pr.title},
                "author": _author_info(pr.created_by),
                "cycleTimeDays": pr.cycle_time_days,
            }
            for pr in result.scalars().all()
        ]

    async def _top_cycle_time_page(
        self, filters: KpiFilters, page: int, page_size: int
    ):
        page, page_size, offset = normalize_page(page, page_size)
        total = await self.session.scalar(
            select(func.count()).select_from(
                self._cycle_time_query(filters).subquery()
            )
        )
        result = await self.session.execute(
            self._cycle_time_query(filters)
            .options(
                selectinload(PullRequest.created_by).selectinload(Developer.team)
            )
            .order_by(PullRequest.cycle_time_days.desc(), PullRequest.id)
            .offset(offset)
            .limit(page_size)
        )
        return page, page_size, offset, total or 0, list(result.scalars().all())

    async def get_top_cycle_time(
        self, filters: KpiFilters, page: int = 1, page_size: int = 10
    ) -> Dict[str, Any]:
        page, page_size, _, total, prs = await self._top_cycle_time_page(
            filters, page, page_size
        )
        return {
            "data": [
                {
                    "pullRequest": {
                        "id": str(pr.id),
                        "title": pr.title,
                        "status": pr.status,
                        "createdAt": _iso(pr.created_at),
                        "mergedAt": _iso(pr.merged_at),
                    },
                    "author": _author_info(pr.created_by),
                    "cycleTimeDays": pr.cycle_time_days,
                }
                for pr in prs
            ],
            "pagination": build_pagination(page, page_size, total),
        }

    async def get_top_cycle_time_prs(
        self, filters: KpiFilters, page: int = 1, page_size: int = 10
    ) -> Dict[str, Any]:
        """Ranked table of the slowest pull requests."""
        page, page_size, offset, total, prs = await self._top_cycle_time_page(
            filters, page, page_size
        )
        return {
            "data": [
                {
                    "position": offset + index + 1,
                    "team": _team_name(pr.created_by),
                    "title": pr.title,
                    "status": pr.status,
                    "createdAt": _iso(pr.created_at),
                    "mergedAt": _iso(pr.merged_at),
                    "cycleTimeDays": pr.cycle_time_days,
                    "reviewTimeDays": pr.review_time_days,
                    "developer": pr.created_by.name,
                }
                for index, pr in enumerate(prs)
            ],
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size),
        }

    async def get_files_changed_by_team(
        self, filters: KpiFilters
    ) -> List[Dict[str, Any]]:
        buckets = await self._team_buckets(filters)
        result = await self.session.execute(
            select(
                PullRequest.created_by_id,
                func.count(PullRequest.id),
                func.sum(PullRequest.files_changed),
            )
            .where(
                *pull_request_conditions(filters),
                PullRequest.files_changed.is_not(None),
            )
            .group_by(PullRequest.created_by_id)
        )
        rows = result.all()
        developers = await self._developers(row[0] for row in rows)

        teams = {name: [0, 0] for name in buckets}
        for developer_id, count, files in rows:
            name = _team_name(developers.get(developer_id))
            if name in teams:
                teams[name][0] += int(count)
                teams[name][1] += int(files or 0)

        return [
            {
                "team": {"name": name},
                "pullRequests": prs,
                "totalFilesChanged": files,
                "averageFilesChanged": int(_round(files / prs)),
            }
            for name, (prs, files) in teams.items()
            if prs
        ]

    async def get_cycle_time_by_team(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        buckets = await self._team_buckets(filters)
        result = await self.session.execute(
            select(
                PullRequest.created_by_id,
                func.count(PullRequest.id),
                func.sum(PullRequest.cycle_time_days),
                func.sum(func.coalesce(PullRequest.review_time_days, 0)),
            )
            .where(
                *pull_request_conditions(filters),
                PullRequest.cycle_time_days.is_not(None),
            )
            .group_by(PullRequest.created_by_id)
        )
        rows = result.all()
        developers = await self._developers(row[0] for row in rows)

        teams = {name: [0, 0.0, 0.0] for name in buckets}
        for developer_id, count, cycle, review in rows:
            name = _team_name(developers.get(developer_id))
            if name in teams:
                teams[name][0] += int(count)
                teams[name][1] += float(cycle or 0)
                teams[name][2] += float(review or 0)

        return [
            {
                "team": {"name": name},
                "pullRequests": prs,
                "averageCycleTime": _round(cycle / prs, 1),
                "averageReviewTime": _round(review / prs, 1),
            }
            for name, (prs, cycle, review) in teams.items()
            if prs
        ]

    async def get_dashboard_summary(self, filters: KpiFilters) -> Dict[str, Any]:
        """Headline numbers and small breakdowns for the dashboard landing page."""
        pr_where = pull_request_conditions(filters)
        # Developers with at least one pull request matching the filters.
        active_developers = select(PullRequest.created_by_id).where(*pr_where)

        total_prs = await self.session.scalar(
            select(func.count(PullRequest.id)).where(*pr_where)
        )
        total_reviews = await self.session.scalar(
            select(func.count(Review.id))
            .select_from(Review)
            .join(PullRequest, Review.pull_request_id == PullRequest.id)
            .where(*pr_where)
        )
        total_comments = await self.session.scalar(
            select(func.count(Comment.id))
            .select_from(Comment)
            .join(PullRequest, Comment.pull_request_id == PullRequest.id)
            .where(*pr_where)
        )
        total_commits = await self.session.scalar(
            select(func.count(Commit.id)).where(*commit_conditions(filters))
        )
        avg_cycle_time = await self.session.scalar(
            select(func.avg(PullRequest.cycle_time_days)).where(
                *pr_where, PullRequest.cycle_time_days.is_not(None)
            )
        )
        total_teams = await self.session.scalar(
            select(func.count(Team.id)).where(
                Team.id.in_(
                    select(Developer.team_id).where(
                        Developer.id.in_(active_developers)
                    )
                )
            )
        )
        total_roles = await self.session.scalar(
            select(func.count(Role.id)).where(
                Role.id.in_(
                    select(Developer.role_id).where(
                        Developer.id.in_(active_developers)
                    )
                )
            )
        )
        total_stacks = await self.session.scalar(
            select(func.count(Stack.id)).where(
                Stack.id.in_(
                    select(developer_stacks.c.stack_id).where(
                        developer_stacks.c.developer_id.in_(active_developers)
                    )
                )
            )
        )
        total_developers = await self.session.scalar(
            select(func.count(Developer.id)).where(
                *developer_conditions(filters),
                Developer.id.in_(active_developers),
            )
        )

        by_status = await self._grouped_counts(
            select(PullRequest.status, func.count(PullRequest.id))
            .where(*pr_where)
            .group_by(PullRequest.status)
            .order_by(PullRequest.status)
        )

        prs_by_creator = await self._pull_requests_by_creator(filters)
        developers = await self._developers(prs_by_creator)
        by_team: Dict[str, int] = {}
        for developer_id, count in prs_by_creator.items():
            name = _team_name(developers.get(developer_id))
            by_team[name] = by_team.get(name, 0) + count

        roles = await self._roles_of_active_developers(filters, active_developers)
        top_developers = await self._top_developers(filters)

        return {
            "totalPullRequests": total_prs or 0,
            "totalReviews": total_reviews or 0,
            "totalComments": total_comments or 0,
            "totalCommits": total_commits or 0,
            "totalTeams": total_teams or 0,
            "totalRoles": total_roles or 0,
            "totalDevelopers": total_developers or 0,
            "totalStacks": total_stacks or 0,
            "averageCycleTime": int(_round(float(avg_cycle_time or 0) * MS_PER_DAY)),
            "averageReviewTime": 0,
            "topDevelopers": top_developers,
            "pullRequestsByStatus": [
                {"status": status, "count": count}
                for status, count in by_status.items()
                if count
            ],
            "pullRequestsByTeam": [
                {"team": {"name": name}, "count": count}
                for name, count in sorted(by_team.items())
            ],
            "rolesByTeam": roles,
        }

    async def _roles_of_active_developers(
        self, filters: KpiFilters, active_developers
    ) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(Role.name, func.count(Developer.id))
            .select_from(Developer)
            .outerjoin(Role, Developer.role_id == Role.id)
            .where(
                *developer_conditions(filters),
                Developer.id.in_(active_developers),
            )
            .group_by(Role.name)
            .order_by(Role.name)
        )
        roles = []
        for name, count in result.all():
            if name is None and filters.role_id is not None:
                continue
            roles.append({"name": name or NO_ROLE, "count": int(count)})
        return roles

    async def _top_developers(self, filters: KpiFilters) -> List[Dict[str, Any]]:
        prs = await self._pull_requests_by_creator(
            filters, PullRequest.created_by_id.in_(population_ids(filters))
        )
        top = sorted(prs.items(), key=lambda item: item[1], reverse=True)
        top = top[:TOP_DEVELOPERS]
        if not top:
            return []
        top_ids = [developer_id for developer_id, _ in top]
        developers = await self._developers(top_ids)
        reviews = await self._grouped_counts(
            select(Review.reviewer_id, func.count(Review.id))
            .where(*review_conditions(filters), Review.reviewer_id.in_(top_ids))
            .group_by(Review.reviewer_id)
        )
        return [
            {
                "developer": _developer_info(developers[developer_id]),
                "pullRequests": count,
                "reviews": reviews.get(developer_id, 0),
                "averageCycleTime": 0,
                "averageReviewTime": 0,
            }
            for developer_id, count in top
            if developer_id in developers
        ]
