from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import make_developer, make_pull_request
from devops_insights.exceptions import ValidationError
from devops_insights.models import Comment, Commit, Review, Role, Stack, Team
from devops_insights.services.cache import MemoryBackend, TTLCache
from devops_insights.services.kpi_filters import KpiFilters
from devops_insights.services.kpis import KpiService


def _day(day: int, month: int = 3) -> datetime:
    return datetime(2025, month, day, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def kpi_data(database, repository):
    async with database.session() as session:
        platform = Team(name="Platform", management="Operations")
        mobile = Team(name="Mobile", management="Product")
        backend = Role(name="Backend")
        python = Stack(name="Python", color="#3776ab")
        session.add_all([platform, mobile, backend, python])

        alice = make_developer(
            session, "alice@contoso.com", team=platform, role=backend
        )
        alice.stacks = [python]
        bob = make_developer(session, "bob@contoso.com", team=mobile)
        carol = make_developer(session, "carol@contoso.com")

        alice_first = make_pull_request(
            session,
            repository.id,
            alice,
            created_at=_day(1),
            closed_at=_day(3),
            files_changed=4,
        )
        make_pull_request(
            session, repository.id, alice, created_at=_day(10), files_changed=3
        )
        bob_pr = make_pull_request(
            session,
            repository.id,
            bob,
            created_at=_day(5),
            closed_at=_day(9),
            files_changed=5,
        )
        make_pull_request(session, repository.id, carol, created_at=_day(1, month=4))

        for index, reviewer in enumerate((bob, carol)):
            session.add(
                Review(
                    azure_id=f"r{index}",
                    status="approved",
                    vote=10,
                    pull_request=alice_first,
                    reviewer=reviewer,
                )
            )
        session.add(
            Review(
                azure_id="r-alice",
                status="approved",
                vote=10,
                pull_request=bob_pr,
                reviewer=alice,
            )
        )
        session.add(
            Comment(
                azure_id="c1",
                content="nit",
                pull_request=alice_first,
                author=bob,
            )
        )
        for index, author in enumerate((alice, alice, alice, bob)):
            session.add(
                Commit(
                    azure_id=f"sha{index}",
                    hash=f"sha{index}",
                    message="work",
                    repository_id=repository.id,
                    author=author,
                    created_at=_day(2) + timedelta(hours=index),
                )
            )
    return {
        "platform": platform,
        "mobile": mobile,
        "backend": backend,
        "python": python,
        "alice": alice,
        "bob": bob,
        "carol": carol,
    }


def _service(session) -> KpiService:
    return KpiService(session, cache=TTLCache(300, MemoryBackend()))


def _by_team(rows):
    return {row["team"]["name"]: row for row in rows}


class TestKpiFilters:
    def test_all_and_empty_are_unset(self):
        filters = KpiFilters.from_params(
            {"teamId": "all", "status": "", "startDate": "all"}
        )
        assert filters == KpiFilters()
        assert not filters.has_population_filter

    def test_bare_end_date_covers_whole_day(self):
        filters = KpiFilters.from_params(startDate="2025-03-01", endDate="2025-03-05")
        assert filters.has_date_range
        assert filters.end_date == datetime(
            2025, 3, 5, 23, 59, 59, 999999, tzinfo=timezone.utc
        )

    def test_single_date_bound_is_ignored(self):
        assert not KpiFilters.from_params(startDate="2025-03-01").has_date_range

    def test_invalid_values_raise(self):
        with pytest.raises(ValidationError):
            KpiFilters.from_params(startDate="yesterday")
        with pytest.raises(ValidationError):
            KpiFilters.from_params(teamId="not-a-uuid")

    def test_cache_key_is_stable(self):
        a = KpiFilters.from_params(status="active", management="Ops")
        b = KpiFilters.from_params({"management": "Ops", "status": "active"})
        assert a.cache_key() == b.cache_key()
        assert str(a) == str(b)


@pytest.mark.asyncio
async def test_pr_review_comments(session, kpi_data):
    data = await _service(session).get_pr_review_comments(KpiFilters())

    assert [row["developer"]["name"] for row in data] == ["Alice", "Bob", "Carol"]
    alice = data[0]
    assert alice["pullRequests"] == 2
    assert alice["reviews"] == 2
    assert alice["comments"] == 1
    assert alice["averagePRs"] == 1
    assert alice["developer"]["team"] == {"name": "Platform"}
    assert alice["developer"]["role"] == {"name": "Backend"}


@pytest.mark.asyncio
async def test_pr_review_comments_is_cached(database, session, kpi_data, repository):
    service = _service(session)
    first = await service.get_pr_review_comments(KpiFilters())

    async with database.session() as other:
        make_pull_request(other, repository.id, kpi_data["carol"])

    second = await service.get_pr_review_comments(KpiFilters())
    assert second == first


@pytest.mark.asyncio
async def test_pr_commit_by_team(session, kpi_data):
    data = await _service(session).get_pr_commit(KpiFilters())

    assert [row["team"]["name"] for row in data] == ["Mobile", "Platform", "No team"]
    teams = _by_team(data)
    assert teams["Platform"]["pullRequests"] == 2
    assert teams["Platform"]["commits"] == 3
    assert teams["Platform"]["ratio"] == 1.5
    assert teams["Platform"]["idealRatio"] == 1.0
    assert teams["No team"]["commits"] == 0
    assert teams["No team"]["ratio"] == 0


@pytest.mark.asyncio
async def test_team_filter_drops_no_team_bucket(session, kpi_data):
    filters = KpiFilters(team_id=kpi_data["platform"].id)
    data = await _service(session).get_pr_commit(filters)

    assert [row["team"]["name"] for row in data] == ["Platform"]
    assert data[0]["pullRequests"] == 2


@pytest.mark.asyncio
async def test_management_filter(session, kpi_data):
    filters = KpiFilters(management="Product")
    data = await _service(session).get_pr_review_by_team(filters)

    teams = _by_team(data)
    assert teams["Mobile"]["pullRequests"] == 1
    assert "Platform" not in teams


@pytest.mark.asyncio
async def test_reviews_by_team(session, kpi_data):
    service = _service(session)

    received = _by_team(await service.get_pr_review_by_team(KpiFilters()))
    assert received["Platform"]["reviews"] == 2
    assert received["Platform"]["ratio"] == 1.0
    assert received["Mobile"]["reviews"] == 1

    performed = _by_team(await service.get_reviews_performed_by_team(KpiFilters()))
    assert performed["Platform"]["count"] == 2
    assert "No team" not in performed


@pytest.mark.asyncio
async def test_pr_review_and_reviews_performed(session, kpi_data):
    service = _service(session)

    pr_review = await service.get_pr_review(KpiFilters())
    assert pr_review[0]["developer"]["name"] == "Alice"
    assert pr_review[0]["reviews"] == 2

    performed = await service.get_reviews_performed(KpiFilters())
    assert {row["reviewer"]["name"]: row["reviews"] for row in performed} == {
        "Alice": 1,
        "Bob": 1,
        "Carol": 1,
    }


@pytest.mark.asyncio
async def test_stack_filter_limits_population(session, kpi_data):
    filters = KpiFilters(stack_id=kpi_data["python"].id)
    data = await _service(session).get_reviews_performed(filters)
    assert [row["reviewer"]["name"] for row in data] == ["Alice"]


@pytest.mark.asyncio
async def test_roles_by_team(session, kpi_data):
    data = await _service(session).get_roles_by_team(KpiFilters())
    rows = {(row["team"], row["role"]): row["count"] for row in data}
    assert rows == {
        ("Platform", "Backend"): 1,
        ("Mobile", "Unknown"): 1,
        ("Unknown", "Unknown"): 1,
    }


@pytest.mark.asyncio
async def test_cycle_time(session, kpi_data):
    data = await _service(session).get_cycle_time(KpiFilters())

    assert [row["cycleTimeDays"] for row in data] == [4.0, 2.0]
    assert data[0]["author"] == {"name": "Bob", "team": {"name": "Mobile"}}


@pytest.mark.asyncio
async def test_top_cycle_time_pagination(session, kpi_data):
    service = _service(session)

    page = await service.get_top_cycle_time(KpiFilters(), page=1, page_size=1)
    assert len(page["data"]) == 1
    assert page["pagination"]["total"] == 2
    assert page["pagination"]["totalPages"] == 2

    ranked = await service.get_top_cycle_time_prs(KpiFilters(), page=2, page_size=1)
    assert ranked["total"] == 2
    assert ranked["page"] == 2
    assert ranked["totalPages"] == 2
    assert ranked["data"][0]["position"] == 2
    assert ranked["data"][0]["developer"] == "Alice"
    assert ranked["data"][0]["team"] == "Platform"


@pytest.mark.asyncio
async def test_files_changed_and_cycle_time_by_team(session, kpi_data):
    service = _service(session)

    files = _by_team(await service.get_files_changed_by_team(KpiFilters()))
    assert files["Platform"] == {
        "team": {"name": "Platform"},
        "pullRequests": 2,
        "totalFilesChanged": 7,
        "averageFilesChanged": 4,
    }
    assert files["Mobile"]["averageFilesChanged"] == 5
    assert "No team" not in files

    cycle = _by_team(await service.get_cycle_time_by_team(KpiFilters()))
    assert cycle["Platform"]["averageCycleTime"] == 2.0
    assert cycle["Mobile"]["averageCycleTime"] == 4.0
    assert cycle["Mobile"]["averageReviewTime"] == 0.0


@pytest.mark.asyncio
async def test_date_range_filters_pull_requests(session, kpi_data):
    filters = KpiFilters.from_params(startDate="2025-03-01", endDate="2025-03-05")
    data = await _service(session).get_pr_review(filters)
    assert {row["developer"]["name"]: row["pullRequests"] for row in data} == {
        "Alice": 1,
        "Bob": 1,
    }


@pytest.mark.asyncio
async def test_dashboard_summary(session, kpi_data):
    summary = await _service(session).get_dashboard_summary(KpiFilters())

    assert summary["totalPullRequests"] == 4
    assert summary["totalReviews"] == 3
    assert summary["totalComments"] == 1
    assert summary["totalCommits"] == 4
    assert summary["totalTeams"] == 2
    assert summary["totalRoles"] == 1
    assert summary["totalStacks"] == 1
    assert summary["totalDevelopers"] == 3
    assert summary["averageCycleTime"] == 3 * 24 * 60 * 60 * 1000
    assert {row["status"]: row["count"] for row in summary["pullRequestsByStatus"]} == {
        "active": 2,
        "completed": 2,
    }
    assert summary["pullRequestsByTeam"] == [
        {"team": {"name": "Mobile"}, "count": 1},
        {"team": {"name": "No team"}, "count": 1},
        {"team": {"name": "Platform"}, "count": 2},
    ]
    assert {row["name"]: row["count"] for row in summary["rolesByTeam"]} == {
        "Backend": 1,
        "No role": 2,
    }
    top = summary["topDevelopers"]
    assert top[0]["developer"]["name"] == "Alice"
    assert top[0]["pullRequests"] == 2
    assert top[0]["reviews"] == 1


@pytest.mark.asyncio
async def test_dashboard_summary_with_role_filter(session, kpi_data):
    filters = KpiFilters(role_id=kpi_data["backend"].id)
    summary = await _service(session).get_dashboard_summary(filters)

    assert summary["totalDevelopers"] == 1
    assert summary["rolesByTeam"] == [{"name": "Backend", "count": 1}]


@pytest.mark.asyncio
async def test_empty_population(session, kpi_data):
    filters = KpiFilters(role_id=kpi_data["python"].id)
    service = _service(session)
    assert await service.get_pr_review_comments(filters) == []
    assert await service.get_pr_review(filters) == []
