"""Azure DevOps to database sync pipeline.

One run of :meth:`AzureSyncService.sync_repository` mirrors a repository in
three stages:

1. pull requests (project PR search, filtered to the repository),
2. commits of the repository,
3. details of recent pull requests: reviewers, comment threads and the
   file changes of the latest iteration.

Stage 1 and 2 failures propagate and fail the sync. Malformed or failing
items are logged and skipped. In stage 3 each detail fetch of each pull
request fails independently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from devops_insights.connectors.azure_devops import AzureDevOpsClient
from devops_insights.db import Database
from devops_insights.exceptions import NotFoundError, ValidationError
from devops_insights.models import (
    AZURE_DEVOPS_PAT_KEY,
    PullRequestStatus,
    Repository,
    ReviewStatus,
    SyncType,
)
from devops_insights.services.crypto import decrypt_value
from devops_insights.services.system_config import SystemConfigService
from devops_insights.storage import SyncStore
from devops_insights.utils.datetime import parse_datetime, to_utc
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

MAX_PULL_REQUESTS = 5000
MAX_COMMITS = 5000
MAX_DETAIL_PULL_REQUESTS = 500
PULL_REQUEST_WAVE = 10
DETAIL_WAVE = 5
DETAIL_LOOKBACK_DAYS = 180

_STATUS_MAP = {
    "active": PullRequestStatus.ACTIVE.value,
    "abandoned": PullRequestStatus.CLOSED.value,
    "completed": PullRequestStatus.COMPLETED.value,
    "notset": PullRequestStatus.ACTIVE.value,
}

_VOTE_MAP = {
    10: ReviewStatus.APPROVED.value,
    5: ReviewStatus.APPROVED_WITH_SUGGESTIONS.value,
    -5: ReviewStatus.WAITING_FOR_AUTHOR.value,
    -10: ReviewStatus.REJECTED.value,
}

ClientFactory = Callable[[str, str], AzureDevOpsClient]


def map_pull_request_status(raw: Optional[str]) -> str:
    """Map an Azure PR status to ours. Unknown values become ``active``."""
    status = _STATUS_MAP.get((raw or "").lower())
    if status is None:
        logger.warning(
            "Unknown pull request status %r, storing as active",
            sanitize_for_log(raw),
        )
        return PullRequestStatus.ACTIVE.value
    return status


def map_review_vote(vote: Any) -> str:
    try:
        return _VOTE_MAP.get(int(vote), ReviewStatus.NO_RESPONSE.value)
    except (TypeError, ValueError):
        return ReviewStatus.NO_RESPONSE.value


def cycle_time_days(
    created_at: Optional[datetime], closed_at: Optional[datetime]
) -> Optional[float]:
    """Days between creation and close, None while open."""
    if created_at is None or closed_at is None:
        return None
    seconds = (to_utc(closed_at) - to_utc(created_at)).total_seconds()
    return max(seconds, 0.0) / 86400


def strip_branch(ref: Optional[str]) -> str:
    if not ref:
        return "unknown"
    prefix = "refs/heads/"
    return ref[len(prefix) :] if ref.startswith(prefix) else ref


def summarize_changes(entries: List[Dict[str, Any]]) -> Dict[str, int]:
    """Distinct changed paths plus summed line counts where present."""
    paths = set()
    added = 0
    deleted = 0
    for entry in entries:
        item = entry.get("item") or {}
        path = item.get("path")
        if not path or item.get("isFolder") or path in paths:
            continue
        paths.add(path)
        added += int(entry.get("additions") or 0)
        deleted += int(entry.get("deletions") or 0)
    return {"files_changed": len(paths), "lines_added": added, "lines_deleted": deleted}


@dataclass
class SyncSummary:
    pullRequests: int = 0
    commits: int = 0
    reviews: int = 0
    comments: int = 0
    filesUpdated: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class AzureSyncService:
    """Runs the sync stages for one repository against one database."""

    def __init__(
        self,
        database: Database,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.database = database
        self.store = SyncStore(database)
        self._client_factory = client_factory or AzureDevOpsClient

    async def _resolve_token(self, repository: Repository) -> str:
        if repository.access_token:
            return decrypt_value(repository.access_token)
        async with self.database.session() as session:
            token = await SystemConfigService(session).get_decrypted_value(
                AZURE_DEVOPS_PAT_KEY
            )
        if not token:
            raise ValidationError(
                "No Azure DevOps personal access token configured for "
                f"repository {repository.name}"
            )
        return token

    async def sync_repository(
        self,
        repository_id: uuid.UUID,
        sync_type: str = SyncType.INCREMENTAL.value,
    ) -> Dict[str, int]:
        repository = await self.store.get_repository(repository_id)
        if repository is None:
            raise NotFoundError("Repository not found")

        token = await self._resolve_token(repository)
        since = None
        if sync_type == SyncType.INCREMENTAL.value and repository.last_sync_at:
            since = to_utc(repository.last_sync_at)

        logger.info(
            "Starting %s sync of %s/%s/%s (since %s)",
            sync_type,
            sanitize_for_log(repository.organization),
            sanitize_for_log(repository.project),
            sanitize_for_log(repository.name),
            since.isoformat() if since else "beginning",
        )
        summary = SyncSummary()
        client = self._client_factory(repository.organization, token)
        try:
            await self._sync_pull_requests(client, repository, since, summary)
            await self._sync_commits(client, repository, since, summary)
            await self._sync_details(client, repository, since, summary)
        finally:
            await client.close()

        logger.info(
            "Finished sync of repository %s: %s", repository.id, summary.to_dict()
        )
        return summary.to_dict()

    # -- stage 1: pull requests ----------------------------------------------

    async def _sync_pull_requests(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        since: Optional[datetime],
        summary: SyncSummary,
    ) -> None:
        pages = client.pull_requests(
            repository.project,
            repository_id=repository.azure_id,
            updated_after=since.isoformat() if since else None,
            cap=MAX_PULL_REQUESTS,
        )
        try:
            async for page in pages:
                for start in range(0, len(page), PULL_REQUEST_WAVE):
                    wave = page[start : start + PULL_REQUEST_WAVE]
                    results = await asyncio.gather(
                        *(self._process_pull_request(repository, pr) for pr in wave)
                    )
                    summary.pullRequests += sum(1 for ok in results if ok)
                    summary.skipped += sum(1 for ok in results if not ok)
        except Exception:
            logger.error(
                "Pull request stage failed for repository %s",
                repository.id,
                exc_info=True,
            )
            raise

    async def _process_pull_request(
        self, repository: Repository, item: Dict[str, Any]
    ) -> bool:
        pr_id = item.get("pullRequestId")
        try:
            if not pr_id or not item.get("title") or not item.get("createdBy"):
                logger.warning(
                    "Skipping pull request %s of repository %s: missing id, "
                    "title or creator",
                    sanitize_for_log(pr_id),
                    repository.id,
                )
                return False
            await self.upsert_pull_request(repository, item)
            return True
        except Exception as e:
            logger.warning(
                "Failed to sync pull request %s of repository %s: %s",
                sanitize_for_log(pr_id),
                repository.id,
                sanitize_for_log(str(e)),
            )
            return False

    async def upsert_pull_request(
        self, repository: Repository, item: Dict[str, Any]
    ) -> uuid.UUID:
        creator = item["createdBy"]
        developer = await self.store.find_or_create_developer(
            creator.get("displayName"), creator.get("uniqueName"), creator.get("id")
        )
        created_at = parse_datetime(item.get("creationDate"))
        if created_at is None:
            raise ValueError("Pull request has no creationDate")
        closed_at = parse_datetime(item.get("closedDate"))
        merged_at = closed_at if item.get("mergeStatus") == "succeeded" else None

        row = {
            "azure_id": int(item["pullRequestId"]),
            "title": item["title"],
            "description": item.get("description") or item["title"],
            "status": map_pull_request_status(item.get("status")),
            "source_branch": strip_branch(item.get("sourceRefName")),
            "target_branch": strip_branch(item.get("targetRefName")),
            "repository_id": repository.id,
            "created_by_id": developer.id,
            "created_at": created_at,
            "updated_at": datetime.now(timezone.utc),
            "merged_at": merged_at,
            "closed_at": closed_at,
            "cycle_time_days": cycle_time_days(created_at, closed_at),
            "is_draft": bool(item.get("isDraft", False)),
        }
        return await self.store.upsert_pull_request(row)

    # -- stage 2: commits ------------------------------------------------------

    async def _sync_commits(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        since: Optional[datetime],
        summary: SyncSummary,
    ) -> None:
        if not repository.azure_id:
            logger.warning(
                "Repository %s has no Azure id, skipping commits", repository.id
            )
            return
        pages = client.commits(
            repository.project,
            repository.azure_id,
            from_date=since.isoformat() if since else None,
            cap=MAX_COMMITS,
        )
        try:
            async for page in pages:
                rows = []
                for item in page:
                    try:
                        row = await self._commit_row(repository, item)
                    except Exception as e:
                        logger.warning(
                            "Failed to process commit %s: %s",
                            sanitize_for_log(item.get("commitId")),
                            sanitize_for_log(str(e)),
                        )
                        row = None
                    if row is None:
                        summary.skipped += 1
                        continue
                    rows.append(row)
                summary.commits += await self._store_commits(rows, summary)
        except Exception:
            logger.error(
                "Commit stage failed for repository %s",
                repository.id,
                exc_info=True,
            )
            raise

    async def _store_commits(
        self, rows: List[Dict[str, Any]], summary: SyncSummary
    ) -> int:
        """Upsert a page of commits, falling back to one row at a time."""
        if not rows:
            return 0
        try:
            await self.store.upsert_commits(rows)
            return len(rows)
        except Exception as e:
            logger.warning(
                "Batch upsert of %d commits failed, retrying one by one: %s",
                len(rows),
                sanitize_for_log(str(e)),
            )
        stored = 0
        for row in rows:
            try:
                await self.store.upsert_commits([row])
            except Exception as e:
                logger.warning(
                    "Failed to store commit %s: %s",
                    sanitize_for_log(row["azure_id"]),
                    sanitize_for_log(str(e)),
                )
                summary.skipped += 1
                continue
            stored += 1
        return stored

    async def _commit_row(
        self, repository: Repository, item: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        commit_id = item.get("commitId")
        author = item.get("author") or {}
        if not commit_id or not (author.get("email") or author.get("name")):
            logger.warning(
                "Skipping commit %s without id or author", sanitize_for_log(commit_id)
            )
            return None
        developer = await self.store.find_or_create_developer(
            author.get("name"), author.get("email")
        )
        return {
            "azure_id": commit_id,
            "hash": commit_id,
            "message": item.get("comment") or "No message",
            "repository_id": repository.id,
            "author_id": developer.id,
            "created_at": parse_datetime(author.get("date"))
            or datetime.now(timezone.utc),
        }

    # -- stage 3: details ------------------------------------------------------

    async def _sync_details(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        since: Optional[datetime],
        summary: SyncSummary,
    ) -> None:
        if not repository.azure_id:
            return
        pull_requests = await self.store.list_pull_requests_for_details(
            repository.id,
            updated_since=since,
            limit=MAX_DETAIL_PULL_REQUESTS,
            lookback_days=DETAIL_LOOKBACK_DAYS,
        )
        logger.info(
            "Syncing details of %d pull requests of repository %s",
            len(pull_requests),
            repository.id,
        )
        for start in range(0, len(pull_requests), DETAIL_WAVE):
            wave = pull_requests[start : start + DETAIL_WAVE]
            await asyncio.gather(
                *(self._sync_pr_details(client, repository, pr, summary) for pr in wave)
            )

    async def _sync_pr_details(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        pr: Dict[str, Any],
        summary: SyncSummary,
    ) -> None:
        steps: List[tuple[str, Callable[..., Awaitable[None]]]] = [
            ("reviews", self._sync_reviews),
            ("comments", self._sync_comments),
            ("file changes", self._sync_file_changes),
        ]
        for label, step in steps:
            try:
                await step(client, repository, pr, summary)
            except Exception as e:
                logger.warning(
                    "Failed to sync %s for pull request %s: %s",
                    label,
                    pr["azure_id"],
                    sanitize_for_log(str(e)),
                )

    async def _sync_reviews(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        pr: Dict[str, Any],
        summary: SyncSummary,
    ) -> None:
        reviewers = await client.get_pull_request_reviewers(
            repository.project, repository.azure_id, pr["azure_id"]
        )
        rows = []
        for reviewer in reviewers:
            if not reviewer.get("id"):
                continue
            developer = await self.store.find_or_create_developer(
                reviewer.get("displayName"),
                reviewer.get("uniqueName"),
                reviewer.get("id"),
            )
            vote = int(reviewer.get("vote") or 0)
            rows.append(
                {
                    "azure_id": f"{pr['azure_id']}:{reviewer['id']}",
                    "status": map_review_vote(vote),
                    "vote": vote,
                    "pull_request_id": pr["id"],
                    "reviewer_id": developer.id,
                }
            )
        await self.store.upsert_reviews(rows)
        summary.reviews += len(rows)

    async def _sync_comments(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        pr: Dict[str, Any],
        summary: SyncSummary,
    ) -> None:
        threads = await client.get_pull_request_threads(
            repository.project, repository.azure_id, pr["azure_id"]
        )
        rows = []
        for thread in threads:
            for comment in thread.get("comments") or []:
                author = comment.get("author") or {}
                content = comment.get("content")
                if comment.get("commentType") == "system" or not content or not author:
                    continue
                developer = await self.store.find_or_create_developer(
                    author.get("displayName"),
                    author.get("uniqueName"),
                    author.get("id"),
                )
                published = parse_datetime(comment.get("publishedDate")) or (
                    datetime.now(timezone.utc)
                )
                rows.append(
                    {
                        "azure_id": f"{pr['azure_id']}:{thread.get('id')}:"
                        f"{comment.get('id')}",
                        "content": content,
                        "pull_request_id": pr["id"],
                        "author_id": developer.id,
                        "created_at": published,
                        "updated_at": parse_datetime(comment.get("lastUpdatedDate"))
                        or published,
                    }
                )
        await self.store.upsert_comments(rows)
        summary.comments += len(rows)

    async def _sync_file_changes(
        self,
        client: AzureDevOpsClient,
        repository: Repository,
        pr: Dict[str, Any],
        summary: SyncSummary,
    ) -> None:
        entries = await client.get_pull_request_changes(
            repository.project, repository.azure_id, pr["azure_id"]
        )
        stats = summarize_changes(entries)
        await self.store.update_pull_request_file_stats(pr["id"], **stats)
        summary.filesUpdated += 1
