"""
Azure DevOps REST connector.

Async client for the Git REST API (api-version 7.0) authenticated with a
personal access token. Transient failures (429 and 5xx) are retried with
backoff; authentication failures and other 4xx responses are not.

See: https://learn.microsoft.com/en-us/rest/api/azure/devops/git
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from devops_insights.connectors.exceptions import (
    AzureDevOpsAPIError,
    AzureDevOpsAuthError,
    AzureDevOpsRateLimitError,
)
from devops_insights.connectors.retry import retry_with_backoff
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

AZURE_DEVOPS_BASE_URL = "https://dev.azure.com"
API_VERSION = "7.0"
PAGE_SIZE = 100
DEFAULT_TIMEOUT = 8.0
VALIDATION_TIMEOUT = 10.0
STATUS_URL = "https://status.dev.azure.com/_apis/status/health"


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Parse Retry-After header from response."""
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return max(0.0, float(retry_after))
    except (ValueError, TypeError):
        return None


def _basic_auth_header(personal_access_token: str) -> str:
    encoded = base64.b64encode(f":{personal_access_token}".encode()).decode()
    return f"Basic {encoded}"


class AzureDevOpsClient:
    """
    Async HTTP client for one Azure DevOps organization.

    :param organization: Organization name (``dev.azure.com/{organization}``).
    :param personal_access_token: PAT with Code (Read) scope.
    :param timeout: Request timeout in seconds.
    :param transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        organization: str,
        personal_access_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        base_url: str = AZURE_DEVOPS_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.organization = organization
        self.timeout = timeout
        self.base_url = f"{base_url.rstrip('/')}/{organization}"
        self._headers = {
            "Authorization": _basic_auth_header(personal_access_token),
            "Accept": "application/json",
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AzureDevOpsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        client = await self._get_client()
        query = {"api-version": API_VERSION, **(params or {})}
        try:
            response = await client.request(
                method,
                self._url(path),
                params=query,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AzureDevOpsAPIError(f"Request timed out: {path}") from e
        except httpx.RequestError as e:
            raise AzureDevOpsAPIError(f"Request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AzureDevOpsAuthError(
                f"Azure DevOps rejected the credentials ({status}) for {path}",
                status_code=status,
            )
        if status == 429:
            raise AzureDevOpsRateLimitError(
                "Azure DevOps rate limit exceeded",
                retry_after_seconds=_parse_retry_after(response),
            )
        if status >= 400:
            raise AzureDevOpsAPIError(
                f"API error: {status} - {response.text[:500]}", status_code=status
            )
        if not response.content:
            return {}
        return response.json()

    @retry_with_backoff(max_retries=2, initial_delay=0.3, backoff_factor=1.5)
    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """GET ``path`` relative to the organization URL."""
        return await self._request("GET", path, params, timeout)

    async def get_value(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """GET a collection and return its ``value`` list."""
        data = await self.get(path, params)
        value = data.get("value")
        if not isinstance(value, list):
            raise AzureDevOpsAPIError(f"Response for {path} has no 'value' list")
        return value

    async def paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        cap: int = 5000,
        page_size: int = PAGE_SIZE,
    ):
        """Yield pages of a ``$top``/``$skip`` collection.

        Stops after a short page or once ``cap`` items were yielded. A page
        without a ``value`` list raises :class:`AzureDevOpsAPIError`.
        """
        skip = 0
        while skip < cap:
            page_params = {**(params or {}), "$top": page_size, "$skip": skip}
            items = await self.get_value(path, page_params)
            if not items:
                return
            items = items[: cap - skip]
            yield items
            if len(items) < page_size:
                return
            skip += len(items)

    async def validate_connection(self) -> bool:
        """True when the PAT can list projects of the organization."""
        await self.get("_apis/projects", {"$top": 1}, timeout=VALIDATION_TIMEOUT)
        return True

    async def check_api_status(self) -> Dict[str, Any]:
        """Public Azure DevOps service health."""
        client = await self._get_client()
        try:
            response = await client.get(
                STATUS_URL,
                params={"api-version": "7.1-preview.1"},
                timeout=VALIDATION_TIMEOUT,
            )
        except httpx.RequestError as e:
            raise AzureDevOpsAPIError(f"Status request failed: {e}") from e
        if response.status_code >= 400:
            raise AzureDevOpsAPIError(
                f"Status request failed: {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        return {
            "status": data.get("status", {}).get("health", "unknown"),
            "message": data.get("status", {}).get("message"),
            "lastUpdated": data.get("lastUpdated"),
        }

    async def get_projects(self) -> List[Dict[str, Any]]:
        projects: List[Dict[str, Any]] = []
        async for page in self.paginate("_apis/projects"):
            projects.extend(page)
        return projects

    async def get_repositories(self, project: str) -> List[Dict[str, Any]]:
        return await self.get_value(f"{project}/_apis/git/repositories")

    def pull_requests(
        self,
        project: str,
        repository_id: Optional[str] = None,
        updated_after: Optional[str] = None,
        cap: int = 5000,
    ):
        """Pages of pull requests in any state, newest first."""
        params: Dict[str, Any] = {"searchCriteria.status": "all"}
        if repository_id:
            params["searchCriteria.repositoryId"] = repository_id
        if updated_after:
            params["searchCriteria.updatedAfter"] = updated_after
        return self.paginate(f"{project}/_apis/git/pullrequests", params, cap)

    async def get_pull_requests(
        self, *args: Any, **kwargs: Any
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        async for page in self.pull_requests(*args, **kwargs):
            items.extend(page)
        return items

    def commits(
        self,
        project: str,
        repository_id: str,
        from_date: Optional[str] = None,
        cap: int = 5000,
    ):
        params: Dict[str, Any] = {}
        if from_date:
            params["searchCriteria.fromDate"] = from_date
        return self.paginate(
            f"{project}/_apis/git/repositories/{repository_id}/commits", params, cap
        )

    async def get_commits(self, *args: Any, **kwargs: Any) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        async for page in self.commits(*args, **kwargs):
            items.extend(page)
        return items

    def _pr_path(self, project: str, repository_id: str, pr_id: int) -> str:
        return (
            f"{project}/_apis/git/repositories/{repository_id}/pullrequests/{pr_id}"
        )

    async def get_pull_request_reviewers(
        self, project: str, repository_id: str, pr_id: int
    ) -> List[Dict[str, Any]]:
        return await self.get_value(
            f"{self._pr_path(project, repository_id, pr_id)}/reviewers"
        )

    async def get_pull_request_threads(
        self, project: str, repository_id: str, pr_id: int
    ) -> List[Dict[str, Any]]:
        return await self.get_value(
            f"{self._pr_path(project, repository_id, pr_id)}/threads"
        )

    async def get_pull_request_changes(
        self, project: str, repository_id: str, pr_id: int
    ) -> List[Dict[str, Any]]:
        """Change entries of the latest iteration, empty without iterations."""
        base = self._pr_path(project, repository_id, pr_id)
        iterations = await self.get_value(f"{base}/iterations")
        if not iterations:
            return []
        last_id = max(int(it.get("id", 0)) for it in iterations)
        data = await self.get(f"{base}/iterations/{last_id}/changes")
        entries = data.get("changeEntries")
        return entries if isinstance(entries, list) else []


async def validate_connection_with_credentials(
    organization: str,
    personal_access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Check an organization/PAT pair before it is saved.

    Returns ``{"valid": bool, "message": str}``; never raises for upstream
    failures.
    """
    async with AzureDevOpsClient(
        organization,
        personal_access_token,
        timeout=VALIDATION_TIMEOUT,
        transport=transport,
    ) as client:
        try:
            await client.validate_connection()
        except AzureDevOpsAuthError:
            return {"valid": False, "message": "Invalid personal access token"}
        except AzureDevOpsAPIError as e:
            logger.warning(
                "Azure DevOps validation failed for %s: %s",
                sanitize_for_log(organization),
                e,
            )
            if e.status_code == 404:
                return {"valid": False, "message": "Organization not found"}
            return {"valid": False, "message": str(e)}
    return {"valid": True, "message": "Connection successful"}
