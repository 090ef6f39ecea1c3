"""Errors raised by the Azure DevOps connector."""

from __future__ import annotations

from typing import Optional


class AzureDevOpsAPIError(Exception):
    """Upstream request failed. ``status_code`` is None for transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class AzureDevOpsAuthError(AzureDevOpsAPIError):
    """The PAT was rejected (401) or lacks scope (403)."""


class AzureDevOpsRateLimitError(AzureDevOpsAPIError):
    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, status_code=429)
        self.retry_after_seconds = retry_after_seconds
