from .azure_devops import AzureDevOpsClient, validate_connection_with_credentials
from .exceptions import (
    AzureDevOpsAPIError,
    AzureDevOpsAuthError,
    AzureDevOpsRateLimitError,
)

__all__ = [
    "AzureDevOpsAPIError",
    "AzureDevOpsAuthError",
    "AzureDevOpsClient",
    "AzureDevOpsRateLimitError",
    "validate_connection_with_credentials",
]
