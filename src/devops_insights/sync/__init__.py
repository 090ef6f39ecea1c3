from .orchestrator import SyncService, get_sync_service
from .pipeline import AzureSyncService

__all__ = ["AzureSyncService", "SyncService", "get_sync_service"]
