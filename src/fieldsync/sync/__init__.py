"""Sync module: API client and offline queue draining."""

from fieldsync.sync.api_client import ApiClient, ApiContext
from fieldsync.sync.manager import RETRY_DELAYS, SyncManager, SyncResult, get_retry_delay
from fieldsync.sync.single_flight import SingleFlight

__all__ = [
    "RETRY_DELAYS",
    "ApiClient",
    "ApiContext",
    "SingleFlight",
    "SyncManager",
    "SyncResult",
    "get_retry_delay",
]
