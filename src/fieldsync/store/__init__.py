"""Local store module: versioned offline database and domain operations."""

from fieldsync.store.local_store import LocalStore
from fieldsync.store.offline_storage import OfflineStorage
from fieldsync.store.schema import DB_VERSION, STORAGE_LIMITS, StorageLimits

__all__ = ["DB_VERSION", "STORAGE_LIMITS", "LocalStore", "OfflineStorage", "StorageLimits"]
