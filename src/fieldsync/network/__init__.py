"""Connectivity monitoring and sync orchestration."""

from fieldsync.network.orchestrator import (
    Notification,
    NotificationLevel,
    OrchestratorState,
    SyncOrchestrator,
    SyncStatus,
)
from fieldsync.network.status import ConnectivityMonitor, NetworkStatus, effective_type_for

__all__ = [
    "ConnectivityMonitor",
    "NetworkStatus",
    "Notification",
    "NotificationLevel",
    "OrchestratorState",
    "SyncOrchestrator",
    "SyncStatus",
    "effective_type_for",
]
