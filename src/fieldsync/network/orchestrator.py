"""Sync orchestrator tying connectivity, queue polling and sync runs together."""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from fieldsync.config import Settings
from fieldsync.exceptions import FieldSyncError
from fieldsync.network.status import ConnectivityMonitor, NetworkStatus
from fieldsync.store import LocalStore, OfflineStorage, StorageLimits
from fieldsync.sync import ApiClient, ApiContext, SyncManager, SyncResult

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    """Sync lifecycle as seen by the UI. Offline is tracked separately."""

    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncStatus:
    is_syncing: bool = False
    pending_count: int = 0
    last_synced_at: datetime | None = None
    failed_count: int = 0
    is_initialized: bool = False


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """User-facing message about sync or connectivity."""

    level: NotificationLevel
    title: str
    description: str | None = None


NotificationCallback = Callable[[Notification], None]


class SyncOrchestrator:
    """High-level coordinator for offline sync.

    Polls the queue counts, reacts to connectivity transitions and runs the
    SyncManager one run at a time. This is the entry point the CLI and any
    UI layer use.

    Example:
        orchestrator = SyncOrchestrator.from_settings(settings)
        await orchestrator.start()
        # ... run until stopped ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        storage: OfflineStorage,
        manager: SyncManager,
        monitor: ConnectivityMonitor,
        poll_interval: float = 10.0,
        reconnect_settle_delay: float = 2.0,
        max_items: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            storage: Offline storage the queue lives in
            manager: Sync manager performing the runs
            monitor: Source of connectivity changes
            poll_interval: Seconds between queue count refreshes
            reconnect_settle_delay: Wait after coming back online before syncing
            max_items: Per-run cap passed to the manager (manager default if None)
        """
        self.storage = storage
        self.manager = manager
        self.monitor = monitor
        self.poll_interval = poll_interval
        self.reconnect_settle_delay = reconnect_settle_delay
        self.max_items = max_items

        self._status = SyncStatus()
        self._callbacks: list[NotificationCallback] = []
        # Armed until a reconnect sync starts; the notice flag resets on every reconnect
        self._was_offline = not monitor.is_online
        self._offline_notified = not monitor.is_online

        self._running = False
        self._poll_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_sync_started = False

        # Resources built by from_settings and released by close()
        self._api: ApiClient | None = None
        self._store: LocalStore | None = None

        monitor.on_change(self._handle_network_change)

    @classmethod
    def from_settings(cls, settings: Settings, transport: Any = None) -> "SyncOrchestrator":
        """Build the full stack (store, storage, API client, manager, monitor).

        Args:
            settings: Settings instance with all configuration
            transport: Optional httpx transport for the API client
        """
        store = LocalStore(settings.database_path)
        storage = OfflineStorage(store, limits=StorageLimits.from_settings(settings))
        storage.recover_interrupted_items()

        token = storage.get_auth_token()
        if token:
            context = ApiContext.from_auth_token(token, platform_id=settings.platform_id)
        else:
            context = ApiContext(platform_id=settings.platform_id)

        api = ApiClient(
            settings.api_url,
            context=context,
            timeout=settings.api_timeout,
            transport=transport,
            on_tokens_refreshed=lambda access, refresh: _persist_tokens(storage, access, refresh),
        )
        manager = SyncManager(
            storage,
            api,
            max_items=settings.max_items_per_run,
            item_delay=settings.sync_item_delay,
        )
        monitor = ConnectivityMonitor(
            probe=api.check_health,
            probe_interval=settings.probe_interval,
            slow_rtt_ms=settings.slow_rtt_ms,
        )

        orchestrator = cls(
            storage,
            manager,
            monitor,
            poll_interval=settings.poll_interval,
            reconnect_settle_delay=settings.reconnect_settle_delay,
        )
        orchestrator._api = api
        orchestrator._store = store
        return orchestrator

    @property
    def status(self) -> SyncStatus:
        """Copy of the current sync status."""
        return replace(self._status)

    @property
    def network(self) -> NetworkStatus:
        return self.monitor.status

    @property
    def state(self) -> OrchestratorState:
        if not self._status.is_initialized:
            return OrchestratorState.UNINITIALIZED
        if self._status.is_syncing:
            return OrchestratorState.SYNCING
        return OrchestratorState.IDLE

    def on_notification(self, callback: NotificationCallback) -> None:
        """Register a callback receiving every user-facing notification."""
        self._callbacks.append(callback)

    def _notify(self, level: NotificationLevel, title: str, description: str | None = None) -> None:
        notification = Notification(level=level, title=title, description=description)
        log_level = {
            NotificationLevel.ERROR: logging.ERROR,
            NotificationLevel.WARNING: logging.WARNING,
        }.get(level, logging.INFO)
        logger.log(log_level, "Notification: title=%s, description=%s", title, description)

        for callback in self._callbacks:
            try:
                callback(notification)
            except Exception as e:
                logger.error("Notification callback failed: %s", e)

    async def start(self) -> None:
        """Load initial counts and start polling and connectivity probes."""
        if self._running:
            return

        self._running = True
        logger.info("Starting sync orchestrator, poll_interval=%.0fs", self.poll_interval)

        try:
            self.storage.recover_interrupted_items()
        except FieldSyncError as e:
            logger.error("Could not recover interrupted sync items: %s", e)
        await self.update_pending_count()
        self._poll_task = asyncio.create_task(self._poll_worker())
        self.monitor.start()

    async def update_pending_count(self) -> None:
        """Refresh pending and failed counts from the queue.

        Store failures are logged and leave the previous counts in place.
        """
        try:
            pending_count = self.storage.get_sync_queue_count()
            failed_count = self.storage.get_failed_count()
        except FieldSyncError as e:
            logger.error("Failed to update pending count: %s", e)
            return

        self._status.pending_count = pending_count
        self._status.failed_count = failed_count
        self._status.is_initialized = True

        # Came back online with an empty queue earlier; sync once work shows up
        if pending_count > 0:
            self._maybe_schedule_reconnect_sync()

    async def _poll_worker(self) -> None:
        """Background worker refreshing the queue counts."""
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.update_pending_count()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Poll worker error: %s", e)

    async def trigger_sync(self) -> SyncResult | None:
        """Run one sync pass unless one is running or the device is offline.

        Returns:
            The run's SyncResult, or None when skipped or failed
        """
        if self._status.is_syncing:
            logger.debug("Sync already in progress, trigger ignored")
            return None
        if not self.monitor.is_online:
            logger.debug("Offline, sync trigger ignored")
            return None

        # Set before the first suspension point so concurrent triggers see it
        self._status.is_syncing = True
        try:
            result = await self.manager.process_sync_queue(max_items=self.max_items)
        except Exception as e:
            logger.error("Sync run failed: %s", e)
            self._notify(
                NotificationLevel.ERROR,
                "Sync failed",
                "Will retry automatically when connection improves",
            )
            return None
        finally:
            self._status.is_syncing = False

        now = self.storage.now()
        self._status.last_synced_at = now
        self._status.pending_count = result.remaining_count
        try:
            self._status.failed_count = self.storage.get_failed_count()
            self.storage.record_sync_time(now)
        except FieldSyncError as e:
            logger.error("Could not record sync completion: %s", e)

        if result.synced_count > 0:
            self._notify(
                NotificationLevel.SUCCESS,
                "Sync complete",
                f"{result.synced_count} item(s) synced successfully",
            )
        if result.failed_count > 0:
            self._notify(
                NotificationLevel.WARNING,
                "Some items failed to sync",
                f"{result.failed_count} item(s) failed, {result.remaining_count} still pending",
            )

        return result

    def _handle_network_change(self, status: NetworkStatus) -> None:
        if not status.is_online:
            if not self._offline_notified:
                self._notify(
                    NotificationLevel.WARNING,
                    "You are offline",
                    "Changes will be saved locally and synced when online",
                )
            self._offline_notified = True
            self._was_offline = True
            self._cancel_reconnect_sync()
            return

        self._offline_notified = False
        self._maybe_schedule_reconnect_sync()

    def _maybe_schedule_reconnect_sync(self) -> None:
        if not self._was_offline or not self.monitor.is_online:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._sync_after_reconnect())

    async def _sync_after_reconnect(self) -> None:
        try:
            pending_count = self.storage.get_sync_queue_count()
        except FieldSyncError as e:
            logger.error("Could not read queue after reconnect: %s", e)
            return

        if pending_count == 0:
            # Stay armed; the next poll that finds work starts the sync
            return

        self._was_offline = False
        self._status.pending_count = pending_count
        self._notify(
            NotificationLevel.INFO,
            "Back online",
            f"Syncing {pending_count} pending item(s)...",
        )

        await asyncio.sleep(self.reconnect_settle_delay)
        if not self.monitor.is_online:
            return

        # Past this point the task is never cancelled: items claimed as
        # syncing must reach pending, failed or deleted
        self._reconnect_sync_started = True
        try:
            await self.trigger_sync()
        finally:
            self._reconnect_sync_started = False

    def _cancel_reconnect_sync(self) -> None:
        task = self._reconnect_task
        if task is None or task.done():
            self._reconnect_task = None
            return
        if self._reconnect_sync_started:
            logger.debug("Reconnect sync already running, letting it finish")
            return
        task.cancel()
        self._reconnect_task = None
        logger.debug("Pending reconnect sync cancelled")

    async def retry_failed(self) -> int:
        """Reset terminally failed items so the next run retries them."""
        try:
            count = self.storage.retry_failed_items()
        except FieldSyncError as e:
            logger.error("Failed to reset failed items: %s", e)
            self._notify(NotificationLevel.ERROR, "Could not retry failed items")
            return 0

        await self.update_pending_count()
        if count:
            self._notify(
                NotificationLevel.INFO,
                "Retrying failed items",
                f"{count} item(s) queued for another attempt",
            )
        return count

    async def clear_offline_data(self) -> bool:
        """Destructive reset of all queued and cached offline data.

        Returns:
            True if the data was cleared
        """
        if self._status.is_syncing:
            logger.warning("Refusing to clear offline data during a sync run")
            self._notify(
                NotificationLevel.WARNING,
                "Sync in progress",
                "Wait for the current sync to finish before clearing data",
            )
            return False

        try:
            self.storage.clear_all_offline_data()
        except FieldSyncError as e:
            logger.error("Failed to clear offline data: %s", e)
            self._notify(NotificationLevel.ERROR, "Failed to clear offline data")
            return False

        self._status.pending_count = 0
        self._status.failed_count = 0
        self._notify(
            NotificationLevel.SUCCESS,
            "Offline data cleared",
            "All pending items have been removed",
        )
        return True

    def cleanup(self, failed_ttl_days: int = 7) -> dict[str, int]:
        """Reclaim space from expired caches, synced records and stale failures."""
        return self.storage.cleanup_old_data(timedelta(days=failed_ttl_days))

    def get_status(self) -> dict[str, Any]:
        """Get current orchestrator status.

        Returns:
            Dictionary with sync state, queue counts and connectivity
        """
        network = self.monitor.status
        return {
            "state": self.state.value,
            "running": self._running,
            "is_syncing": self._status.is_syncing,
            "pending_count": self._status.pending_count,
            "failed_count": self._status.failed_count,
            "last_synced_at": (
                self._status.last_synced_at.isoformat()
                if self._status.last_synced_at
                else None
            ),
            "network": {
                "is_online": network.is_online,
                "is_slow_connection": network.is_slow_connection,
                "effective_type": network.effective_type,
                "rtt_ms": round(network.rtt) if network.rtt is not None else None,
            },
        }

    async def stop(self) -> None:
        """Stop polling and probes, waiting for a reconnect sync already underway."""
        self._running = False
        self._cancel_reconnect_sync()
        if self._reconnect_task is not None:
            await self._reconnect_task
            self._reconnect_task = None

        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        self._poll_task = None

        await self.monitor.stop()
        logger.info("Sync orchestrator stopped")

    async def close(self) -> None:
        """Stop and release resources created by from_settings."""
        await self.stop()
        if self._api is not None:
            await self._api.close()
        if self._store is not None:
            self._store.close()


def _persist_tokens(storage: OfflineStorage, access_token: str, refresh_token: str) -> None:
    """Keep a refreshed token pair so the next start is already signed in."""
    try:
        storage.update_auth_tokens(access_token, refresh_token)
    except FieldSyncError as e:
        logger.error("Could not persist refreshed tokens: %s", e)
