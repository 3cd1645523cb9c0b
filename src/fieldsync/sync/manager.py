"""Background sync manager draining the offline queue against the API."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from fieldsync.exceptions import FieldSyncError, StorageError
from fieldsync.logging import log_item_failed, log_item_synced, log_sync_run
from fieldsync.store.models import (
    QueueStatus,
    RecordStatus,
    ScanType,
    SyncItemType,
    SyncPriority,
    SyncQueueItem,
)
from fieldsync.store.offline_storage import OfflineStorage
from fieldsync.sync.api_client import ApiClient

logger = logging.getLogger(__name__)

# Exponential backoff delays in seconds, indexed by retry count
RETRY_DELAYS = (1.0, 2.0, 4.0, 8.0, 16.0)


def get_retry_delay(retry_count: int) -> float:
    """Backoff before an item with ``retry_count`` failures may be retried."""
    return RETRY_DELAYS[min(retry_count, len(RETRY_DELAYS) - 1)]


@dataclass
class SyncResult:
    """Outcome of one drain run."""

    synced_count: int
    failed_count: int
    remaining_count: int
    skipped_count: int = 0


ProgressCallback = Callable[[int, int], None]


class SyncManager:
    """Drains the sync queue in priority order with per-item backoff.

    Each run attempts an item at most once. Items still inside their backoff
    window are skipped (counted as processed, not retried). A run is not
    re-entrant; callers must make sure only one runs at a time.

    Example:
        manager = SyncManager(storage, api)
        result = await manager.process_sync_queue(max_items=20)
    """

    def __init__(
        self,
        storage: OfflineStorage,
        api: ApiClient,
        max_items: int = 50,
        item_delay: float = 0.1,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            storage: Offline storage holding the queue and domain records
            api: Client used to replay queued requests
            max_items: Default cap on items processed per run
            item_delay: Pause in seconds between processed items
            clock: Returns the current aware datetime; defaults to the storage clock
        """
        self.storage = storage
        self.api = api
        self.max_items = max_items
        self.item_delay = item_delay
        self._clock = clock or storage.now

        self._handlers: dict[str, Callable[[SyncQueueItem], Awaitable[None]]] = {
            SyncItemType.ORDER.value: self._sync_order,
            SyncItemType.SCAN.value: self._sync_scan,
            SyncItemType.PHOTO.value: self._sync_photo,
            SyncItemType.COMPLETE_SCAN.value: self._sync_complete_scan,
        }

    def in_backoff(self, item: SyncQueueItem, now: datetime) -> bool:
        """Whether ``item`` was attempted too recently to retry yet."""
        if item.last_attempt_at is None:
            return False
        elapsed = (now - item.last_attempt_at).total_seconds()
        return elapsed < get_retry_delay(item.retry_count)

    async def process_sync_queue(
        self,
        max_items: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Drain eligible queue items until none remain or ``max_items`` is hit.

        Args:
            max_items: Cap on processed items (attempted plus skipped)
            on_progress: Called with (processed_count, total_at_start) after
                each attempted item

        Returns:
            SyncResult with a remaining count read after the run finished
        """
        limit = self.max_items if max_items is None else max_items
        synced_count = 0
        failed_count = 0
        skipped_count = 0
        processed_count = 0
        seen: set[str] = set()

        total_count = self.storage.get_sync_queue_count()

        while processed_count < limit:
            try:
                item = self.storage.get_next_sync_item(exclude=seen)
            except StorageError as e:
                logger.error("Could not read sync queue, ending run: %s", e)
                break

            if item is None:
                break

            seen.add(item.id)

            if self.in_backoff(item, self._clock()):
                skipped_count += 1
                processed_count += 1
                continue

            if await self._process_item(item):
                synced_count += 1
            else:
                failed_count += 1

            processed_count += 1

            if on_progress:
                try:
                    on_progress(processed_count, total_count)
                except Exception as e:
                    logger.warning("Progress callback failed: %s", e)

            # Small pause so a large backlog does not burst the server
            if self.item_delay:
                await asyncio.sleep(self.item_delay)

        remaining_count = self.storage.get_sync_queue_count()
        log_sync_run(logger, synced_count, failed_count, remaining_count, skipped_count)

        return SyncResult(
            synced_count=synced_count,
            failed_count=failed_count,
            remaining_count=remaining_count,
            skipped_count=skipped_count,
        )

    async def _process_item(self, item: SyncQueueItem) -> bool:
        """Claim, replay and settle one queue item. Returns True on success."""
        try:
            self.storage.update_sync_queue_item(
                item.id,
                status=QueueStatus.SYNCING,
                last_attempt_at=self._clock(),
            )
        except FieldSyncError as e:
            logger.error("Could not claim sync item: queue_id=%s, error=%s", item.id, e)
            return False

        handler = self._handlers.get(item.type)
        if handler is None:
            logger.warning("Unknown sync item type: queue_id=%s, type=%s", item.id, item.type)
            self._record_failure(item, f"Unknown sync item type: {item.type}")
            return False

        try:
            await handler(item)
        except Exception as e:
            self._record_failure(item, str(e) or type(e).__name__)
            return False

        try:
            self.storage.delete_sync_queue_item(item.id)
        except StorageError as e:
            logger.error("Could not remove synced item: queue_id=%s, error=%s", item.id, e)

        log_item_synced(logger, item.id, item.type, item.reference_id)
        return True

    def _record_failure(self, item: SyncQueueItem, message: str) -> None:
        """Count a failed attempt and park the item as pending or failed."""
        retry_count = item.retry_count + 1
        terminal = retry_count >= item.max_retries

        try:
            self.storage.update_sync_queue_item(
                item.id,
                status=QueueStatus.FAILED if terminal else QueueStatus.PENDING,
                retry_count=retry_count,
                error_message=f"Max retries exceeded: {message}" if terminal else message,
            )
        except FieldSyncError as e:
            logger.error("Could not record sync failure: queue_id=%s, error=%s", item.id, e)

        log_item_failed(logger, item.id, item.type, message, retry_count, terminal)

    def _update_record(self, update: Callable[..., None], *args) -> None:
        """Apply a domain record status change; store errors never fail the item."""
        try:
            update(*args)
        except FieldSyncError as e:
            logger.error("Could not update record status: args=%s, error=%s", args, e)

    async def _replay(self, item: SyncQueueItem, payload=None) -> None:
        await self.api.request(
            item.method.value,
            item.endpoint,
            item.payload if payload is None else payload,
        )

    async def _sync_order(self, item: SyncQueueItem) -> None:
        try:
            await self._replay(item)
        except Exception as e:
            self._update_record(
                self.storage.update_order_status, item.reference_id, RecordStatus.FAILED, str(e)
            )
            raise
        self._update_record(
            self.storage.update_order_status, item.reference_id, RecordStatus.SYNCED
        )

    async def _sync_scan(self, item: SyncQueueItem) -> None:
        try:
            await self._replay(item)
        except Exception as e:
            self._update_record(
                self.storage.update_scan_status, item.reference_id, RecordStatus.FAILED, str(e)
            )
            raise
        self._update_record(
            self.storage.update_scan_status, item.reference_id, RecordStatus.SYNCED
        )

    async def _sync_photo(self, item: SyncQueueItem) -> None:
        photo = self.storage.get_photo(item.reference_id)
        if photo is None:
            # Nothing left to upload
            logger.warning("Photo not found for sync: reference_id=%s", item.reference_id)
            return

        try:
            await self._replay(item, {"photos": [photo.base64_data]})
        except Exception:
            self._update_record(
                self.storage.update_photo_status, photo.id, RecordStatus.FAILED
            )
            raise

        # Reclaim local storage as soon as the server has the photo
        self._update_record(self.storage.delete_photo, photo.id)

    async def _sync_complete_scan(self, item: SyncQueueItem) -> None:
        await self._replay(item)
        self._update_record(self.storage.invalidate_scan_progress, item.reference_id)

    def queue_complete_scan(self, order_id: str, scan_type: ScanType) -> SyncQueueItem:
        """Queue the call that closes an outbound or inbound scanning session."""
        direction = "outbound" if ScanType(scan_type) == ScanType.OUTBOUND else "inbound"
        return self.storage.add_to_sync_queue(
            item_type=SyncItemType.COMPLETE_SCAN,
            reference_id=order_id,
            endpoint=f"/operations/v1/scanning/{direction}/{order_id}/complete",
            payload={},
            priority=SyncPriority.COMPLETE_SCAN,
        )
