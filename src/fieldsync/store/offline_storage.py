"""Offline storage service: domain operations over the local store.

UI actions call the ``save_*`` methods, which write the pending record and
enqueue its sync queue entry in one transaction. The sync manager is the only
caller of the status update methods.
"""

import logging
from collections.abc import Collection
from datetime import datetime, timedelta
from typing import Any, Callable

import orjson

from fieldsync.store.local_store import LocalStore
from fieldsync.store.models import (
    AuthToken,
    CachedResponse,
    Condition,
    DiscrepancyReason,
    HttpMethod,
    OfflineMetadata,
    OfflinePhoto,
    PendingOrder,
    PendingScanEvent,
    PhotoType,
    QueueStatus,
    RecordStatus,
    ScanProgressCache,
    ScanProgressData,
    ScanType,
    SyncItemType,
    SyncPriority,
    SyncQueueItem,
    check_queue_transition,
    check_record_transition,
    utcnow,
)
from fieldsync.store.schema import (
    AUTH_TOKENS,
    METADATA,
    OFFLINE_PHOTOS,
    PENDING_ORDERS,
    PENDING_SCAN_EVENTS,
    SCAN_PROGRESS_CACHE,
    STORAGE_LIMITS,
    SYNC_QUEUE,
    StorageLimits,
    generate_local_id,
)

logger = logging.getLogger(__name__)

ORDER_SUBMIT_ENDPOINT = "/orders/submit-from-cart"
STATS_KEY = "storage-stats"

_QUEUE_UPDATABLE = frozenset({"status", "last_attempt_at", "retry_count", "error_message"})


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _direction(scan_type: ScanType | str) -> str:
    return "outbound" if ScanType(scan_type) == ScanType.OUTBOUND else "inbound"


class OfflineStorage:
    """Domain-level CRUD for orders, scans, photos, caches and the sync queue.

    Every method goes through the LocalStore; no record objects are shared
    between callers, so each read returns a fresh copy.

    Args:
        store: Opened LocalStore
        limits: Storage budget to enforce
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        store: LocalStore,
        limits: StorageLimits = STORAGE_LIMITS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.limits = limits
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Storage statistics
    # ------------------------------------------------------------------

    def get_storage_stats(self, refresh: bool = False) -> OfflineMetadata:
        """Return storage usage, recomputed when older than a minute."""
        cached = self.store.get(METADATA, STATS_KEY)
        if cached and not refresh:
            stats = OfflineMetadata.model_validate(cached)
            age = (self.now() - stats.last_calculated_at).total_seconds()
            if age <= self.limits.stats_max_age_seconds:
                return stats
        return self._calculate_storage_stats()

    def _calculate_storage_stats(self) -> OfflineMetadata:
        orders = self.store.query(PENDING_ORDERS)
        scans = self.store.query(PENDING_SCAN_EVENTS)
        photos = self.store.query(OFFLINE_PHOTOS)

        total_size = (
            sum(photo["size_bytes"] for photo in photos)
            + len(orjson.dumps(orders))
            + len(orjson.dumps(scans))
        )

        previous = self.store.get(METADATA, STATS_KEY)
        stats = OfflineMetadata(
            id=STATS_KEY,
            total_size_bytes=total_size,
            order_count=sum(1 for o in orders if o["status"] == RecordStatus.PENDING.value),
            scan_count=sum(1 for s in scans if s["status"] == RecordStatus.PENDING.value),
            photo_count=sum(1 for p in photos if p["status"] == RecordStatus.PENDING.value),
            last_sync_at=previous.get("last_sync_at") if previous else None,
            last_calculated_at=self.now(),
        )
        self.store.put(METADATA, _dump(stats))
        return stats

    def record_sync_time(self, when: datetime) -> None:
        """Remember when the queue was last drained."""
        stats = self.get_storage_stats()
        stats.last_sync_at = when
        self.store.put(METADATA, _dump(stats))

    def is_storage_available(self, additional_bytes: int = 0, refresh: bool = False) -> bool:
        stats = self.get_storage_stats(refresh=refresh)
        return stats.total_size_bytes + additional_bytes < self.limits.max_total_bytes

    def is_storage_warning(self) -> bool:
        return self.get_storage_stats().total_size_bytes > self.limits.warning_threshold_bytes

    # ------------------------------------------------------------------
    # Pending orders
    # ------------------------------------------------------------------

    def save_pending_order(self, order_data: dict[str, Any]) -> PendingOrder:
        """Store an order created offline and queue its submission."""
        order_id = generate_local_id()
        order = PendingOrder(
            id=order_id,
            local_id=order_id,
            order_data=order_data,
            created_at=self.now(),
        )
        with self.store.transaction():
            self.store.put(PENDING_ORDERS, _dump(order))
            self.add_to_sync_queue(
                item_type=SyncItemType.ORDER,
                reference_id=order_id,
                endpoint=ORDER_SUBMIT_ENDPOINT,
                payload=order_data,
                priority=SyncPriority.ORDER,
            )
        return order

    def get_pending_orders(self) -> list[PendingOrder]:
        rows = self.store.query(PENDING_ORDERS, status=RecordStatus.PENDING.value)
        return [PendingOrder.model_validate(row) for row in rows]

    def get_order(self, order_id: str) -> PendingOrder | None:
        row = self.store.get(PENDING_ORDERS, order_id)
        return PendingOrder.model_validate(row) if row else None

    def update_order_status(
        self, order_id: str, status: RecordStatus, error_message: str | None = None
    ) -> None:
        """Move an order to ``status``. Missing orders are ignored."""
        row = self.store.get(PENDING_ORDERS, order_id)
        if row is None:
            return
        order = PendingOrder.model_validate(row)
        self._apply_record_status(order, status, error_message)
        self.store.put(PENDING_ORDERS, _dump(order))

    def delete_synced_orders(self) -> int:
        rows = self.store.query(PENDING_ORDERS, status=RecordStatus.SYNCED.value)
        with self.store.transaction():
            for row in rows:
                self.store.delete(PENDING_ORDERS, row["id"])
        return len(rows)

    def _apply_record_status(
        self,
        record: PendingOrder | PendingScanEvent,
        status: RecordStatus,
        error_message: str | None,
    ) -> None:
        check_record_transition(record.status, status)
        record.status = status
        if status == RecordStatus.SYNCED:
            record.synced_at = self.now()
        if error_message:
            record.error_message = error_message
            record.retry_count += 1

    # ------------------------------------------------------------------
    # Pending scan events
    # ------------------------------------------------------------------

    def save_pending_scan(
        self,
        order_id: str,
        scan_type: ScanType,
        qr_code: str,
        quantity: int = 1,
        condition: Condition | None = None,
        notes: str | None = None,
        photo_ids: list[str] | None = None,
        discrepancy_reason: DiscrepancyReason | None = None,
        refurb_days_estimate: int | None = None,
    ) -> PendingScanEvent:
        """Store a scan captured offline and queue it for the scanning API."""
        scan_id = generate_local_id()
        scan = PendingScanEvent(
            id=scan_id,
            local_id=scan_id,
            order_id=order_id,
            scan_type=scan_type,
            qr_code=qr_code,
            quantity=quantity,
            condition=condition,
            notes=notes,
            photo_ids=photo_ids or [],
            discrepancy_reason=discrepancy_reason,
            refurb_days_estimate=refurb_days_estimate,
            created_at=self.now(),
        )
        payload = {
            "qr_code": scan.qr_code,
            "quantity": scan.quantity,
            "condition": scan.condition.value if scan.condition else None,
            "notes": scan.notes,
            "refurb_days_estimate": scan.refurb_days_estimate,
            "discrepancy_reason": (
                scan.discrepancy_reason.value if scan.discrepancy_reason else None
            ),
        }
        with self.store.transaction():
            self.store.put(PENDING_SCAN_EVENTS, _dump(scan))
            self.add_to_sync_queue(
                item_type=SyncItemType.SCAN,
                reference_id=scan_id,
                endpoint=f"/operations/v1/scanning/{_direction(scan_type)}/{order_id}/scan",
                payload=payload,
                priority=SyncPriority.SCAN,
            )
        return scan

    def get_pending_scans(self, order_id: str | None = None) -> list[PendingScanEvent]:
        if order_id:
            rows = self.store.query(
                PENDING_SCAN_EVENTS, order_id=order_id, status=RecordStatus.PENDING.value
            )
        else:
            rows = self.store.query(PENDING_SCAN_EVENTS, status=RecordStatus.PENDING.value)
        return [PendingScanEvent.model_validate(row) for row in rows]

    def get_scan(self, scan_id: str) -> PendingScanEvent | None:
        row = self.store.get(PENDING_SCAN_EVENTS, scan_id)
        return PendingScanEvent.model_validate(row) if row else None

    def update_scan_status(
        self, scan_id: str, status: RecordStatus, error_message: str | None = None
    ) -> None:
        """Move a scan event to ``status``. Missing scans are ignored."""
        row = self.store.get(PENDING_SCAN_EVENTS, scan_id)
        if row is None:
            return
        scan = PendingScanEvent.model_validate(row)
        self._apply_record_status(scan, status, error_message)
        self.store.put(PENDING_SCAN_EVENTS, _dump(scan))

    def delete_synced_scans(self) -> int:
        rows = self.store.query(PENDING_SCAN_EVENTS, status=RecordStatus.SYNCED.value)
        with self.store.transaction():
            for row in rows:
                self.store.delete(PENDING_SCAN_EVENTS, row["id"])
        return len(rows)

    # ------------------------------------------------------------------
    # Scan progress cache
    # ------------------------------------------------------------------

    def cache_scan_progress(
        self, order_id: str, scan_type: ScanType, data: ScanProgressData | dict[str, Any]
    ) -> ScanProgressCache:
        now = self.now()
        cache = ScanProgressCache(
            order_id=order_id,
            scan_type=scan_type,
            data=data,
            cached_at=now,
            expires_at=now + timedelta(seconds=self.limits.cache_expiry_seconds),
        )
        self.store.put(SCAN_PROGRESS_CACHE, _dump(cache))
        return cache

    def get_cached_scan_progress(self, order_id: str) -> ScanProgressCache | None:
        """Return unexpired cached progress; expired entries are deleted."""
        row = self.store.get(SCAN_PROGRESS_CACHE, order_id)
        if row is None:
            return None
        cache = ScanProgressCache.model_validate(row)
        if cache.expires_at > self.now():
            return cache
        self.store.delete(SCAN_PROGRESS_CACHE, order_id)
        return None

    def invalidate_scan_progress(self, order_id: str) -> None:
        self.store.delete(SCAN_PROGRESS_CACHE, order_id)

    def clear_expired_cache(self) -> int:
        now = self.now()
        expired = [
            cache
            for cache in map(ScanProgressCache.model_validate, self.store.query(SCAN_PROGRESS_CACHE))
            if cache.expires_at < now
        ]
        with self.store.transaction():
            for cache in expired:
                self.store.delete(SCAN_PROGRESS_CACHE, cache.order_id)
        return len(expired)

    def get_offline_scan_progress(self, order_id: str) -> ScanProgressData | None:
        """Cached progress with this device's unsynced scans applied on top."""
        cached = self.get_cached_scan_progress(order_id)
        if cached is None:
            return None

        pending = self.get_pending_scans(order_id)
        progress = cached.data.model_copy(deep=True)

        for asset in progress.assets:
            extra = sum(s.quantity for s in pending if s.qr_code == asset.qr_code)
            asset.scanned_quantity += extra
            asset.is_complete = asset.scanned_quantity >= asset.required_quantity

        progress.items_scanned += sum(s.quantity for s in pending)
        if progress.total_items:
            progress.percent_complete = min(
                100, round(progress.items_scanned / progress.total_items * 100)
            )
        return progress

    # ------------------------------------------------------------------
    # Offline photos
    # ------------------------------------------------------------------

    def save_offline_photo(
        self,
        order_id: str,
        base64_data: str,
        photo_type: PhotoType,
        scan_event_id: str | None = None,
    ) -> OfflinePhoto | None:
        """Store a photo for later upload.

        Returns None (nothing stored) when the photo is too large, the order
        already has its maximum number of photos, or the storage budget
        would be exceeded.
        """
        size_bytes = len(base64_data.encode("utf-8"))

        if size_bytes > self.limits.max_photo_size_bytes:
            logger.warning(
                "Photo exceeds size limit, compression needed: size=%d, limit=%d",
                size_bytes, self.limits.max_photo_size_bytes,
            )
            return None

        if self.store.count(OFFLINE_PHOTOS, order_id=order_id) >= self.limits.max_photos_per_order:
            logger.warning("Photo limit reached for order: order_id=%s", order_id)
            return None

        if not self.is_storage_available(size_bytes, refresh=True):
            logger.warning("Storage limit reached, cannot save photo: size=%d", size_bytes)
            return None

        photo_id = generate_local_id()
        photo = OfflinePhoto(
            id=photo_id,
            order_id=order_id,
            scan_event_id=scan_event_id,
            type=photo_type,
            base64_data=base64_data,
            size_bytes=size_bytes,
            created_at=self.now(),
        )
        if PhotoType(photo_type) == PhotoType.TRUCK:
            endpoint = f"/operations/v1/scanning/outbound/{order_id}/truck-photos"
        else:
            endpoint = f"/operations/v1/scanning/inbound/{order_id}/photos"

        with self.store.transaction():
            self.store.put(OFFLINE_PHOTOS, _dump(photo))
            self.add_to_sync_queue(
                item_type=SyncItemType.PHOTO,
                reference_id=photo_id,
                endpoint=endpoint,
                payload={"photo_id": photo_id},
                priority=SyncPriority.PHOTO,
            )
        return photo

    def get_offline_photos(self, order_id: str) -> list[OfflinePhoto]:
        return [
            OfflinePhoto.model_validate(row)
            for row in self.store.query(OFFLINE_PHOTOS, order_id=order_id)
        ]

    def get_photo(self, photo_id: str) -> OfflinePhoto | None:
        row = self.store.get(OFFLINE_PHOTOS, photo_id)
        return OfflinePhoto.model_validate(row) if row else None

    def update_photo_status(self, photo_id: str, status: RecordStatus) -> None:
        row = self.store.get(OFFLINE_PHOTOS, photo_id)
        if row is None:
            return
        photo = OfflinePhoto.model_validate(row)
        check_record_transition(photo.status, status)
        photo.status = status
        if status == RecordStatus.SYNCED:
            photo.synced_at = self.now()
        self.store.put(OFFLINE_PHOTOS, _dump(photo))

    def delete_photo(self, photo_id: str) -> None:
        self.store.delete(OFFLINE_PHOTOS, photo_id)

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    def add_to_sync_queue(
        self,
        item_type: SyncItemType | str,
        reference_id: str,
        endpoint: str,
        payload: Any = None,
        priority: SyncPriority | int = SyncPriority.ORDER,
        method: HttpMethod = HttpMethod.POST,
        max_retries: int | None = None,
    ) -> SyncQueueItem:
        """Append a deferred request to the queue."""
        item = SyncQueueItem(
            id=generate_local_id(),
            type=item_type.value if isinstance(item_type, SyncItemType) else item_type,
            reference_id=reference_id,
            endpoint=endpoint,
            method=method,
            payload=payload,
            priority=int(priority),
            created_at=self.now(),
            max_retries=max_retries or self.limits.max_retries,
        )
        self.store.put(SYNC_QUEUE, _dump(item))
        logger.debug(
            "Queued sync item: queue_id=%s, type=%s, reference_id=%s",
            item.id, item.type, reference_id,
        )
        return item

    def get_sync_queue_items(self, status: QueueStatus | None = None) -> list[SyncQueueItem]:
        """Queue entries in drain order, optionally filtered by status."""
        if status is None:
            rows = self.store.query(SYNC_QUEUE)
        else:
            rows = self.store.query(SYNC_QUEUE, status=status.value)
        return sorted((SyncQueueItem.model_validate(r) for r in rows), key=lambda i: i.sort_key)

    def get_next_sync_item(self, exclude: Collection[str] = ()) -> SyncQueueItem | None:
        """Return the pending entry that drains next, skipping ``exclude`` ids."""
        for item in self.get_sync_queue_items(QueueStatus.PENDING):
            if item.id not in exclude:
                return item
        return None

    def get_sync_items_for(self, reference_id: str) -> list[SyncQueueItem]:
        rows = self.store.query(SYNC_QUEUE, reference_id=reference_id)
        return [SyncQueueItem.model_validate(row) for row in rows]

    def get_sync_item(self, item_id: str) -> SyncQueueItem | None:
        row = self.store.get(SYNC_QUEUE, item_id)
        return SyncQueueItem.model_validate(row) if row else None

    def get_sync_queue_count(self) -> int:
        """Number of entries still waiting to be sent."""
        return self.store.count(SYNC_QUEUE, status=QueueStatus.PENDING.value)

    def get_failed_count(self) -> int:
        """Number of entries that exhausted their retries."""
        return self.store.count(SYNC_QUEUE, status=QueueStatus.FAILED.value)

    def update_sync_queue_item(self, item_id: str, **updates: Any) -> SyncQueueItem | None:
        """Update status and retry bookkeeping of a queue entry.

        Status changes are checked against the queue transition table.
        Returns the updated entry, or None when it no longer exists.
        """
        unknown = set(updates) - _QUEUE_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update queue item fields: {sorted(unknown)}")

        item = self.get_sync_item(item_id)
        if item is None:
            return None

        if "status" in updates:
            status = QueueStatus(updates["status"])
            if status != item.status:
                check_queue_transition(item.status, status)
            updates["status"] = status

        updated = item.model_copy(update=updates)
        self.store.put(SYNC_QUEUE, _dump(updated))
        return updated

    def delete_sync_queue_item(self, item_id: str) -> None:
        self.store.delete(SYNC_QUEUE, item_id)

    def retry_failed_items(self) -> int:
        """Give every terminally failed entry a fresh set of retries."""
        failed = self.get_sync_queue_items(QueueStatus.FAILED)
        with self.store.transaction():
            for item in failed:
                self.update_sync_queue_item(
                    item.id,
                    status=QueueStatus.PENDING,
                    retry_count=0,
                    last_attempt_at=None,
                    error_message=None,
                )
        if failed:
            logger.info("Failed sync items reset for retry: count=%d", len(failed))
        return len(failed)

    def recover_interrupted_items(self) -> int:
        """Return entries left in ``syncing`` by an interrupted run to pending.

        Retry counts are kept; the interrupted attempt was never accounted.
        Only call this while no sync run is active.
        """
        stranded = self.get_sync_queue_items(QueueStatus.SYNCING)
        with self.store.transaction():
            for item in stranded:
                self.update_sync_queue_item(item.id, status=QueueStatus.PENDING)
        if stranded:
            logger.warning("Interrupted sync items returned to queue: count=%d", len(stranded))
        return len(stranded)

    def purge_failed_items(self, older_than: timedelta) -> int:
        """Delete failed entries (and exhausted pending ones) older than a TTL."""
        cutoff = self.now() - older_than
        stale = [
            item
            for item in self.get_sync_queue_items()
            if item.created_at < cutoff
            and (
                item.status == QueueStatus.FAILED
                or (item.status == QueueStatus.PENDING and item.retry_count >= item.max_retries)
            )
        ]
        with self.store.transaction():
            for item in stale:
                self.store.delete(SYNC_QUEUE, item.id)
        if stale:
            logger.info("Purged failed sync items: count=%d", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Auth token
    # ------------------------------------------------------------------

    def save_auth_token(
        self,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        user_id: str,
        user_email: str,
        user_name: str,
        permissions: list[str] | None = None,
    ) -> AuthToken:
        token = AuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            permissions=permissions or [],
            stored_at=self.now(),
        )
        self.store.put(AUTH_TOKENS, _dump(token))
        return token

    def get_auth_token(self) -> AuthToken | None:
        """Return the stored token unless it has expired."""
        row = self.store.get(AUTH_TOKENS, "current")
        if row is None:
            return None
        token = AuthToken.model_validate(row)
        return token if token.expires_at > self.now() else None

    def update_auth_tokens(self, access_token: str, refresh_token: str) -> AuthToken | None:
        """Replace the token pair after a refresh, keeping the user profile."""
        row = self.store.get(AUTH_TOKENS, "current")
        if row is None:
            return None
        token = AuthToken.model_validate(row).model_copy(
            update={"access_token": access_token, "refresh_token": refresh_token}
        )
        self.store.put(AUTH_TOKENS, _dump(token))
        return token

    def clear_auth_token(self) -> None:
        self.store.delete(AUTH_TOKENS, "current")

    # ------------------------------------------------------------------
    # Cached API responses
    # ------------------------------------------------------------------

    def cache_response(self, key: str, data: Any) -> None:
        self.store.put(METADATA, _dump(CachedResponse(id=key, data=data, cached_at=self.now())))

    def get_cached_response(self, key: str) -> CachedResponse | None:
        row = self.store.get(METADATA, key)
        if row is None or "cached_at" not in row:
            return None
        return CachedResponse.model_validate(row)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_old_data(self, failed_ttl: timedelta = timedelta(days=7)) -> dict[str, int]:
        """Reclaim space: expired caches, synced records, stale failures."""
        removed = {
            "expired_cache": self.clear_expired_cache(),
            "synced_orders": self.delete_synced_orders(),
            "synced_scans": self.delete_synced_scans(),
            "failed_items": self.purge_failed_items(failed_ttl),
        }
        self._calculate_storage_stats()
        logger.info("Offline data cleanup finished: %s", removed)
        return removed

    def clear_all_offline_data(self) -> None:
        """Destructive reset of everything except the signed-in user's token."""
        with self.store.transaction():
            for table in (
                PENDING_ORDERS,
                PENDING_SCAN_EVENTS,
                SCAN_PROGRESS_CACHE,
                OFFLINE_PHOTOS,
                SYNC_QUEUE,
                METADATA,
            ):
                self.store.clear(table)
        logger.warning("All offline data cleared")
