"""Typed offline records and their status state machines."""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from fieldsync.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    """Lifecycle of a sync queue entry. Success deletes the entry."""

    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"


class RecordStatus(str, Enum):
    """Sync-facing status of a local domain record."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


QUEUE_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.SYNCING}),
    QueueStatus.SYNCING: frozenset({QueueStatus.PENDING, QueueStatus.FAILED}),
    # Operator retry is the only way out of a terminal failure
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
}

RECORD_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.PENDING: frozenset(
        {RecordStatus.SYNCING, RecordStatus.SYNCED, RecordStatus.FAILED}
    ),
    RecordStatus.SYNCING: frozenset({RecordStatus.SYNCED, RecordStatus.FAILED}),
    RecordStatus.FAILED: frozenset(
        {RecordStatus.PENDING, RecordStatus.SYNCING, RecordStatus.SYNCED, RecordStatus.FAILED}
    ),
    RecordStatus.SYNCED: frozenset(),
}


def check_queue_transition(current: QueueStatus, target: QueueStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in QUEUE_TRANSITIONS[current]:
        raise InvalidTransitionError("queue item", current.value, target.value)


def check_record_transition(current: RecordStatus, target: RecordStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in RECORD_TRANSITIONS[current]:
        raise InvalidTransitionError("record", current.value, target.value)


class SyncItemType(str, Enum):
    """Replay strategy of a queue entry."""

    ORDER = "order"
    SCAN = "scan"
    PHOTO = "photo"
    COMPLETE_SCAN = "complete-scan"


class SyncPriority(IntEnum):
    """Drain order of queue entries. Lower values drain first."""

    ORDER = 1
    SCAN = 2
    COMPLETE_SCAN = 3
    PHOTO = 4


class HttpMethod(str, Enum):
    POST = "POST"
    PATCH = "PATCH"
    PUT = "PUT"


class ScanType(str, Enum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"
    DERIG_CAPTURE = "DERIG_CAPTURE"
    OUTBOUND_TRUCK_PHOTOS = "OUTBOUND_TRUCK_PHOTOS"
    RETURN_TRUCK_PHOTOS = "RETURN_TRUCK_PHOTOS"
    ON_SITE_CAPTURE = "ON_SITE_CAPTURE"


class Condition(str, Enum):
    GREEN = "GREEN"
    ORANGE = "ORANGE"
    RED = "RED"


class DiscrepancyReason(str, Enum):
    BROKEN = "BROKEN"
    LOST = "LOST"
    OTHER = "OTHER"


class PhotoType(str, Enum):
    TRUCK = "truck"
    DAMAGE = "damage"
    CONDITION = "condition"


class SyncQueueItem(BaseModel):
    """A deferred HTTP request waiting for confirmation by the server."""

    id: str
    # Kept as a plain string so entries written by newer clients still load
    type: str
    reference_id: str
    endpoint: str
    method: HttpMethod = HttpMethod.POST
    payload: Any = None
    priority: int
    status: QueueStatus = QueueStatus.PENDING
    created_at: datetime
    last_attempt_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = 5
    error_message: str | None = None

    @property
    def sort_key(self) -> tuple[int, datetime]:
        """Drain order: priority band first, then oldest first."""
        return (self.priority, self.created_at)


class PendingOrder(BaseModel):
    """Order submitted while offline."""

    id: str
    local_id: str
    order_data: dict[str, Any]
    status: RecordStatus = RecordStatus.PENDING
    created_at: datetime
    synced_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0


class PendingScanEvent(BaseModel):
    """QR scan captured while offline."""

    id: str
    local_id: str
    order_id: str
    scan_type: ScanType
    qr_code: str
    quantity: int = 1
    condition: Condition | None = None
    notes: str | None = None
    photo_ids: list[str] = Field(default_factory=list)
    discrepancy_reason: DiscrepancyReason | None = None
    refurb_days_estimate: int | None = None
    status: RecordStatus = RecordStatus.PENDING
    created_at: datetime
    synced_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0


class OfflinePhoto(BaseModel):
    """Compressed photo held locally until uploaded."""

    id: str
    order_id: str
    scan_event_id: str | None = None
    type: PhotoType
    base64_data: str
    mime_type: str = "image/jpeg"
    size_bytes: int
    status: RecordStatus = RecordStatus.PENDING
    created_at: datetime
    synced_at: datetime | None = None


class ScanProgressAsset(BaseModel):
    asset_id: str
    asset_name: str
    qr_code: str
    tracking_method: Literal["INDIVIDUAL", "BATCH"]
    required_quantity: int
    scanned_quantity: int
    is_complete: bool


class ScanProgressData(BaseModel):
    order_status: str
    total_items: int
    items_scanned: int
    percent_complete: int
    assets: list[ScanProgressAsset] = Field(default_factory=list)


class ScanProgressCache(BaseModel):
    """Last known scan progress of an order, for offline scanning."""

    order_id: str
    scan_type: ScanType
    data: ScanProgressData
    cached_at: datetime
    expires_at: datetime


class AuthToken(BaseModel):
    """Credentials of the signed-in user, kept for offline restarts."""

    id: Literal["current"] = "current"
    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: str
    user_email: str
    user_name: str
    permissions: list[str] = Field(default_factory=list)
    stored_at: datetime


class OfflineMetadata(BaseModel):
    """Storage usage statistics."""

    id: str = "storage-stats"
    total_size_bytes: int
    order_count: int
    scan_count: int
    photo_count: int
    last_sync_at: datetime | None = None
    last_calculated_at: datetime


class CachedResponse(BaseModel):
    """API response kept for offline reads (order lists, order details)."""

    id: str
    data: Any
    cached_at: datetime
