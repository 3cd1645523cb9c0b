"""Local database schema: tables, indexes, migrations and storage limits.

Each logical object store is one SQLite table holding the record as a JSON
document plus a copy of every indexed field in its own column. The schema
version lives in ``PRAGMA user_version``; migrations run in order and are
never edited once released.
"""

import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Callable

import orjson

DB_VERSION = 2


@dataclass(frozen=True)
class TableSpec:
    """Description of one object store at the current schema version."""

    name: str
    key_field: str
    indexes: tuple[str, ...] = ()


PENDING_ORDERS = "pending_orders"
PENDING_SCAN_EVENTS = "pending_scan_events"
SCAN_PROGRESS_CACHE = "scan_progress_cache"
OFFLINE_PHOTOS = "offline_photos"
SYNC_QUEUE = "sync_queue"
AUTH_TOKENS = "auth_tokens"
METADATA = "metadata"

TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(PENDING_ORDERS, "id", ("status", "created_at")),
        TableSpec(PENDING_SCAN_EVENTS, "id", ("order_id", "status", "created_at")),
        TableSpec(SCAN_PROGRESS_CACHE, "order_id", ("expires_at",)),
        TableSpec(OFFLINE_PHOTOS, "id", ("order_id", "scan_event_id", "status")),
        TableSpec(SYNC_QUEUE, "id", ("priority", "status", "type", "reference_id")),
        TableSpec(AUTH_TOKENS, "id"),
        TableSpec(METADATA, "id"),
    )
}


@dataclass(frozen=True)
class StorageLimits:
    """Bounds the store enforces to stay within the per-user budget."""

    max_total_bytes: int = 100 * 1024 * 1024
    warning_threshold_bytes: int = 80 * 1024 * 1024
    max_photo_size_bytes: int = 500 * 1024
    max_photos_per_order: int = 20
    cache_expiry_seconds: int = 24 * 60 * 60
    max_retries: int = 5
    stats_max_age_seconds: int = 60

    @classmethod
    def from_settings(cls, settings) -> "StorageLimits":
        """Build limits from a Settings instance."""
        return cls(
            max_total_bytes=settings.max_total_mb * 1024 * 1024,
            warning_threshold_bytes=settings.warning_threshold_mb * 1024 * 1024,
            max_photo_size_bytes=settings.max_photo_kb * 1024,
            max_photos_per_order=settings.max_photos_per_order,
            cache_expiry_seconds=settings.cache_expiry_hours * 60 * 60,
            max_retries=settings.max_retries,
        )


STORAGE_LIMITS = StorageLimits()


def generate_local_id() -> str:
    """Generate a client-side id, e.g. ``local_1706097600000_3f9c2a1b0``."""
    return f"local_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# --- Migrations ---


def _create_store(
    conn: sqlite3.Connection, name: str, columns: tuple[str, ...]
) -> None:
    column_sql = "".join(f", {column}" for column in columns)
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS {name} ("
        f"key TEXT PRIMARY KEY, doc BLOB NOT NULL{column_sql})"
    )
    for column in columns:
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{name}_{column} ON {name} ({column})"
        )


def _migration_001(conn: sqlite3.Connection) -> None:
    """Initial object stores."""
    _create_store(conn, PENDING_ORDERS, ("status", "created_at"))
    _create_store(conn, PENDING_SCAN_EVENTS, ("order_id", "status", "created_at"))
    _create_store(conn, SCAN_PROGRESS_CACHE, ("expires_at",))
    _create_store(conn, OFFLINE_PHOTOS, ("order_id", "scan_event_id", "status"))
    _create_store(conn, SYNC_QUEUE, ("priority", "status", "type"))
    _create_store(conn, AUTH_TOKENS, ())
    _create_store(conn, METADATA, ())


def _migration_002(conn: sqlite3.Connection) -> None:
    """Index sync queue entries by the record they refer to."""
    conn.execute(f"ALTER TABLE {SYNC_QUEUE} ADD COLUMN reference_id")
    rows = conn.execute(f"SELECT key, doc FROM {SYNC_QUEUE}").fetchall()
    for key, doc in rows:
        conn.execute(
            f"UPDATE {SYNC_QUEUE} SET reference_id = ? WHERE key = ?",
            (orjson.loads(doc).get("reference_id"), key),
        )
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{SYNC_QUEUE}_reference_id "
        f"ON {SYNC_QUEUE} (reference_id)"
    )


MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migration_001),
    (2, _migration_002),
]
