"""Structured JSON logging for the fieldsync client.

Each record carries the client version and, once known, the device id so
logs collected from handhelds can be grouped per device. Queue payloads and
auth tokens never reach the log; the audit helpers below take ids, types
and counts only.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from fieldsync import __version__

_device_id: str | None = None


class FieldSyncJsonFormatter(jsonlogger.JsonFormatter):
    """Stamps client context onto each JSON record."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=self.formatTime(record),
            level=record.levelname,
            logger=record.name,
            client_version=__version__,
        )
        if _device_id:
            log_record["device_id"] = _device_id
        log_record.setdefault("message", record.getMessage())

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    device_id: str | None = None,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> None:
    """Send every fieldsync logger through the JSON formatter.

    Command output owns stdout, so records go to stderr and, when
    ``log_file`` is set, to a size-rotated file as well.

    Args:
        level: Root log level name
        log_file: Rotating log file, created with its directory on demand
        device_id: Handheld or workstation id added to each record
        max_bytes: Rotation threshold per file
        backup_count: Rotated files kept
    """
    if device_id:
        set_device_id(device_id)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    formatter = FieldSyncJsonFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Named logger under the ``fieldsync`` hierarchy."""
    return logging.getLogger(name)


def set_device_id(device_id: str | None) -> None:
    """Set (or clear) the device id stamped onto records."""
    global _device_id
    _device_id = device_id


# --- Audit Event Functions ---


def log_item_synced(
    logger: logging.Logger,
    queue_id: str,
    item_type: str,
    reference_id: str,
) -> None:
    """Log a queue item confirmed by the server."""
    logger.info(
        "Sync item confirmed",
        extra={
            "event": "item_synced",
            "queue_id": queue_id,
            "type": item_type,
            "reference_id": reference_id,
        },
    )


def log_item_failed(
    logger: logging.Logger,
    queue_id: str,
    item_type: str,
    error: str,
    retry_count: int,
    terminal: bool,
) -> None:
    """Log a failed attempt for a queue item.

    Args:
        logger: Logger instance
        queue_id: Queue item id
        item_type: Queue item type tag
        error: Error message (no payload data)
        retry_count: Attempts so far, including this one
        terminal: Whether the item has now exhausted its retries
    """
    logger.warning(
        "Sync item failed",
        extra={
            "event": "item_failed",
            "queue_id": queue_id,
            "type": item_type,
            "error": error,
            "retry_count": retry_count,
            "terminal": terminal,
        },
    )


def log_sync_run(
    logger: logging.Logger,
    synced_count: int,
    failed_count: int,
    remaining_count: int,
    skipped_count: int,
) -> None:
    """Log the outcome of one drain run."""
    logger.info(
        "Sync run finished",
        extra={
            "event": "sync_run",
            "synced_count": synced_count,
            "failed_count": failed_count,
            "remaining_count": remaining_count,
            "skipped_count": skipped_count,
        },
    )


def log_connectivity_change(
    logger: logging.Logger,
    is_online: bool,
    is_slow: bool,
    rtt: float | None = None,
) -> None:
    """Log an online/offline or link quality transition."""
    extra = {
        "event": "connectivity_change",
        "is_online": is_online,
        "is_slow_connection": is_slow,
    }
    if rtt is not None:
        extra["rtt_ms"] = round(rtt, 1)
    logger.info("Connectivity changed", extra=extra)
