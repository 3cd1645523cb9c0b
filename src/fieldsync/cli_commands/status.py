"""Status command for the fieldsync CLI."""

import typer

from fieldsync.cli_commands.common import format_time_ago, open_storage, output


def status_command(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show offline queue and storage status.

    Reads the local store only; no network access is needed.
    """
    with open_storage() as storage:
        pending = storage.get_sync_queue_count()
        failed = storage.get_failed_count()
        stats = storage.get_storage_stats(refresh=True)
        warning = storage.is_storage_warning()
        limit_mb = storage.limits.max_total_bytes / (1024 * 1024)

    used_mb = stats.total_size_bytes / (1024 * 1024)
    status_data = {
        "pending": pending,
        "failed": failed,
        "orders": stats.order_count,
        "scans": stats.scan_count,
        "photos": stats.photo_count,
        "storage_bytes": stats.total_size_bytes,
        "storage_warning": warning,
        "last_sync_at": stats.last_sync_at.isoformat() if stats.last_sync_at else None,
    }

    lines = [
        "",
        "Offline Sync Status",
        "-------------------",
        f"Queue: {pending} pending items",
    ]
    if failed > 0:
        lines.append(f"Failed: {failed} items (retry with: fieldsync queue retry-failed)")
    lines += [
        f"Records: {stats.order_count} orders, {stats.scan_count} scans, "
        f"{stats.photo_count} photos",
        f"Storage: {used_mb:.1f} MB of {limit_mb:.0f} MB"
        + (" (running low)" if warning else ""),
        f"Last sync: {format_time_ago(stats.last_sync_at)}",
        "",
    ]
    output(status_data, output_json, lines)
