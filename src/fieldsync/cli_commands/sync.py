"""Commands that talk to the API: one-off sync, long-running watch, reset."""

import asyncio
import signal

import typer

from fieldsync.cli_commands.common import open_storage, output
from fieldsync.config import get_settings
from fieldsync.logging import get_logger
from fieldsync.network import Notification, SyncOrchestrator

logger = get_logger("fieldsync.cli")


async def _sync_once(max_items: int | None) -> dict:
    orchestrator = SyncOrchestrator.from_settings(get_settings())
    orchestrator.max_items = max_items
    try:
        network = await orchestrator.monitor.probe_once()
        if not network.is_online:
            return {"status": "offline"}

        result = await orchestrator.trigger_sync()
        if result is None:
            return {"status": "error"}
        return {
            "status": "ok",
            "synced": result.synced_count,
            "failed": result.failed_count,
            "skipped": result.skipped_count,
            "remaining": result.remaining_count,
        }
    finally:
        await orchestrator.close()


def sync_command(
    max_items: int = typer.Option(
        None,
        "--max-items",
        "-n",
        min=1,
        help="Maximum items to process (default: from config)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Drain the sync queue once and report the result."""
    data = asyncio.run(_sync_once(max_items))

    if data["status"] == "offline":
        output(data, output_json, ["Server unreachable; items stay queued."])
        raise typer.Exit(1)
    if data["status"] == "error":
        output(data, output_json, ["Sync failed; see logs for details."])
        raise typer.Exit(1)

    output(
        data,
        output_json,
        [
            f"Synced: {data['synced']}",
            f"Failed: {data['failed']}",
            f"Skipped (backoff): {data['skipped']}",
            f"Remaining: {data['remaining']}",
        ],
    )


def clear_command(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Confirm deletion of all offline data",
    ),
) -> None:
    """Delete all queued and cached offline data (keeps the sign-in)."""
    if not yes:
        typer.confirm(
            "This deletes every unsynced order, scan and photo. Continue?",
            abort=True,
        )

    with open_storage() as storage:
        pending = storage.get_sync_queue_count()
        storage.clear_all_offline_data()

    typer.echo(f"Offline data cleared ({pending} pending item(s) discarded).")


async def _watch() -> None:
    orchestrator = SyncOrchestrator.from_settings(get_settings())
    stop_event = asyncio.Event()

    def on_notification(notification: Notification) -> None:
        message = notification.title
        if notification.description:
            message += f": {notification.description}"
        typer.echo(f"[{notification.level.value}] {message}")

    orchestrator.on_notification(on_notification)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await orchestrator.start()
    logger.info("Watch started, pending=%d", orchestrator.status.pending_count)
    try:
        # Drain anything left over from the last session
        await orchestrator.trigger_sync()

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=orchestrator.poll_interval)
            except asyncio.TimeoutError:
                if orchestrator.status.pending_count > 0:
                    await orchestrator.trigger_sync()
    finally:
        await orchestrator.close()
        logger.info("Watch stopped")


def watch_command() -> None:
    """Run the sync orchestrator until interrupted.

    Syncs whenever the server is reachable and work is queued. Press Ctrl+C
    to stop.
    """
    typer.echo("Watching sync queue. Press Ctrl+C to stop.")
    asyncio.run(_watch())
    typer.echo("Stopped.")
