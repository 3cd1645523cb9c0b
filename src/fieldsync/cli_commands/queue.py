"""Sync queue inspection and maintenance commands."""

from datetime import timedelta

import typer

from fieldsync.cli_commands.common import open_storage, output
from fieldsync.config import get_settings
from fieldsync.store.models import QueueStatus

queue_app = typer.Typer(
    name="queue",
    help="Sync queue management - list, retry and purge items.",
    no_args_is_help=True,
)


@queue_app.command(name="list")
def list_items(
    status: QueueStatus | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show items with this status",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List queued items in drain order."""
    with open_storage() as storage:
        items = storage.get_sync_queue_items(status)

    if output_json:
        output({"items": [item.model_dump(mode="json") for item in items]}, True, [])
        return

    if not items:
        typer.echo("Sync queue is empty.")
        return

    for item in items:
        line = (
            f"{item.id}  {item.type:<13} p{item.priority}  {item.status.value:<8} "
            f"retries={item.retry_count}/{item.max_retries}  {item.endpoint}"
        )
        if item.error_message:
            line += f"  error={item.error_message}"
        typer.echo(line)


@queue_app.command(name="retry-failed")
def retry_failed(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Reset terminally failed items so the next sync retries them."""
    with open_storage() as storage:
        count = storage.retry_failed_items()

    output({"reset": count}, output_json, [f"Reset {count} failed item(s) to pending."])


@queue_app.command()
def purge(
    days: int = typer.Option(
        None,
        "--days",
        "-d",
        help="Age in days after which failed items are deleted (default: from config)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Delete failed items older than the retention period."""
    ttl_days = days if days is not None else get_settings().failed_item_ttl_days
    with open_storage() as storage:
        count = storage.purge_failed_items(timedelta(days=ttl_days))

    output(
        {"purged": count, "older_than_days": ttl_days},
        output_json,
        [f"Purged {count} failed item(s) older than {ttl_days} day(s)."],
    )
