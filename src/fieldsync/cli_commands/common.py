"""Helpers shared by the CLI commands."""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

import typer

from fieldsync.config import Settings, get_settings
from fieldsync.exceptions import StorageError
from fieldsync.store import LocalStore, OfflineStorage, StorageLimits


def output(data: dict, as_json: bool, human_lines: list[str]) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data, default=str))
    else:
        for line in human_lines:
            typer.echo(line)


@contextmanager
def open_storage(settings: Settings | None = None) -> Iterator[OfflineStorage]:
    """Open the local store for a single command and close it afterwards."""
    settings = settings or get_settings()
    try:
        store = LocalStore(settings.database_path)
    except StorageError as e:
        typer.echo(f"Cannot open offline store: {e}", err=True)
        raise typer.Exit(1)

    try:
        yield OfflineStorage(store, limits=StorageLimits.from_settings(settings))
    finally:
        store.close()


def format_time_ago(timestamp: datetime | None) -> str:
    """Format a timestamp as 'X minutes ago' style string."""
    if timestamp is None:
        return "Never"

    diff = datetime.now(timezone.utc) - timestamp

    seconds = int(diff.total_seconds())
    if seconds < 60:
        return f"{seconds} seconds ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"
