"""fieldsync CLI - operator interface for the offline sync client."""

import typer

from fieldsync import __version__
from fieldsync.cli_commands import (
    clear_command,
    queue_app,
    status_command,
    sync_command,
    watch_command,
)
from fieldsync.config import get_settings
from fieldsync.logging import setup_logging

app = typer.Typer(
    name="fieldsync",
    help="fieldsync - offline queue and sync for warehouse field operations.",
    no_args_is_help=True,
)

# Register subcommands
app.add_typer(queue_app, name="queue")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"fieldsync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """fieldsync - offline queue and sync for warehouse field operations."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, settings.device_id)


app.command(name="status")(status_command)
app.command(name="sync")(sync_command)
app.command(name="clear")(clear_command)
app.command(name="watch")(watch_command)


if __name__ == "__main__":
    app()
