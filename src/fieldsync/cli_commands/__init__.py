"""CLI command modules for fieldsync."""

from fieldsync.cli_commands.queue import queue_app
from fieldsync.cli_commands.status import status_command
from fieldsync.cli_commands.sync import clear_command, sync_command, watch_command

__all__ = ["clear_command", "queue_app", "status_command", "sync_command", "watch_command"]
