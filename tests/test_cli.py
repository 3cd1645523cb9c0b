"""Tests for the fieldsync command-line interface."""

import json
import logging
from datetime import timedelta

import httpx
import pytest
from typer.testing import CliRunner

from fieldsync import __version__
from fieldsync.cli import app
from fieldsync.config import get_settings
from fieldsync.network import SyncOrchestrator
from fieldsync.store import LocalStore, OfflineStorage
from fieldsync.store.models import QueueStatus, SyncItemType, utcnow

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point the CLI at an empty data directory."""
    monkeypatch.setenv("FIELDSYNC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("FIELDSYNC_LOG_LEVEL", "ERROR")
    get_settings.cache_clear()
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    yield tmp_path

    # The CLI callback reconfigures the root logger
    root.handlers[:] = handlers
    root.setLevel(level)
    get_settings.cache_clear()


@pytest.fixture
def seeded(data_dir):
    """Queue one pending and one terminally failed item."""
    with LocalStore(data_dir / "offline.db") as store:
        storage = OfflineStorage(store)
        storage.add_to_sync_queue(SyncItemType.ORDER, "order-1", "/orders/submit-from-cart")
        failed = storage.add_to_sync_queue(SyncItemType.SCAN, "scan-1", "/scan")
        storage.update_sync_queue_item(failed.id, status=QueueStatus.SYNCING)
        storage.update_sync_queue_item(
            failed.id, status=QueueStatus.FAILED, retry_count=5, error_message="Max retries exceeded"
        )
    return data_dir


def _storage_counts(data_dir) -> tuple[int, int]:
    with LocalStore(data_dir / "offline.db") as store:
        storage = OfflineStorage(store)
        return storage.get_sync_queue_count(), storage.get_failed_count()


class TestBasics:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"fieldsync {__version__}" in result.stdout

    def test_status_json_empty(self):
        result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["pending"] == 0
        assert data["failed"] == 0
        assert data["last_sync_at"] is None

    def test_status_human(self, seeded):
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Queue: 1 pending items" in result.stdout
        assert "Failed: 1 items" in result.stdout


class TestQueueCommands:
    def test_list_json(self, seeded):
        result = runner.invoke(app, ["queue", "list", "--json"])

        assert result.exit_code == 0
        items = json.loads(result.stdout)["items"]
        assert [item["type"] for item in items] == ["order", "scan"]

    def test_list_filtered(self, seeded):
        result = runner.invoke(app, ["queue", "list", "--status", "failed"])

        assert result.exit_code == 0
        assert "scan" in result.stdout
        assert "/orders/submit-from-cart" not in result.stdout

    def test_list_empty(self):
        result = runner.invoke(app, ["queue", "list"])

        assert "Sync queue is empty." in result.stdout

    def test_retry_failed(self, seeded):
        result = runner.invoke(app, ["queue", "retry-failed", "--json"])

        assert json.loads(result.stdout) == {"reset": 1}
        assert _storage_counts(seeded) == (2, 0)

    def test_purge_respects_age(self, seeded):
        result = runner.invoke(app, ["queue", "purge", "--days", "7", "--json"])

        assert json.loads(result.stdout)["purged"] == 0
        assert _storage_counts(seeded) == (1, 1)


class TestDestructiveAndNetworkCommands:
    def test_clear_requires_confirmation(self, seeded):
        result = runner.invoke(app, ["clear"], input="n\n")

        assert result.exit_code != 0
        assert _storage_counts(seeded) == (1, 1)

    def test_clear_with_yes(self, seeded):
        result = runner.invoke(app, ["clear", "--yes"])

        assert result.exit_code == 0
        assert "1 pending item(s) discarded" in result.stdout
        assert _storage_counts(seeded) == (0, 0)

    def test_sync_drains_queue(self, seeded, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "ok"})

        build = SyncOrchestrator.from_settings.__func__
        monkeypatch.setattr(
            SyncOrchestrator,
            "from_settings",
            classmethod(lambda cls, settings: build(cls, settings, transport=httpx.MockTransport(handler))),
        )

        result = runner.invoke(app, ["sync", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["synced"] == 1
        assert data["remaining"] == 0

    def test_sync_rejects_zero_max_items(self, seeded):
        result = runner.invoke(app, ["sync", "--max-items", "0"])

        assert result.exit_code == 2
        assert _storage_counts(seeded) == (1, 1)

    def test_sync_offline(self, seeded, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        build = SyncOrchestrator.from_settings.__func__
        monkeypatch.setattr(
            SyncOrchestrator,
            "from_settings",
            classmethod(lambda cls, settings: build(cls, settings, transport=httpx.MockTransport(handler))),
        )

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 1
        assert "Server unreachable" in result.stdout
        assert _storage_counts(seeded) == (1, 1)


def test_old_failures_are_purged(data_dir):
    with LocalStore(data_dir / "offline.db") as store:
        storage = OfflineStorage(store, clock=lambda: utcnow() - timedelta(days=30))
        item = storage.add_to_sync_queue(SyncItemType.ORDER, "order-1", "/orders")
        storage.update_sync_queue_item(item.id, status=QueueStatus.SYNCING)
        storage.update_sync_queue_item(item.id, status=QueueStatus.FAILED)

    result = runner.invoke(app, ["queue", "purge", "--json"])

    assert json.loads(result.stdout) == {"purged": 1, "older_than_days": 7}
