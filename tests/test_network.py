"""Tests for connectivity monitoring and the sync orchestrator."""

import asyncio

import httpx
import pytest

from fieldsync.network import (
    ConnectivityMonitor,
    NotificationLevel,
    OrchestratorState,
    SyncOrchestrator,
    effective_type_for,
)
from fieldsync.store.models import QueueStatus, SyncItemType
from fieldsync.sync import SyncManager


class SlowServer:
    """MockTransport handler that takes a moment to answer."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.paths: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        await asyncio.sleep(self.delay)
        return httpx.Response(200, json={})


class ExplodingManager:
    """Stands in for SyncManager when a run must crash."""

    async def process_sync_queue(self, max_items=None):
        raise RuntimeError("database locked")


@pytest.fixture
def orchestrator_for(storage, make_api):
    def factory(handler=None, manager=None, online: bool = True, **kwargs) -> SyncOrchestrator:
        if manager is None:
            manager = SyncManager(storage, make_api(handler or SlowServer()), item_delay=0)
        monitor = ConnectivityMonitor(initial_online=online)
        kwargs.setdefault("reconnect_settle_delay", 0.01)
        kwargs.setdefault("poll_interval", 60)
        return SyncOrchestrator(storage, manager, monitor, **kwargs)

    return factory


def _collect(orchestrator: SyncOrchestrator) -> list:
    notifications = []
    orchestrator.on_notification(notifications.append)
    return notifications


class TestConnectivityMonitor:
    """Probing and change notification."""

    def test_effective_type_thresholds(self):
        assert effective_type_for(50) == "4g"
        assert effective_type_for(300) == "3g"
        assert effective_type_for(1500) == "2g"
        assert effective_type_for(2500) == "slow-2g"

    async def test_probe_success_measures_rtt(self):
        async def probe() -> bool:
            return True

        monitor = ConnectivityMonitor(probe=probe, initial_online=False)
        status = await monitor.probe_once()

        assert status.is_online is True
        assert status.rtt is not None
        assert status.effective_type == "4g"
        assert status.is_slow_connection is False

    async def test_slow_link_detection(self):
        async def probe() -> bool:
            await asyncio.sleep(0.02)
            return True

        monitor = ConnectivityMonitor(probe=probe, slow_rtt_ms=10)

        assert (await monitor.probe_once()).is_slow_connection is True

    async def test_probe_error_means_offline(self):
        async def probe() -> bool:
            raise OSError("network down")

        monitor = ConnectivityMonitor(probe=probe)

        assert (await monitor.probe_once()).is_online is False

    def test_callbacks_fire_on_change_only(self):
        monitor = ConnectivityMonitor()
        changes = []
        monitor.on_change(lambda status: changes.append(status.is_online))

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        assert changes == [False, True]

    def test_failing_callback_does_not_break_others(self):
        monitor = ConnectivityMonitor()
        changes = []

        def broken(status):
            raise RuntimeError("ui gone")

        monitor.on_change(broken)
        monitor.on_change(lambda status: changes.append(status.is_online))
        monitor.set_online(False)

        assert changes == [False]

    async def test_start_and_stop(self):
        probes = []

        async def probe() -> bool:
            probes.append(1)
            return True

        monitor = ConnectivityMonitor(probe=probe, probe_interval=0.01)
        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert len(probes) >= 2


class TestTriggerSync:
    """Manual triggers are gated and single-flight."""

    async def test_concurrent_triggers_run_once(self, storage, orchestrator_for):
        server = SlowServer()
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        storage.add_to_sync_queue(SyncItemType.ORDER, "b", "/b")
        orchestrator = orchestrator_for(server)

        first, second = await asyncio.gather(orchestrator.trigger_sync(), orchestrator.trigger_sync())

        assert first.synced_count == 2
        assert second is None
        assert server.paths == ["/api/a", "/api/b"]

    async def test_offline_trigger_is_ignored(self, storage, orchestrator_for):
        server = SlowServer()
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator = orchestrator_for(server, online=False)

        assert await orchestrator.trigger_sync() is None
        assert server.paths == []

    async def test_status_after_successful_run(self, storage, orchestrator_for, clock):
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator = orchestrator_for()
        notifications = _collect(orchestrator)
        await orchestrator.update_pending_count()
        assert orchestrator.status.pending_count == 1

        await orchestrator.trigger_sync()

        status = orchestrator.status
        assert status.is_syncing is False
        assert status.pending_count == 0
        assert status.last_synced_at == clock()
        assert orchestrator.state == OrchestratorState.IDLE
        assert notifications[-1].level == NotificationLevel.SUCCESS
        assert notifications[-1].description == "1 item(s) synced successfully"
        assert storage.get_storage_stats(refresh=True).last_sync_at == clock()

    async def test_failed_items_are_reported(self, storage, make_api, orchestrator_for):
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a", max_retries=1)
        manager = SyncManager(storage, make_api(lambda r: httpx.Response(500)), item_delay=0)
        orchestrator = orchestrator_for(manager=manager)
        notifications = _collect(orchestrator)

        result = await orchestrator.trigger_sync()

        assert result.failed_count == 1
        assert orchestrator.status.failed_count == 1
        assert notifications[-1].level == NotificationLevel.WARNING

    async def test_crashed_run_notifies_and_resets(self, orchestrator_for):
        orchestrator = orchestrator_for(manager=ExplodingManager())
        notifications = _collect(orchestrator)

        assert await orchestrator.trigger_sync() is None

        assert orchestrator.status.is_syncing is False
        assert notifications[-1].level == NotificationLevel.ERROR
        assert "retry automatically" in notifications[-1].description


class TestConnectivityTransitions:
    """Offline notices and syncing after reconnect."""

    async def test_offline_notified_once(self, orchestrator_for):
        orchestrator = orchestrator_for()
        notifications = _collect(orchestrator)

        orchestrator.monitor.set_online(False)
        orchestrator.monitor.set_online(False)

        assert [n.title for n in notifications] == ["You are offline"]

    async def test_reconnect_triggers_one_sync(self, storage, orchestrator_for):
        server = SlowServer(delay=0)
        orchestrator = orchestrator_for(server)
        notifications = _collect(orchestrator)

        orchestrator.monitor.set_online(False)
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator.monitor.set_online(True)
        await asyncio.sleep(0.1)

        assert server.paths == ["/api/a"]
        assert "Back online" in [n.title for n in notifications]
        assert orchestrator.status.pending_count == 0

    async def test_going_offline_cancels_reconnect_sync(self, storage, orchestrator_for):
        server = SlowServer(delay=0)
        orchestrator = orchestrator_for(server, reconnect_settle_delay=0.05)

        orchestrator.monitor.set_online(False)
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator.monitor.set_online(True)
        await asyncio.sleep(0)
        orchestrator.monitor.set_online(False)
        await asyncio.sleep(0.1)

        assert server.paths == []
        assert storage.get_sync_queue_count() == 1

    async def test_going_offline_mid_run_lets_item_finish(self, storage, orchestrator_for):
        """An item already claimed by a reconnect sync is never left in syncing."""
        server = SlowServer(delay=0.2)
        orchestrator = orchestrator_for(server)

        orchestrator.monitor.set_online(False)
        item = storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator.monitor.set_online(True)
        await asyncio.sleep(0.1)
        assert storage.get_sync_item(item.id).status == QueueStatus.SYNCING

        orchestrator.monitor.set_online(False)
        await asyncio.sleep(0.25)

        assert server.paths == ["/api/a"]
        assert storage.get_sync_item(item.id) is None
        assert orchestrator.status.is_syncing is False

    async def test_offline_notice_after_each_reconnect(self, orchestrator_for):
        orchestrator = orchestrator_for()
        notifications = _collect(orchestrator)

        orchestrator.monitor.set_online(False)
        orchestrator.monitor.set_online(True)
        await asyncio.sleep(0.05)
        orchestrator.monitor.set_online(False)

        titles = [n.title for n in notifications]
        assert titles.count("You are offline") == 2

    async def test_reconnect_with_empty_queue_waits_for_work(self, storage, orchestrator_for):
        server = SlowServer(delay=0)
        orchestrator = orchestrator_for(server)
        notifications = _collect(orchestrator)

        orchestrator.monitor.set_online(False)
        orchestrator.monitor.set_online(True)
        await asyncio.sleep(0.05)
        assert "Back online" not in [n.title for n in notifications]

        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        await orchestrator.update_pending_count()
        await asyncio.sleep(0.1)

        assert server.paths == ["/api/a"]


class TestLifecycleAndMaintenance:
    """Polling, store failures and operator actions."""

    async def test_state_starts_uninitialized(self, orchestrator_for):
        orchestrator = orchestrator_for()
        assert orchestrator.state == OrchestratorState.UNINITIALIZED

        await orchestrator.update_pending_count()
        assert orchestrator.state == OrchestratorState.IDLE

    async def test_polling_refreshes_counts(self, storage, orchestrator_for):
        orchestrator = orchestrator_for(poll_interval=0.01)
        await orchestrator.start()
        try:
            storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
            await asyncio.sleep(0.05)
            assert orchestrator.status.pending_count == 1
        finally:
            await orchestrator.stop()

    async def test_start_recovers_interrupted_items(self, storage, orchestrator_for):
        item = storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        storage.update_sync_queue_item(item.id, status=QueueStatus.SYNCING)
        orchestrator = orchestrator_for()

        await orchestrator.start()
        await orchestrator.stop()

        assert storage.get_sync_item(item.id).status == QueueStatus.PENDING
        assert orchestrator.status.pending_count == 1

    async def test_store_failure_keeps_previous_counts(self, storage, store, orchestrator_for):
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator = orchestrator_for()
        await orchestrator.update_pending_count()

        store.close()
        await orchestrator.update_pending_count()

        assert orchestrator.status.pending_count == 1

    async def test_clear_offline_data(self, storage, orchestrator_for):
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator = orchestrator_for()
        notifications = _collect(orchestrator)
        await orchestrator.update_pending_count()

        assert await orchestrator.clear_offline_data() is True

        assert storage.get_sync_queue_count() == 0
        assert orchestrator.status.pending_count == 0
        assert notifications[-1].title == "Offline data cleared"

    async def test_clear_refused_while_syncing(self, storage, orchestrator_for):
        storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        orchestrator = orchestrator_for(SlowServer(delay=0.05))

        sync_task = asyncio.create_task(orchestrator.trigger_sync())
        await asyncio.sleep(0.01)
        cleared = await orchestrator.clear_offline_data()
        await sync_task

        assert cleared is False

    async def test_retry_failed(self, storage, orchestrator_for):
        item = storage.add_to_sync_queue(SyncItemType.ORDER, "a", "/a")
        storage.update_sync_queue_item(item.id, status=QueueStatus.SYNCING)
        storage.update_sync_queue_item(item.id, status=QueueStatus.FAILED, retry_count=5)
        orchestrator = orchestrator_for()

        assert await orchestrator.retry_failed() == 1

        assert orchestrator.status.pending_count == 1
        assert orchestrator.status.failed_count == 0

    async def test_get_status(self, orchestrator_for):
        orchestrator = orchestrator_for(online=False)
        await orchestrator.update_pending_count()

        status = orchestrator.get_status()

        assert status["state"] == "idle"
        assert status["network"]["is_online"] is False
        assert status["last_synced_at"] is None
