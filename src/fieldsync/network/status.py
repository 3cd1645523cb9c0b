"""Connectivity monitoring: online/offline state and link quality."""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from fieldsync.logging import log_connectivity_change

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkStatus:
    """Snapshot of the current connectivity state."""

    is_online: bool = True
    is_slow_connection: bool = False
    connection_type: str = "unknown"
    effective_type: str = "unknown"
    downlink: float | None = None
    rtt: float | None = None  # milliseconds


def effective_type_for(rtt_ms: float) -> str:
    """Map a round-trip time onto the usual cellular generation labels."""
    if rtt_ms >= 2000:
        return "slow-2g"
    if rtt_ms >= 1400:
        return "2g"
    if rtt_ms >= 270:
        return "3g"
    return "4g"


class ConnectivityMonitor:
    """Tracks whether the API is reachable and how fast the link is.

    Connectivity comes from two sources: periodic health probes run by
    ``start()``, and signals reported by the host application through
    ``set_online()``. Callbacks fire whenever the online flag or the link
    quality class changes.

    Example:
        monitor = ConnectivityMonitor(probe=api.check_health)
        monitor.on_change(lambda s: print(s.is_online))
        monitor.start()
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]] | None = None,
        probe_interval: float = 15.0,
        slow_rtt_ms: float = 1500.0,
        initial_online: bool = True,
        connection_type: str = "unknown",
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Coroutine function returning True when the API answers
            probe_interval: Seconds between probes
            slow_rtt_ms: Round-trip time at or above which the link is slow
            initial_online: Assumed state before the first probe
            connection_type: Link type reported by the host (wifi, cellular...)
        """
        self._probe = probe
        self.probe_interval = probe_interval
        self.slow_rtt_ms = slow_rtt_ms

        self._status = NetworkStatus(is_online=initial_online, connection_type=connection_type)
        self._callbacks: list[Callable[[NetworkStatus], None]] = []
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def status(self) -> NetworkStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status.is_online

    def on_change(self, callback: Callable[[NetworkStatus], None]) -> None:
        """Register a callback for connectivity or link quality changes."""
        self._callbacks.append(callback)

    def set_online(self, online: bool, connection_type: str | None = None) -> None:
        """Report an online/offline signal from the host environment."""
        changes: dict = {"is_online": online}
        if connection_type is not None:
            changes["connection_type"] = connection_type
        if not online:
            changes.update(rtt=None, is_slow_connection=False, effective_type="unknown")
        self._update(**changes)

    async def probe_once(self) -> NetworkStatus:
        """Probe the API once and update the status."""
        if self._probe is None:
            return self._status

        started = time.monotonic()
        try:
            reachable = await self._probe()
        except Exception as e:
            logger.debug("Connectivity probe raised: %s", e)
            reachable = False
        rtt_ms = (time.monotonic() - started) * 1000

        if reachable:
            self._update(
                is_online=True,
                rtt=rtt_ms,
                effective_type=effective_type_for(rtt_ms),
                is_slow_connection=rtt_ms >= self.slow_rtt_ms,
            )
        else:
            self.set_online(False)
        return self._status

    def _update(self, **changes) -> None:
        old = self._status
        new = replace(old, **changes)
        self._status = new

        if (
            new.is_online == old.is_online
            and new.is_slow_connection == old.is_slow_connection
            and new.effective_type == old.effective_type
        ):
            return

        if new.is_online != old.is_online or new.is_slow_connection != old.is_slow_connection:
            log_connectivity_change(logger, new.is_online, new.is_slow_connection, new.rtt)

        for callback in self._callbacks:
            try:
                callback(new)
            except Exception as e:
                logger.error("Connectivity callback failed: %s", e)

    def start(self) -> None:
        """Start periodic probing in the background."""
        if self._running or self._probe is None:
            return
        self._running = True
        self._task = asyncio.create_task(self._probe_worker())
        logger.info("Connectivity monitor started, interval=%.0fs", self.probe_interval)

    async def _probe_worker(self) -> None:
        while self._running:
            try:
                await self.probe_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Connectivity probe error: %s", e)

            await asyncio.sleep(self.probe_interval)

    async def stop(self) -> None:
        """Stop probing."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
