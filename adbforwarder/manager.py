"""Forwarder lifecycle manager.

Owns the device event queue and the dispatch loop: every DeviceConnected
starts one provisioning task for that serial, DeviceDisconnected is only
logged. Tasks for different devices run concurrently and share nothing
but the read-only allow-list, the config and the bridge.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from adbforwarder.bridge import DeviceBridge, DeviceConnected, DeviceDisconnected, DeviceEvent
from adbforwarder.config import ForwarderConfig
from adbforwarder.events import DeviceEventSource
from adbforwarder.provisioning import ProvisioningEngine, ProvisionResult

logger = logging.getLogger(__name__)


class ForwarderManager:
    """Central manager for device events and provisioning attempts."""

    def __init__(
        self,
        bridge: DeviceBridge,
        allow_list: Iterable[str],
        config: ForwarderConfig | None = None,
    ) -> None:
        self.config = config or ForwarderConfig()
        self.bridge = bridge
        self.allow_list = tuple(allow_list)
        self.queue: asyncio.Queue[DeviceEvent] = asyncio.Queue(
            maxsize=self.config.event_queue_size
        )
        self.source = DeviceEventSource(bridge, self.queue, self.config.reconnect_delay)
        self.provisioner = ProvisioningEngine(bridge, self.allow_list, self.config)
        self.results: dict[str, ProvisionResult] = {}
        self._active: dict[str, asyncio.Task[ProvisionResult]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start device tracking."""
        if not self.allow_list:
            logger.warning("Allow-list is empty, every device will be skipped")
        await self.source.start()
        logger.info("ForwarderManager started")

    async def stop(self) -> None:
        """Stop tracking and cancel in-flight attempts."""
        await self.source.stop()
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("ForwarderManager stopped")

    async def run(self) -> None:
        """Track devices and dispatch events until cancelled."""
        await self.start()
        try:
            await self.serve()
        finally:
            await self.stop()

    async def serve(self) -> None:
        """Consume the event queue forever."""
        while True:
            event = await self.queue.get()
            try:
                self.dispatch(event)
            finally:
                self.queue.task_done()

    # ── Dispatch ───────────────────────────────────────────────────

    def dispatch(self, event: DeviceEvent) -> asyncio.Task[ProvisionResult] | None:
        """Handle one device event; returns the attempt task if one started."""
        if isinstance(event, DeviceConnected):
            return self._on_connected(event.serial)
        if isinstance(event, DeviceDisconnected):
            self._on_disconnected(event.serial)
            return None
        logger.warning("Ignoring unknown device event: %r", event)
        return None

    def is_active(self, serial: str) -> bool:
        task = self._active.get(serial)
        return task is not None and not task.done()

    async def wait_idle(self) -> None:
        """Wait until every in-flight attempt has finished."""
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    # ── Internal ───────────────────────────────────────────────────

    def _on_connected(self, serial: str) -> asyncio.Task[ProvisionResult] | None:
        logger.info("Connected device: %s", serial)
        if self.is_active(serial):
            logger.info("Device %s is already being provisioned, ignoring", serial)
            return None
        task = asyncio.create_task(self.provisioner.provision(serial), name=f"provision-{serial}")
        self._active[serial] = task
        task.add_done_callback(lambda t, s=serial: self._on_attempt_done(s, t))
        return task

    def _on_disconnected(self, serial: str) -> None:
        # Forwards go away with the transport; nothing to clean up here
        logger.info("Disconnected device: %s", serial)

    def _on_attempt_done(self, serial: str, task: asyncio.Task[ProvisionResult]) -> None:
        if self._active.get(serial) is task:
            del self._active[serial]
        if task.cancelled():
            logger.info("Provisioning of %s cancelled", serial)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Provisioning task for %s crashed: %s", serial, exc)
            return
        result = task.result()
        self.results[serial] = result
        logger.debug("Attempt for %s finished: %s", serial, result.outcome.value)
