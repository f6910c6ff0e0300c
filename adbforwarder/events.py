"""Device presence events: adb device tracker feeding an asyncio queue.

The adb server pushes a device list whenever something is attached,
detached or changes state. The bridge turns that into DeviceConnected /
DeviceDisconnected events; this module runs the blocking tracker on a
daemon thread and hands the events to the event loop through a bounded
queue. When the tracking connection drops (adb server restarted, killed)
it reconnects after a delay.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading

from adbforwarder.bridge import BridgeError, DeviceBridge, DeviceEvent

logger = logging.getLogger(__name__)


class DeviceEventSource:
    """Background adb device tracker."""

    def __init__(
        self,
        bridge: DeviceBridge,
        queue: asyncio.Queue[DeviceEvent],
        reconnect_delay: float = 2.0,
    ) -> None:
        self.bridge = bridge
        self.queue = queue
        self.reconnect_delay = reconnect_delay
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start tracking devices in a background thread."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        # Each run gets its own flag so a stopped thread still blocked on the
        # socket cannot be revived by a later start
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stopped,),
            name="adb-device-tracker", daemon=True,
        )
        self._thread.start()
        logger.info("Device tracking started")

    async def stop(self) -> None:
        """Stop forwarding events.

        The tracker blocks on the adb socket, so the thread notices the stop
        on its next event; it is a daemon and will not hold up exit.
        """
        self._stopped.set()
        self._thread = None
        logger.info("Device tracking stopped")

    # ── Tracker thread ─────────────────────────────────────────────

    def _run(self, stopped: threading.Event) -> None:
        while not stopped.is_set():
            try:
                for event in self.bridge.track_devices():
                    if stopped.is_set():
                        return
                    if not self._publish(event):
                        return
                logger.info("Device tracking ended")
                return
            except BridgeError as e:
                logger.warning(
                    "Lost connection to adb server (%s), retrying in %.0fs",
                    e, self.reconnect_delay,
                )
            except Exception:
                logger.exception("Device tracker crashed, restarting")
            if stopped.wait(self.reconnect_delay):
                return

    def _publish(self, event: DeviceEvent) -> bool:
        """Hand an event to the loop, blocking while the queue is full."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        try:
            future = asyncio.run_coroutine_threadsafe(self.queue.put(event), loop)
            future.result()
        except (RuntimeError, concurrent.futures.CancelledError):
            # Loop shut down underneath us
            return False
        return True
