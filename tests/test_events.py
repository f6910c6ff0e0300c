"""Tests for the background device tracker."""

from __future__ import annotations

import asyncio
import threading

import pytest

from adbforwarder.bridge import (
    BridgeError,
    DeviceConnected,
    DeviceDisconnected,
    MockDeviceBridge,
)
from adbforwarder.events import DeviceEventSource


async def _drain(queue: asyncio.Queue, count: int) -> list:
    return [await asyncio.wait_for(queue.get(), timeout=2) for _ in range(count)]


class TestDeviceEventSource:
    @pytest.mark.asyncio
    async def test_events_reach_queue_in_order(self):
        events = [
            DeviceConnected("A"),
            DeviceConnected("B"),
            DeviceDisconnected("A"),
        ]
        queue: asyncio.Queue = asyncio.Queue(maxsize=8)
        source = DeviceEventSource(MockDeviceBridge(events=events), queue)

        await source.start()
        received = await _drain(queue, 3)
        await source.stop()

        assert received == events

    @pytest.mark.asyncio
    async def test_bounded_queue_applies_backpressure(self):
        events = [DeviceConnected(str(i)) for i in range(5)]
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        source = DeviceEventSource(MockDeviceBridge(events=events), queue)

        await source.start()
        received = await _drain(queue, 5)
        await source.stop()

        assert received == events

    @pytest.mark.asyncio
    async def test_reconnects_after_tracking_failure(self):
        class DroppingBridge(MockDeviceBridge):
            attempts = 0

            def track_devices(self):
                self.attempts += 1
                if self.attempts == 1:
                    yield DeviceConnected("A")
                    raise BridgeError("adb server went away")
                yield DeviceConnected("B")

        bridge = DroppingBridge()
        queue: asyncio.Queue = asyncio.Queue()
        source = DeviceEventSource(bridge, queue, reconnect_delay=0.01)

        await source.start()
        received = await _drain(queue, 2)
        await source.stop()

        assert received == [DeviceConnected("A"), DeviceConnected("B")]
        assert bridge.attempts == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        release = threading.Event()

        class BlockingBridge(MockDeviceBridge):
            def track_devices(self):
                # Stand-in for a tracker waiting on the adb socket
                release.wait(2)
                yield from ()

        source = DeviceEventSource(BlockingBridge(), asyncio.Queue())
        await source.start()
        thread = source._thread
        await source.start()

        assert source._thread is thread
        await source.stop()
        release.set()
        assert not source.running

    @pytest.mark.asyncio
    async def test_restart_does_not_revive_stopped_tracker(self):
        release = threading.Event()
        entered = threading.Event()

        class GatedBridge(MockDeviceBridge):
            attempts = 0

            def track_devices(self):
                self.attempts += 1
                if self.attempts == 1:
                    entered.set()
                    # Old tracker still waiting on the socket across the restart
                    release.wait(2)
                    yield DeviceConnected("stale")
                else:
                    yield DeviceConnected("fresh")

        queue: asyncio.Queue = asyncio.Queue()
        source = DeviceEventSource(GatedBridge(), queue)

        await source.start()
        old = source._thread
        await asyncio.to_thread(entered.wait, 2)
        await source.stop()
        await source.start()

        assert await _drain(queue, 1) == [DeviceConnected("fresh")]

        release.set()
        await asyncio.to_thread(old.join, 2)
        await source.stop()

        assert not old.is_alive()
        assert queue.empty()
