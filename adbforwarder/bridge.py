"""adb device bridge: registry query, command executor and device tracking.

Everything the forwarder does on a device goes through a ``DeviceBridge``:
  - list_devices: resolve serials into product metadata
  - shell: run a shell command on one device
  - forward: create a host → device TCP forward
  - install: push an APK and install it with replace semantics
  - track_devices: blocking stream of connect/disconnect events

Uses adbutils for the real adb server connection; a MockDeviceBridge is
provided for tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol, TypeVar, Union

import adbutils

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# Where APKs are staged on the device before `pm install`
_REMOTE_TMP_DIR = "/data/local/tmp"


class BridgeError(Exception):
    """Raised when an adb call fails, times out or the server is unreachable."""


# ── Data models ───────────────────────────────────────────────────


@dataclass
class DeviceInfo:
    serial: str
    product: str = ""  # empty until the device reports it
    state: str = "device"  # "device", "offline", "unauthorized", ...

    @property
    def is_ready(self) -> bool:
        return self.state == "device"

    def label(self) -> str:
        return self.product or self.serial


@dataclass
class ShellResult:
    output: str = ""
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class DeviceConnected:
    serial: str


@dataclass(frozen=True)
class DeviceDisconnected:
    serial: str


DeviceEvent = Union[DeviceConnected, DeviceDisconnected]


# ── Bridge abstraction ────────────────────────────────────────────


class DeviceBridge(Protocol):
    """Protocol for adb access: real adbutils or mock."""

    async def list_devices(self) -> list[DeviceInfo]:
        ...

    async def shell(self, serial: str, command: str) -> ShellResult:
        ...

    async def forward(self, serial: str, local_port: int, remote_port: int) -> None:
        ...

    async def install(self, serial: str, apk_path: Path) -> None:
        ...

    def track_devices(self) -> Iterator[DeviceEvent]:
        ...


class AdbutilsBridge:
    """Real bridge talking to the adb server through adbutils.

    adbutils is blocking, so every call runs in the default executor and is
    bounded by a timeout. The tracker is a plain blocking iterator; run it
    off the event loop.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 5037,
        command_timeout: float | None = 60.0,
        install_timeout: float | None = 300.0,
    ) -> None:
        self.host = host
        self.port = port
        self.command_timeout = command_timeout
        self.install_timeout = install_timeout
        self._client = adbutils.AdbClient(host=host, port=port)

    async def list_devices(self) -> list[DeviceInfo]:
        infos = await self._call(
            lambda: self._client.list(extended=True), self.command_timeout
        )
        return [
            DeviceInfo(
                serial=info.serial,
                product=(info.tags or {}).get("product", ""),
                state=info.state,
            )
            for info in infos
        ]

    async def shell(self, serial: str, command: str) -> ShellResult:
        device = self._client.device(serial=serial)
        ret = await self._call(
            lambda: device.shell2(command, timeout=self.command_timeout),
            self.command_timeout,
        )
        return ShellResult(output=ret.output or "", returncode=ret.returncode)

    async def forward(self, serial: str, local_port: int, remote_port: int) -> None:
        device = self._client.device(serial=serial)
        await self._call(
            lambda: device.forward(f"tcp:{local_port}", f"tcp:{remote_port}"),
            self.command_timeout,
        )

    async def install(self, serial: str, apk_path: Path) -> None:
        """Push the APK to the device and `pm install -r` it."""
        device = self._client.device(serial=serial)
        remote = f"{_REMOTE_TMP_DIR}/adbforwarder-{int(time.time() * 1000)}.apk"

        def _install() -> None:
            device.sync.push(str(apk_path), remote)
            try:
                device.install_remote(remote, flags=["-r", "-t"])
            finally:
                device.shell(["rm", "-f", remote])

        # AdbInstallError (an AdbError) carries the pm output
        await self._call(_install, self.install_timeout)

    def track_devices(self) -> Iterator[DeviceEvent]:
        """Blocking iterator over presence changes reported by the adb server.

        Devices already attached are reported as connected first. Only the
        ``device`` state counts as connected; transitional states are dropped.
        adbutils reports a state change as absent-then-present, so events are
        filtered against the set of serials currently in ``device`` state.
        """
        ready: set[str] = set()
        try:
            for event in self._client.track_devices():
                if event.present and event.status == "device":
                    if event.serial not in ready:
                        ready.add(event.serial)
                        yield DeviceConnected(event.serial)
                elif event.present:
                    logger.debug("Device %s is %s, waiting", event.serial, event.status)
                    if event.serial in ready:
                        ready.discard(event.serial)
                        yield DeviceDisconnected(event.serial)
                elif event.serial in ready:
                    ready.discard(event.serial)
                    yield DeviceDisconnected(event.serial)
        except (adbutils.AdbError, OSError) as e:
            raise BridgeError(f"device tracking failed: {e}") from e

    async def _call(self, func: Callable[[], _T], timeout: float | None) -> _T:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func), timeout)
        except asyncio.TimeoutError as e:
            raise BridgeError(f"adb call timed out after {timeout}s") from e
        except (adbutils.AdbError, OSError) as e:
            raise BridgeError(str(e)) from e


# ── Test double ───────────────────────────────────────────────────


class MockDeviceBridge:
    """Mock bridge for testing: scripted devices, responses and failures.

    ``devices`` may be a list (returned on every query) or a list of lists
    (one snapshot per query, the last one repeating). Every device-facing
    call is recorded in ``calls`` as a tuple, e.g. ``("forward", serial, 9943, 9943)``.
    """

    def __init__(
        self,
        devices: list | None = None,
        responses: dict[str, ShellResult] | None = None,
        events: list[DeviceEvent] | None = None,
    ) -> None:
        self._snapshots = _as_snapshots(devices or [])
        self._responses = responses or {}
        self._default = ShellResult()
        self._events = events or []
        self.calls: list[tuple] = []
        self.list_calls = 0
        self.fail_commands: dict[str, str] = {}  # command prefix -> error text
        self.fail_forward_ports: set[int] = set()
        self.fail_install: str = ""
        self.fail_serials: set[str] = set()  # every call for these serials fails
        self.delay: float = 0.0

    async def list_devices(self) -> list[DeviceInfo]:
        index = min(self.list_calls, len(self._snapshots) - 1)
        self.list_calls += 1
        return list(self._snapshots[index]) if self._snapshots else []

    async def shell(self, serial: str, command: str) -> ShellResult:
        await self._tick()
        self.calls.append(("shell", serial, command))
        self._maybe_fail(serial)
        for prefix, error in self.fail_commands.items():
            if command.startswith(prefix):
                raise BridgeError(error)
        # Check exact match first, then prefix match
        if command in self._responses:
            return self._responses[command]
        for key, val in self._responses.items():
            if command.startswith(key):
                return val
        return self._default

    async def forward(self, serial: str, local_port: int, remote_port: int) -> None:
        await self._tick()
        self.calls.append(("forward", serial, local_port, remote_port))
        self._maybe_fail(serial)
        if local_port in self.fail_forward_ports:
            raise BridgeError(f"cannot bind tcp:{local_port}")

    async def install(self, serial: str, apk_path: Path) -> None:
        await self._tick()
        self.calls.append(("install", serial, str(apk_path)))
        self._maybe_fail(serial)
        if self.fail_install:
            raise BridgeError(self.fail_install)

    def track_devices(self) -> Iterator[DeviceEvent]:
        yield from self._events

    def calls_for(self, serial: str) -> list[tuple]:
        return [c for c in self.calls if c[1] == serial]

    async def _tick(self) -> None:
        # Yield to the loop so concurrent attempts interleave
        await asyncio.sleep(self.delay)

    def _maybe_fail(self, serial: str) -> None:
        if serial in self.fail_serials:
            raise BridgeError(f"device {serial} not responding")


def _as_snapshots(devices: list) -> list[list[DeviceInfo]]:
    if devices and isinstance(devices[0], list):
        return devices
    return [devices]
