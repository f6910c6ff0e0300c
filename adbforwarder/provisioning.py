"""Device provisioning engine.

Runs the workflow for one connected device:

  1. Resolve the serial into product metadata (polls until reported)
  2. Check the product against the allow-list
  3. Reinstall the companion app if its APK is present
     (force-stop, clear data, install, grant microphone permission)
  4. Create the TCP forwards
  5. Launch the companion app

Each attempt ends as success, skipped, unresolved, or failed at exactly one
step. Nothing is retried; a reconnect starts a new attempt.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from adbforwarder.bridge import BridgeError, DeviceBridge, DeviceInfo
from adbforwarder.config import ForwarderConfig

logger = logging.getLogger(__name__)


# ── Outcomes and errors ───────────────────────────────────────────


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


class AttemptStopped(Exception):
    """The attempt ended early without anything going wrong."""


class MetadataUnresolved(AttemptStopped):
    """The device disappeared before its metadata could be read."""


class Ineligible(AttemptStopped):
    """The device's product is not on the allow-list."""


class ProvisioningError(Exception):
    """Base error for a failed provisioning step."""

    step = ""


class InstallFailed(ProvisioningError):
    step = "reinstall"

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} failed: {reason}")
        self.stage = stage  # "stop", "clear" or "install"


class ForwardFailed(ProvisioningError):
    step = "forward"

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"forward tcp:{port} failed: {reason}")
        self.port = port


class LaunchFailed(ProvisioningError):
    step = "launch"


# ── Attempt record ────────────────────────────────────────────────


@dataclass
class ProvisionStep:
    name: str
    status: str = "pending"  # pending, running, done, failed, skipped
    detail: str = ""


@dataclass
class ProvisionResult:
    serial: str
    product: str = ""
    outcome: Outcome = Outcome.FAILED
    failed_step: str = ""
    error: str = ""
    steps: list[ProvisionStep] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def step(self, name: str) -> ProvisionStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


class ProvisioningEngine:
    """Provisions allow-listed devices over adb."""

    def __init__(
        self,
        bridge: DeviceBridge,
        allow_list: Iterable[str],
        config: ForwarderConfig | None = None,
    ) -> None:
        self.bridge = bridge
        self.allow_list = frozenset(allow_list)
        self.config = config or ForwarderConfig()
        self._progress_callbacks: list[Callable[[str, ProvisionStep], None]] = []

    def on_progress(self, callback: Callable[[str, ProvisionStep], None]) -> None:
        """Register a callback for step status updates."""
        self._progress_callbacks.append(callback)

    async def provision(self, serial: str) -> ProvisionResult:
        """Run the full workflow for one connect event. Never raises."""
        result = ProvisionResult(serial=serial)
        steps = [
            ProvisionStep("resolve", detail="Reading device metadata"),
            ProvisionStep("reinstall", detail="Reinstalling companion app"),
            ProvisionStep("grant_permission", detail="Granting microphone permission"),
            ProvisionStep("forward", detail="Forwarding ports"),
            ProvisionStep("launch", detail="Launching companion app"),
        ]
        result.steps = steps
        resolve, reinstall, grant, forward, launch = steps

        try:
            self._update_step(serial, resolve, "running")
            device = await self.resolve_device(serial)
            result.product = device.product
            self._update_step(serial, resolve, "done", device.product)
            self._check_eligible(device)

            apk = Path(self.config.apk_path)
            if apk.exists():
                self._update_step(serial, reinstall, "running")
                await self._reinstall(device, apk)
                self._update_step(serial, reinstall, "done")

                self._update_step(serial, grant, "running")
                if await self._grant_permission(device):
                    self._update_step(serial, grant, "done")
                else:
                    self._update_step(serial, grant, "failed")
            else:
                logger.debug("No companion APK at %s, skipping reinstall", apk)
                self._update_step(serial, reinstall, "skipped", "No APK")
                self._update_step(serial, grant, "skipped")

            self._update_step(serial, forward, "running")
            await self._forward(device)
            self._update_step(serial, forward, "done")
            logger.info(
                "Successfully forwarded device: %s [%s]", device.serial, device.product
            )

            self._update_step(serial, launch, "running")
            await self._launch(device)
            self._update_step(serial, launch, "done")

            result.outcome = Outcome.SUCCESS
            logger.info("USB streaming to device %s ready", device.serial)

        except MetadataUnresolved as e:
            result.outcome = Outcome.UNRESOLVED
            logger.info("%s", e)
            self._finish(serial, steps, "skipped", str(e))

        except Ineligible as e:
            result.outcome = Outcome.SKIPPED
            self._finish(serial, steps, "skipped", str(e))

        except ProvisioningError as e:
            result.outcome = Outcome.FAILED
            result.failed_step = e.step
            result.error = str(e)
            logger.error("Provisioning %s failed at %s: %s", serial, e.step, e)
            self._finish(serial, steps, "failed", str(e))

        except Exception as e:
            result.outcome = Outcome.FAILED
            result.failed_step = next((s.name for s in steps if s.status == "running"), "")
            result.error = str(e)
            logger.exception("Provisioning failed for %s", serial)
            self._finish(serial, steps, "failed", str(e))

        return result

    async def resolve_device(self, serial: str) -> DeviceInfo:
        """Poll the device list until ``serial`` reports its product.

        Product metadata is often missing right after the connect event, so
        this backs off and retries until ``resolve_timeout``. Returns the
        last sighting (possibly with an empty product); raises
        MetadataUnresolved if the device never showed up ready.
        """
        cfg = self.config
        deadline = time.monotonic() + cfg.resolve_timeout
        delay = cfg.resolve_initial_delay
        seen: DeviceInfo | None = None

        while True:
            try:
                devices = await self.bridge.list_devices()
            except BridgeError as e:
                logger.debug("Device list query failed while resolving %s: %s", serial, e)
                devices = []

            match = next((d for d in devices if d.serial == serial and d.is_ready), None)
            if match is not None:
                seen = match
                if match.product:
                    return match

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, cfg.resolve_max_delay)

        if seen is None:
            raise MetadataUnresolved(f"Device {serial} vanished before it could be resolved")
        return seen

    # ── Steps ──────────────────────────────────────────────────────

    def _check_eligible(self, device: DeviceInfo) -> None:
        if device.product and device.product in self.allow_list:
            return
        logger.warning("Skipped forwarding device: %s", device.label())
        raise Ineligible(f"{device.label()} is not allow-listed")

    async def _reinstall(self, device: DeviceInfo, apk: Path) -> None:
        """Stop and wipe the installed app, then install the APK over it."""
        package = self.config.package
        logger.info("Trying to install latest companion app on %s", device.serial)

        # Exit status is ignored: `pm clear` fails when the app is not
        # installed yet, which is fine for a first install.
        for stage, command in (
            ("stop", f"am force-stop {package}"),
            ("clear", f"pm clear {package}"),
        ):
            try:
                await self.bridge.shell(device.serial, command)
            except BridgeError as e:
                raise InstallFailed(stage, str(e)) from e

        try:
            await self.bridge.install(device.serial, apk)
        except BridgeError as e:
            raise InstallFailed("install", str(e)) from e
        logger.info("Successfully updated companion app on %s", device.serial)

    async def _grant_permission(self, device: DeviceInfo) -> bool:
        command = f"pm grant {self.config.package} {self.config.permission}"
        try:
            result = await self.bridge.shell(device.serial, command)
        except BridgeError as e:
            logger.warning("Could not grant %s on %s: %s", self.config.permission, device.serial, e)
            return False
        if not result.ok:
            logger.warning(
                "Could not grant %s on %s: %s",
                self.config.permission, device.serial, result.output.strip(),
            )
            return False
        return True

    async def _forward(self, device: DeviceInfo) -> None:
        for port in self.config.forward_ports:
            try:
                await self.bridge.forward(device.serial, port, port)
            except BridgeError as e:
                raise ForwardFailed(port, str(e)) from e
            logger.debug("Forwarded tcp:%d on %s", port, device.serial)

    async def _launch(self, device: DeviceInfo) -> None:
        # Let the forwards settle before the app starts connecting
        await asyncio.sleep(self.config.launch_delay)
        command = f"monkey -p {self.config.package} 1"
        try:
            result = await self.bridge.shell(device.serial, command)
        except BridgeError as e:
            raise LaunchFailed(f"could not run companion app: {e}") from e
        if not result.ok:
            raise LaunchFailed(f"could not run companion app: {result.output.strip()}")

    # ── Bookkeeping ────────────────────────────────────────────────

    def _finish(self, serial: str, steps: list[ProvisionStep], status: str, detail: str) -> None:
        """Close out the running step and mark the untouched ones skipped."""
        for step in steps:
            if step.status == "running":
                self._update_step(serial, step, status, detail)
            elif step.status == "pending":
                step.status = "skipped"

    def _update_step(
        self,
        serial: str,
        step: ProvisionStep,
        status: str,
        detail: str = "",
    ) -> None:
        """Update step status and notify callbacks."""
        step.status = status
        if detail:
            step.detail = detail
        for cb in self._progress_callbacks:
            try:
                cb(serial, step)
            except Exception:
                logger.exception("Error in provision progress callback")
