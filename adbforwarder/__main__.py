"""ADB Forwarder entry point.

Usage:
    python -m adbforwarder [--config SETTINGS_JSON] [--devices DEVICES_CONF]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from . import __version__
from .bridge import AdbutilsBridge
from .config import ForwarderConfig, load_allow_list
from .manager import ForwarderManager
from .platform_tools import PlatformToolsError, ensure_adb, start_server

logger = logging.getLogger("adbforwarder")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="adbforwarder",
        description="Forward USB-attached Android headsets and launch the companion app",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a JSON settings file (default: built-in defaults)",
    )
    parser.add_argument(
        "--devices",
        default=None,
        help="Allow-list of device products (overrides config, default: devices.conf)",
    )
    parser.add_argument(
        "--adb",
        default=None,
        help="Path to the adb binary (overrides config)",
    )
    parser.add_argument(
        "--no-download",
        action="store_true",
        help="Fail instead of downloading platform-tools when adb is missing",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args()

    # Logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = ForwarderConfig.load(args.config) if args.config else ForwarderConfig()

    # CLI overrides
    if args.devices:
        config.devices_file = args.devices
    if args.adb:
        config.adb_path = args.adb
    if args.no_download:
        config.download_adb = False

    logger.info("ADB Forwarder v%s", __version__)
    allow_list = load_allow_list(config.devices_file)

    loop = asyncio.new_event_loop()
    try:
        adb = loop.run_until_complete(
            ensure_adb(config.adb_path, config.tools_dir, download=config.download_adb)
        )
        loop.run_until_complete(start_server(adb, config.adb_port))
    except PlatformToolsError as e:
        logger.error("%s", e)
        loop.close()
        sys.exit(1)

    bridge = AdbutilsBridge(
        host=config.adb_host,
        port=config.adb_port,
        command_timeout=config.command_timeout,
        install_timeout=config.install_timeout,
    )
    manager = ForwarderManager(bridge, allow_list, config)
    runner = loop.create_task(manager.run())

    # Graceful shutdown on SIGINT/SIGTERM
    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down", sig)
        runner.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    try:
        loop.run_until_complete(runner)
    except KeyboardInterrupt:
        runner.cancel()
        loop.run_until_complete(asyncio.gather(runner, return_exceptions=True))
    except asyncio.CancelledError:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
