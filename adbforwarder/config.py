"""Configuration for the adb forwarder."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# adb itself honours these, so a user-level override reaches both
_ADB_SERVER_HOST = os.environ.get("ANDROID_ADB_SERVER_HOST", "127.0.0.1")
_ADB_SERVER_PORT = int(os.environ.get("ANDROID_ADB_SERVER_PORT", "5037"))

_COMMENT = "//"


@dataclass
class ForwarderConfig:
    """Forwarder configuration: defaults, optionally loaded from JSON."""

    # adb server
    adb_host: str = _ADB_SERVER_HOST
    adb_port: int = _ADB_SERVER_PORT
    adb_path: str = ""  # empty: look in tools_dir, then PATH
    tools_dir: str = "adb"
    download_adb: bool = True

    # Allow-list
    devices_file: str = "devices.conf"

    # Companion app
    package: str = "alvr.client"
    apk_path: str = "../alvr_client_android.apk"
    permission: str = "android.permission.RECORD_AUDIO"

    # Host port == device port
    forward_ports: list[int] = field(default_factory=lambda: [9943, 9944])

    # Product metadata may lag the connect event
    resolve_timeout: float = 5.0
    resolve_initial_delay: float = 0.25
    resolve_max_delay: float = 1.0

    launch_delay: float = 1.0
    command_timeout: float = 60.0
    install_timeout: float = 300.0

    # Event source
    event_queue_size: int = 64
    reconnect_delay: float = 2.0

    @classmethod
    def load(cls, path: str | Path) -> ForwarderConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            ignored = sorted(set(data) - known)
            if ignored:
                logger.warning("Ignoring unknown config keys: %s", ", ".join(ignored))
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)


def parse_allow_list(lines) -> tuple[str, ...]:
    """Parse devices.conf lines into product identifiers.

    Blank lines and ``//`` comment lines are dropped, trailing ``// ...``
    comments are stripped. Order is kept, duplicates collapse.
    """
    products: list[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith(_COMMENT):
            continue
        product = stripped.split(_COMMENT, 1)[0].strip()
        if product and product not in products:
            products.append(product)
    return tuple(products)


def load_allow_list(path: str | Path) -> tuple[str, ...]:
    """Load the product allow-list. A missing file gives an empty list."""
    path = Path(path)
    if not path.exists():
        logger.warning("%s not found, no devices will be forwarded", path)
        return ()
    with open(path, encoding="utf-8") as f:
        products = parse_allow_list(f)
    logger.info("Loaded %d allowed device(s) from %s", len(products), path)
    return products
