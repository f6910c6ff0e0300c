"""pytest configuration for ADB Forwarder tests."""

from pathlib import Path

import pytest

from adbforwarder.bridge import DeviceInfo, MockDeviceBridge
from adbforwarder.config import ForwarderConfig


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def fast_config(tmp_path):
    """Config with no real waiting and an APK path that does not exist yet."""
    return ForwarderConfig(
        apk_path=str(tmp_path / "alvr_client_android.apk"),
        resolve_timeout=0.2,
        resolve_initial_delay=0.01,
        resolve_max_delay=0.02,
        launch_delay=0.0,
    )


@pytest.fixture
def apk(fast_config):
    """Create the companion APK so the reinstall step runs."""
    path = Path(fast_config.apk_path)
    path.write_bytes(b"PK\x03\x04fake-apk")
    return path


@pytest.fixture
def quest_bridge():
    """A single ready Quest 2 headset."""
    return MockDeviceBridge([DeviceInfo("1WMHH000000001", "hollywood")])
