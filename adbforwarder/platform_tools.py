"""Android platform-tools (adb) acquisition and server startup.

Looks for an adb binary in this order: explicit path, the local tools
directory, PATH. If none is found it downloads Google's platform-tools
archive for the host platform, unpacks it into the tools directory and
marks the binary executable.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import platform
import shutil
import stat
import zipfile
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

DOWNLOAD_URL = "https://dl.google.com/android/repository/platform-tools-latest-{platform}.zip"

_PLATFORMS = {
    "Linux": "linux",
    "Windows": "windows",
    "Darwin": "darwin",
}


class PlatformToolsError(Exception):
    """Raised when adb cannot be located, downloaded or started."""


def host_platform() -> str:
    """Platform slug used in the platform-tools download URL."""
    system = platform.system()
    try:
        return _PLATFORMS[system]
    except KeyError:
        raise PlatformToolsError(f"Unsupported platform: {system}") from None


def adb_binary_name(slug: str | None = None) -> str:
    return "adb.exe" if (slug or host_platform()) == "windows" else "adb"


def bundled_adb_path(tools_dir: str | Path, slug: str | None = None) -> Path:
    """Where the downloaded adb binary lives inside ``tools_dir``."""
    return Path(tools_dir) / "platform-tools" / adb_binary_name(slug)


def find_adb(adb_path: str = "", tools_dir: str | Path = "adb") -> Path | None:
    """Return the first adb binary found, or None."""
    if adb_path:
        path = Path(adb_path)
        if path.is_file():
            return path
        logger.warning("Configured adb %s does not exist", path)

    bundled = bundled_adb_path(tools_dir)
    if bundled.is_file():
        return bundled

    on_path = shutil.which("adb")
    if on_path:
        return Path(on_path)
    return None


async def download_platform_tools(
    tools_dir: str | Path,
    slug: str | None = None,
    timeout: float = 120.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path:
    """Download and unpack platform-tools, returning the adb path."""
    slug = slug or host_platform()
    url = DOWNLOAD_URL.format(platform=slug)
    tools_dir = Path(tools_dir)

    logger.info("adb not found, downloading %s", url)
    try:
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport
        ) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            payload = resp.content
    except httpx.HTTPError as e:
        raise PlatformToolsError(f"Download of platform-tools failed: {e}") from e
    logger.info("Download successful (%d bytes)", len(payload))

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lambda: _extract(payload, tools_dir))
    logger.info("Extraction successful")

    adb = bundled_adb_path(tools_dir, slug)
    if not adb.is_file():
        raise PlatformToolsError(f"Archive did not contain {adb}")
    if slug != "windows":
        _make_executable(adb)
    return adb


async def ensure_adb(
    adb_path: str = "",
    tools_dir: str | Path = "adb",
    download: bool = True,
) -> Path:
    """Locate adb, downloading platform-tools when allowed."""
    found = find_adb(adb_path, tools_dir)
    if found is not None:
        logger.debug("Using adb at %s", found)
        return found
    if not download:
        raise PlatformToolsError("adb not found and downloading is disabled")
    return await download_platform_tools(tools_dir)


async def start_server(adb: str | Path, port: int | None = None) -> None:
    """Run `adb start-server` (a no-op if it is already running)."""
    env = dict(os.environ)
    if port is not None:
        env["ANDROID_ADB_SERVER_PORT"] = str(port)

    logger.info("Starting adb server...")
    try:
        proc = await asyncio.create_subprocess_exec(
            str(adb), "start-server",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        raise PlatformToolsError(f"Cannot run {adb}: {e}") from e
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise PlatformToolsError(
            f"adb start-server exited with {proc.returncode}: "
            f"{(stderr or stdout).decode(errors='replace').strip()}"
        )


def _extract(payload: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(io.BytesIO(payload)) as zf:
        zf.extractall(dest)


def _make_executable(path: Path) -> None:
    # zipfile drops the exec bit
    logger.info("Giving adb executable permissions")
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
