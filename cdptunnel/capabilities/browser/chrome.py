"""Chrome/Chromium discovery and launch with remote debugging enabled."""
from __future__ import annotations

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from cdptunnel.core.errors import ProcessSpawnError
from cdptunnel.core.process_supervisor import ManagedProcess, ProcessKind

if TYPE_CHECKING:
    from cdptunnel.core.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_CANDIDATES: dict[str, list[str]] = {
    "darwin": [
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
    ],
    "win32": [
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
        os.path.join(os.environ.get("LOCALAPPDATA", ""), r"Google\Chrome\Application\chrome.exe"),
    ],
    "linux": [
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium-browser",
        "/usr/bin/chromium",
    ],
}

_PATH_NAMES = ["google-chrome", "google-chrome-stable", "chromium-browser", "chromium", "chrome"]


def find_chrome(platform: str = sys.platform) -> str:
    """Return the path of an installed Chrome/Chromium binary."""
    for candidate in _CANDIDATES.get(platform, []):
        if candidate and Path(candidate).exists():
            return candidate
    for name in _PATH_NAMES:
        found = shutil.which(name)
        if found:
            return found
    raise ProcessSpawnError(
        "Chrome binary not found. Please install Google Chrome or Chromium."
    )


def build_chrome_args(debug_port: int, user_data_dir: Path) -> list[str]:
    # Debugging stays on loopback; only the proxy is exposed through the tunnel.
    return [
        f"--remote-debugging-port={debug_port}",
        "--remote-debugging-address=127.0.0.1",
        "--remote-allow-origins=*",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-default-apps",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-extensions",
    ]


async def start_browser(
    supervisor: ProcessSupervisor,
    debug_port: int,
    user_data_dir: Path,
    timeout: float,
    chrome_path: str | None = None,
) -> ManagedProcess:
    """Launch the browser and wait until ``/json/version`` answers 200.

    The profile directory is reused between sessions so cookies and logins
    survive a restart.
    """
    binary = chrome_path or find_chrome()
    user_data_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Starting browser with remote debugging port %d", debug_port)
    proc = await supervisor.spawn(
        ProcessKind.BROWSER.value, binary, build_chrome_args(debug_port, user_data_dir)
    )
    await supervisor.wait_ready(
        proc, timeout, probe_url=f"http://127.0.0.1:{debug_port}/json/version"
    )
    logger.info("Browser DevTools reachable on port %d", debug_port)
    return proc
