"""Global subprocess tracker for browser and tunnel-agent PIDs.

Every process the supervisor spawns is recorded here together with its
kind.  An ``atexit`` handler sends SIGTERM to whatever is still tracked when
the interpreter exits, and the PID file lets the next run clean up after a
crash (SIGKILL cannot be caught).
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

_tracked: dict[int, str] = {}
# Entries from an earlier run that were not cleaned up yet.
_stale: dict[int, str] = {}
_pid_file: Path | None = None


def set_pid_file(path: str | Path) -> None:
    """Set where tracked PIDs are persisted (call once at startup)."""
    global _pid_file
    _pid_file = Path(path)


def track(pid: int, kind: str) -> None:
    _stale.pop(pid, None)
    _tracked[pid] = kind
    _save()


def untrack(pid: int) -> None:
    _tracked.pop(pid, None)
    _save()


def tracked() -> dict[int, str]:
    return dict(_tracked)


def kill_all() -> None:
    """Send SIGTERM to all tracked PIDs (called by atexit)."""
    for pid, kind in list(_tracked.items()):
        try:
            os.kill(pid, signal.SIGTERM)
            logger.debug("Sent SIGTERM to %s PID %d", kind, pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Failed to signal PID %d: %s", pid, e)
    _tracked.clear()
    _save()


def cleanup_stale_pids(kinds: set[str] | None = None) -> int:
    """Terminate processes left behind by a previous run.

    Only entries whose kind is in *kinds* are signalled (all when None).
    The others stay in the PID file for a later cleanup.  Returns the
    number of processes signalled.
    """
    if not _pid_file or not _pid_file.exists():
        return 0
    killed = 0
    try:
        lines = _pid_file.read_text().splitlines()
    except OSError:
        return 0
    for line in lines:
        parts = line.split()
        if len(parts) != 2:
            continue
        pid_text, kind = parts
        try:
            pid = int(pid_text)
        except ValueError:
            continue
        if pid in _tracked:
            continue
        if kinds is not None and kind not in kinds:
            _stale[pid] = kind
            continue
        _stale.pop(pid, None)
        try:
            os.kill(pid, signal.SIGTERM)
            killed += 1
            logger.info("Killed stale %s PID %d", kind, pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Could not kill stale PID %d: %s", pid, e)
    _save()
    return killed


def _save() -> None:
    if not _pid_file:
        return
    entries = {**_stale, **_tracked}
    try:
        _pid_file.parent.mkdir(parents=True, exist_ok=True)
        _pid_file.write_text(
            "".join(f"{pid} {kind}\n" for pid, kind in entries.items())
        )
    except OSError as e:
        logger.debug("Could not write PID file %s: %s", _pid_file, e)


atexit.register(kill_all)
