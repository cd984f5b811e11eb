from __future__ import annotations

import socket
from pathlib import Path

import pytest

from cdptunnel.core import subprocess_tracker


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Provide an isolated data directory for stores."""
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def free_port() -> int:
    """A port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def isolated_tracker(monkeypatch):
    """Keep tests from touching a real PID file or each other's PIDs."""
    monkeypatch.setattr(subprocess_tracker, "_pid_file", None)
    monkeypatch.setattr(subprocess_tracker, "_tracked", {})
    monkeypatch.setattr(subprocess_tracker, "_stale", {})
