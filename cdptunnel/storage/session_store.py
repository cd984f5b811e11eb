from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class SessionStore:
    """Persists the URL of the active tunnel session in a JSON file."""

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / "session.json"

    def save(self, public_url: str, debug_port: int, proxy_port: int) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({
            "public_url": public_url,
            "debug_port": debug_port,
            "proxy_port": proxy_port,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }, indent=2))

    def load(self) -> dict | None:
        if not self._path.exists():
            return None
        try:
            return json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self._path, e)
            return None

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
