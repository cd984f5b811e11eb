from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_STRATEGIES = ("programmatic", "subprocess")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(name, "")
    return Path(raw).expanduser() if raw else None


@dataclass
class Config:
    debug_port: int = 9222
    debug_port_range: int = 10
    proxy_port: int = 9223
    agent_web_port: int = 4040
    agent_web_port_range: int = 100
    chrome_path: str | None = None
    user_data_dir: Path = field(default_factory=lambda: Path.home() / ".cdptunnel-profile")
    ngrok_path: str | None = None
    ngrok_config_path: Path | None = None
    strategies: tuple[str, ...] = DEFAULT_STRATEGIES
    browser_timeout: float = 20.0
    tunnel_timeout: float = 30.0
    connect_timeout: float = 10.0
    settle_delay: float = 1.0
    kill_grace: float = 2.0
    kill_stray_agents: bool = True
    data_dir: Path = field(default_factory=lambda: Path.home() / ".cdptunnel")

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        strategies = tuple(
            s.strip().lower()
            for s in os.environ.get("CDPTUNNEL_STRATEGIES", ",".join(DEFAULT_STRATEGIES)).split(",")
            if s.strip()
        )
        unknown = set(strategies) - set(DEFAULT_STRATEGIES)
        if unknown or not strategies:
            raise ValueError(
                f"CDPTUNNEL_STRATEGIES must list {' and/or '.join(DEFAULT_STRATEGIES)}"
            )
        defaults = cls()
        return cls(
            debug_port=_env_int("CDPTUNNEL_DEBUG_PORT", defaults.debug_port),
            proxy_port=_env_int("CDPTUNNEL_PROXY_PORT", defaults.proxy_port),
            agent_web_port=_env_int("CDPTUNNEL_AGENT_WEB_PORT", defaults.agent_web_port),
            chrome_path=os.environ.get("CDPTUNNEL_CHROME_PATH") or None,
            user_data_dir=_env_path("CDPTUNNEL_USER_DATA_DIR") or defaults.user_data_dir,
            ngrok_path=os.environ.get("CDPTUNNEL_NGROK_PATH") or None,
            ngrok_config_path=_env_path("CDPTUNNEL_NGROK_CONFIG"),
            strategies=strategies,
            browser_timeout=_env_float("CDPTUNNEL_BROWSER_TIMEOUT", defaults.browser_timeout),
            tunnel_timeout=_env_float("CDPTUNNEL_TUNNEL_TIMEOUT", defaults.tunnel_timeout),
            connect_timeout=_env_float("CDPTUNNEL_CONNECT_TIMEOUT", defaults.connect_timeout),
            settle_delay=_env_float("CDPTUNNEL_SETTLE_DELAY", defaults.settle_delay),
            kill_stray_agents=os.environ.get("CDPTUNNEL_KILL_STRAY", "true").lower()
            not in ("0", "false", "no"),
            data_dir=_env_path("CDPTUNNEL_DATA_DIR") or defaults.data_dir,
        )
