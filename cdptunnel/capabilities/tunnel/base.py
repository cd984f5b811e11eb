"""Shared types for the tunnel capability."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit

from cdptunnel.core.errors import InvalidPublicURL


class TunnelState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class TunnelSession:
    """The one public tunnel of the current session."""

    public_url: str
    strategy: str
    state: TunnelState = TunnelState.PENDING

    @property
    def hostname(self) -> str:
        return urlsplit(self.public_url).netloc


@runtime_checkable
class TunnelStrategy(Protocol):
    """One way of getting the agent to expose a local port.

    ``connect`` raises ``StrategyUnavailable`` when the next strategy should
    be tried instead; any other error is final.
    """

    @property
    def name(self) -> str: ...

    async def connect(self, port: int) -> str: ...

    async def disconnect(self) -> None: ...


def validate_public_url(url: object) -> str:
    """Return the hostname of *url*, which must be an ``https://`` URL."""
    if not isinstance(url, str) or not url.startswith("https://"):
        raise InvalidPublicURL(f"Invalid tunnel URL received: {url!r}")
    hostname = urlsplit(url.rstrip("/")).netloc
    if not hostname:
        raise InvalidPublicURL(f"Tunnel URL has no hostname: {url!r}")
    return hostname
