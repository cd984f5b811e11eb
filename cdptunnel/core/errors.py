"""Error taxonomy for the tunnel orchestrator.

Components raise these at their seams; the controller catches them at the
boundary and turns them into structured results.
"""
from __future__ import annotations


class CdpTunnelError(Exception):
    """Base class. ``code`` is the short token reported in results."""

    code = "error"


class ConfigurationError(CdpTunnelError):
    """Missing or invalid credential configuration."""

    def __init__(self, reason: str = "auth_required", message: str | None = None) -> None:
        super().__init__(message or reason)
        self.code = reason


class ResourceUnavailable(CdpTunnelError):
    code = "resource_unavailable"


class NoPortAvailable(ResourceUnavailable):
    code = "no_port_available"


class ProcessSpawnError(CdpTunnelError):
    code = "spawn_failed"


class ProcessExitedEarly(CdpTunnelError):
    code = "process_exited"

    def __init__(self, kind: str, returncode: int | None, output: str = "") -> None:
        message = f"{kind} exited unexpectedly with code {returncode}"
        if output:
            message += f". output: {output[-500:]}"
        super().__init__(message)
        self.kind = kind
        self.returncode = returncode
        self.output = output


class UpstreamTimeout(CdpTunnelError):
    code = "timeout"


class ProxyBindError(CdpTunnelError):
    code = "proxy_bind_failed"


class InvalidPublicURL(CdpTunnelError):
    code = "invalid_public_url"


class StrategyUnavailable(CdpTunnelError):
    """A tunnel strategy cannot be used here; the next one should be tried."""

    code = "strategy_unavailable"
