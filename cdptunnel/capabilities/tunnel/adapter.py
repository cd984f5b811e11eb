"""Tunnel agent adapter: ordered strategies with fallback."""
from __future__ import annotations

import logging
from typing import Sequence

from cdptunnel.capabilities.tunnel.base import TunnelSession, TunnelState, TunnelStrategy
from cdptunnel.capabilities.tunnel.ngrok import NgrokAuth
from cdptunnel.core.errors import ConfigurationError, ResourceUnavailable, StrategyUnavailable

logger = logging.getLogger(__name__)


class TunnelAgentAdapter:
    """Opens the single public tunnel of a session.

    Strategies are tried in order.  ``StrategyUnavailable`` moves on to the
    next one; every other error is raised as-is.
    """

    def __init__(self, auth: NgrokAuth, strategies: Sequence[TunnelStrategy]) -> None:
        self._auth = auth
        self._strategies = list(strategies)
        self._active: TunnelStrategy | None = None
        self._session: TunnelSession | None = None

    @property
    def session(self) -> TunnelSession | None:
        return self._session

    @property
    def active_strategy(self) -> TunnelStrategy | None:
        return self._active

    def check_auth(self) -> None:
        if not self._auth.is_configured():
            raise ConfigurationError("auth_required", "ngrok authtoken is not configured")

    async def open(self, port: int) -> TunnelSession:
        """Expose local *port*; the returned session is still pending."""
        if self._session and self._session.state is not TunnelState.CLOSED:
            raise ResourceUnavailable(f"A tunnel is already open: {self._session.public_url}")
        self.check_auth()

        last_error: StrategyUnavailable | None = None
        for strategy in self._strategies:
            logger.info("Opening tunnel to port %d (%s)", port, strategy.name)
            try:
                url = await strategy.connect(port)
            except StrategyUnavailable as e:
                logger.warning("Tunnel strategy %s unavailable: %s", strategy.name, e)
                last_error = e
                continue
            self._active = strategy
            self._session = TunnelSession(public_url=url, strategy=strategy.name)
            return self._session

        raise last_error or StrategyUnavailable("No tunnel strategy configured")

    async def close(self) -> None:
        strategy, self._active = self._active, None
        if self._session:
            self._session.state = TunnelState.CLOSED
        if strategy:
            await strategy.disconnect()
            logger.info("Tunnel closed (%s)", strategy.name)
