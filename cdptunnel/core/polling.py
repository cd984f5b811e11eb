"""Scheduled retry with an explicit deadline."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from cdptunnel.core.errors import UpstreamTimeout

logger = logging.getLogger(__name__)


class ScheduledRetry:
    """Run an async check every *interval* seconds until it succeeds.

    ``run()`` returns once *attempt* returns True and raises
    ``UpstreamTimeout`` when the deadline passes first.  Cancel the task
    running it to stop early.
    """

    def __init__(
        self,
        attempt: Callable[[], Awaitable[bool]],
        interval: float,
        timeout: float,
        description: str = "condition",
    ) -> None:
        self._attempt = attempt
        self._interval = interval
        self._timeout = timeout
        self._description = description
        self.attempts = 0

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while True:
            self.attempts += 1
            if await self._attempt():
                return
            if loop.time() + self._interval > deadline:
                raise UpstreamTimeout(
                    f"Timed out after {self._timeout:.0f}s waiting for {self._description}"
                )
            await asyncio.sleep(self._interval)
