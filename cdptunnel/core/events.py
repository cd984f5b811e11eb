"""Event bus and lifecycle events.

Supervised processes report what happens to them here; the controller
subscribes and decides what to do.  Nothing is torn down from inside a
process callback.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Subscribers get an ``asyncio.Queue`` per event type.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def publish(self, event: object) -> None:
        """Deliver *event* to every subscriber of its exact type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessExitedEvent:
    """A supervised process exited after readiness without being asked to."""
    kind: str
    pid: int
    returncode: int | None


@dataclass(frozen=True)
class PhaseChangedEvent:
    """The controller moved to a new phase."""
    phase: str
    previous: str
