"""Event Bus — where the engine's decisions leave it.

Schedule requests, notification deliveries and child attach/detach all
become events. Collaborators subscribe with fnmatch patterns, so
"child.*" receives both "child.attached" and "child.removed".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from procvigil.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """One published supervision decision or observation."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)


class EventBus:
    """Pattern-matched async fan-out with a bounded replay buffer."""

    def __init__(self, history_limit: int = 500) -> None:
        self._handlers: list[tuple[str, EventHandler]] = []
        self._recent: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._handlers.append((pattern, handler))

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        """Publish ``topic`` to every matching handler.

        Handlers run concurrently; one that raises is logged and the rest
        still receive the event.
        """
        event = Event(topic=topic, data=data or {}, source=source)
        self._recent.append(event)

        matching = [h for pattern, h in self._handlers if fnmatch.fnmatch(topic, pattern)]
        if not matching:
            return event
        results = await asyncio.gather(*(h(event) for h in matching), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                _logger.warning("Handler for %s failed: %s", topic, result)
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events matching ``topic_filter``, newest first."""
        matched = [e for e in reversed(self._recent) if fnmatch.fnmatch(e.topic, topic_filter)]
        return matched[:limit]
