"""Session event bus.

The orchestrator publishes lifecycle events and user-facing notices here
(fallback used, soft failure, turn failed); front ends subscribe to the
ones they render.  Delivery never affects the turn that published.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Callable

from query_stream.types import EventType, SessionEvent

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Handler = Callable[[SessionEvent], Any]


class EventBus:
    """Publishes :class:`SessionEvent` objects to sync or async handlers.

    Handlers run in subscription order, type-specific ones before
    ``"*"`` subscribers, and each event is recorded in a bounded history.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: deque[SessionEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(_channel(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(_channel(event_type))
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: SessionEvent) -> None:
        self._history.append(event)
        targets = [
            *self._handlers.get(_channel(event.type), ()),
            *self._handlers.get(ALL_EVENTS, ()),
        ]
        for handler in targets:
            await _deliver(handler, event)

    async def publish(self, event_type: EventType, **data: Any) -> None:
        await self.emit(SessionEvent(type=event_type, data=data))

    @property
    def history(self) -> list[SessionEvent]:
        return list(self._history)

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()


def _channel(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


async def _deliver(handler: Handler, event: SessionEvent) -> None:
    try:
        outcome = handler(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        _logger.exception("Handler for %s event failed", event.type.value)
