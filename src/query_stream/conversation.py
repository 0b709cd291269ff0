"""In-memory conversation state.

Every mutation is a pure function ``tuple[Message, ...] -> tuple[Message, ...]``
applied to the *current* list.  Patching an id that is no longer present is a
no-op, so an update scheduled before an abort cannot bring a removed
placeholder back.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Iterable

from query_stream.types import Message

_logger = logging.getLogger(__name__)

Messages = tuple[Message, ...]
Transform = Callable[[Messages], Messages]
Listener = Callable[[Messages], None]


# ---------------------------------------------------------------------------
# Transformations
# ---------------------------------------------------------------------------

def append(message: Message) -> Transform:
    def _apply(messages: Messages) -> Messages:
        return messages + (message,)
    return _apply


def patch(message_id: str, **changes: Any) -> Transform:
    """Replace fields of the message with *message_id*, if it still exists."""
    def _apply(messages: Messages) -> Messages:
        return tuple(
            replace(m, **changes) if m.id == message_id else m
            for m in messages
        )
    return _apply


def remove(*message_ids: str) -> Transform:
    ids = set(message_ids)

    def _apply(messages: Messages) -> Messages:
        return tuple(m for m in messages if m.id not in ids)
    return _apply


def replace_message(message_id: str, new: Message) -> Transform:
    def _apply(messages: Messages) -> Messages:
        return tuple(new if m.id == message_id else m for m in messages)
    return _apply


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Conversation:
    """Ordered message list owned by the UI; the core mutates it by id."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: Messages = tuple(messages)
        self._listeners: list[Listener] = []

    @property
    def messages(self) -> Messages:
        return self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message | None:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def apply(self, transform: Transform) -> Messages:
        new = transform(self._messages)
        if new != self._messages:
            self._messages = new
            for listener in list(self._listeners):
                listener(new)
        return new

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def clear(self) -> None:
        self.apply(lambda _: ())

    def history(self, limit: int = 12) -> list[dict[str, str]]:
        """Request-ready history: settled messages without chart payloads."""
        entries = [
            m.to_history_entry() for m in self._messages
            if m.chart is None and not m.streaming
        ]
        return entries[-limit:] if limit > 0 else []
