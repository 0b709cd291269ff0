"""Event bus for query-stream."""

from query_stream.events.bus import EventBus

__all__ = ["EventBus"]
