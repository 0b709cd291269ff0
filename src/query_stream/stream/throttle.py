"""Bounded-frequency UI updates for streamed content.

Content fragments can arrive far faster than a UI can usefully redraw.
``ThrottledRenderer`` coalesces them: at most one ``sink`` call per
``interval``, trailing-edge, latest content wins.  ``flush()`` delivers the
final value regardless of the window so the last fragment is never lost.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

_logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.035  # seconds

Sink = Callable[[str], None]


class ThrottledRenderer:
    """Coalesce rapid content updates into bounded-frequency sink calls.

    Must be used from inside a running event loop.
    """

    def __init__(self, sink: Sink, interval: float = DEFAULT_INTERVAL) -> None:
        self._sink = sink
        self._interval = interval
        self._latest: str | None = None
        self._delivered: str | None = None
        self._last_flush = float("-inf")
        self._timer: asyncio.TimerHandle | None = None
        self._closed = False
        self.deliveries = 0

    @property
    def last_flush(self) -> float:
        """Loop time of the most recent delivery."""
        return self._last_flush

    def notify(self, content: str) -> None:
        """Record *content* and deliver it now or at the end of the window."""
        if self._closed:
            return
        self._latest = content
        if self._timer is not None:
            return  # already scheduled; the timer picks up the newest value

        loop = asyncio.get_running_loop()
        elapsed = loop.time() - self._last_flush
        if elapsed >= self._interval:
            self._deliver()
        else:
            self._timer = loop.call_later(self._interval - elapsed, self._on_timer)

    def flush(self) -> None:
        """Deliver the latest content unconditionally."""
        self._cancel_timer()
        if not self._closed:
            self._deliver()

    def close(self) -> None:
        """Drop any scheduled delivery; later notifications are ignored."""
        self._cancel_timer()
        self._closed = True

    def _on_timer(self) -> None:
        self._timer = None
        if not self._closed:
            self._deliver()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _deliver(self) -> None:
        if self._latest is None or self._latest == self._delivered:
            return
        self._delivered = self._latest
        self._last_flush = asyncio.get_running_loop().time()
        self.deliveries += 1
        self._sink(self._latest)
