"""Cancellation context threaded through one stream attempt.

A ``CancelToken`` is bound to the task that performs the network call and
the stream reads.  Cancelling the token cancels that task, which makes the
pending ``await`` (connect, request, or ``read()``) raise.  The token keeps
the *reason* so the session can tell an intentional abort (silent) from a
timeout (reported).
"""

from __future__ import annotations

import asyncio
import logging

from query_stream.types import CancelReason

_logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation flag with an optional idle-timeout timer."""

    def __init__(self) -> None:
        self._reason: CancelReason | None = None
        self._task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._timeout: float | None = None
        self._children: list[CancelToken] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    @property
    def timed_out(self) -> bool:
        return self._reason is CancelReason.TIMEOUT

    def bind(self, task: asyncio.Task) -> None:
        """Attach the task to interrupt on cancellation."""
        self._task = task
        if self.cancelled:
            task.cancel()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Signal cancellation.  Returns ``False`` if already cancelled."""
        if self._reason is not None:
            return False
        self._reason = reason
        self._clear_timer()
        _logger.debug("Cancel token signalled: %s", reason.value)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        for child in self._children:
            child.cancel(reason)
        self._children.clear()
        return True

    def child(self) -> CancelToken:
        """Return a token that is cancelled whenever this one is.

        Cancelling the child (e.g. on its own idle timeout) leaves the
        parent untouched.
        """
        token = CancelToken()
        if self._reason is not None:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    # ------------------------------------------------------------------
    # Idle timeout
    # ------------------------------------------------------------------

    def arm_timeout(self, seconds: float) -> None:
        """Start (or restart) the idle timer."""
        self._timeout = seconds
        self.touch()

    def touch(self) -> None:
        """Re-arm the idle timer after activity."""
        if self._timeout is None or self.cancelled:
            return
        self._clear_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._timeout, self._on_timeout)

    def disarm(self) -> None:
        self._timeout = None
        self._clear_timer()

    def _on_timeout(self) -> None:
        self._timer = None
        _logger.warning("No stream activity for %.1fs, cancelling", self._timeout)
        self.cancel(CancelReason.TIMEOUT)

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
