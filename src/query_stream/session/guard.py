"""Single-flight guard for one conversation.

``begin()`` is a synchronous check-and-set: no ``await`` happens between the
check and the mark, so two call stacks triggered by the same burst of user
input cannot both get through while the event loop interleaves them.
"""

from __future__ import annotations

import logging

from query_stream.session.cancel import CancelToken
from query_stream.types import CancelReason

_logger = logging.getLogger(__name__)


class SessionGuard:
    """At most one active stream session per conversation.

    Usage::

        token = CancelToken()
        if not guard.begin(token):
            return  # busy
        try:
            ...
        finally:
            guard.end(token)
    """

    def __init__(self) -> None:
        self._active = False
        self._current: CancelToken | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def current(self) -> CancelToken | None:
        return self._current

    def begin(self, token: CancelToken, *, supersede: bool = False) -> bool:
        """Try to start a session owned by *token*.

        With ``supersede=False`` a busy guard rejects the call and nothing
        changes.  With ``supersede=True`` the running session is aborted
        (reason ``SUPERSEDED``) and *token* takes over.
        """
        if self._active and not supersede:
            _logger.debug("Session already active, rejecting new request")
            return False

        previous = self._current
        if previous is not None and previous is not token:
            # A still-open transport from an earlier session must stop
            # before this one reads anything.
            previous.cancel(CancelReason.SUPERSEDED)

        self._active = True
        self._current = token
        return True

    def end(self, token: CancelToken | None = None) -> None:
        """Release the guard.  Safe to call from ``finally`` blocks.

        When *token* is given and a newer session has already taken over,
        only the newer session's state is kept.
        """
        if token is not None and self._current is not token:
            return
        self._active = False
        self._current = None

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Abort the active session, if any."""
        if self._current is None:
            return False
        return self._current.cancel(reason)
