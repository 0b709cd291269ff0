"""Single stream sessions: cancellation, single-flight guard, runner."""

from query_stream.session.cancel import CancelToken
from query_stream.session.guard import SessionGuard
from query_stream.session.runner import SessionRunner, StreamSession

__all__ = ["CancelToken", "SessionGuard", "SessionRunner", "StreamSession"]
