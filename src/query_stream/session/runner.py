"""One stream attempt: placeholder, request, frame loop, commit.

The network call and every ``read()`` run in a child task bound to the
attempt's :class:`CancelToken`.  Cancelling the token interrupts whichever
``await`` is pending; the runner then resolves the outcome from the token's
reason instead of from the exception, so an intentional abort stays silent
and a timeout is reported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from query_stream import conversation as conv
from query_stream.config import QueryStreamConfig
from query_stream.conversation import Conversation
from query_stream.core.classifier import ErrorClassifier, ErrorSignal
from query_stream.session.cancel import CancelToken
from query_stream.stream.client import (
    JsonError,
    JsonUnexpected,
    QueryRequest,
    StreamTransport,
)
from query_stream.stream.parser import (
    ChartFrame,
    ContentFrame,
    ErrorFrame,
    Frame,
    FrameReader,
    StructuredFrame,
)
from query_stream.stream.throttle import ThrottledRenderer
from query_stream.types import (
    CancelReason,
    Cancelled,
    ChartPayload,
    Err,
    ErrorCode,
    ErrorRecord,
    Message,
    Ok,
    Result,
    Role,
    Severity,
    TokenRefreshError,
)

_logger = logging.getLogger(__name__)

# Failures of the outside world; anything else escaping the attempt is a bug.
_EXPECTED_FAULTS = (httpx.HTTPError, OSError, TokenRefreshError)


@dataclass
class StreamSession:
    """Live state of one in-flight attempt.  Never reused."""

    token: CancelToken
    message_id: str
    provider: str | None = None
    content: str = ""
    chart: ChartPayload | None = None
    structured: dict[str, Any] | None = None
    renderer: ThrottledRenderer | None = field(default=None, repr=False)
    reader: FrameReader = field(default_factory=FrameReader, repr=False)

    @property
    def pending_event(self) -> str | None:
        return self.reader.state.pending_event

    @property
    def last_flush(self) -> float:
        return self.renderer.last_flush if self.renderer else float("-inf")

    @property
    def committed(self) -> bool:
        """Whether any content reached the visible placeholder."""
        return bool(self.renderer and self.renderer.deliveries)

    def to_message(self) -> Message:
        return Message(
            id=self.message_id,
            role=Role.ASSISTANT,
            content=self.content,
            streaming=False,
            provider=self.provider,
            chart=self.chart,
            structured=self.structured,
        )


def _unexpected_response(raw: Any) -> ErrorRecord:
    _logger.warning("Unexpected non-stream response: %.200r", raw)
    return ErrorRecord(
        code=ErrorCode.UNKNOWN,
        message="Unexpected response from the AI service. Please try again.",
        severity=Severity.ERROR,
        retryable=True,
    )


class SessionRunner:
    """Runs single attempts against the streaming endpoint."""

    def __init__(
        self,
        transport: StreamTransport,
        conversation: Conversation,
        config: QueryStreamConfig,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._transport = transport
        self._conversation = conversation
        self._config = config
        self._classifier = classifier or ErrorClassifier()

    async def run(
        self,
        request: QueryRequest,
        token: CancelToken,
    ) -> tuple[Result, StreamSession]:
        """Run one attempt.  The placeholder is committed or removed on return."""
        placeholder = Message(
            role=Role.ASSISTANT,
            streaming=True,
            provider=request.preferred_provider or "AI",
        )
        self._conversation.apply(conv.append(placeholder))

        session = StreamSession(
            token=token,
            message_id=placeholder.id,
            provider=placeholder.provider,
        )
        session.renderer = ThrottledRenderer(
            sink=lambda content: self._conversation.apply(
                conv.patch(session.message_id, content=content, provider=session.provider),
            ),
            interval=self._config.stream.throttle_interval,
        )

        token.arm_timeout(self._config.timeouts.stream)
        task = asyncio.ensure_future(self._consume(request, session))
        token.bind(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # The caller itself is going away; stop the attempt silently.
            token.cancel(CancelReason.UNMOUNT)
            self._discard(session)
            raise
        finally:
            token.disarm()
            if not task.done():
                task.cancel()

        result = self._resolve(task, session)
        if isinstance(result, Ok):
            session.renderer.close()
            self._conversation.apply(
                conv.replace_message(session.message_id, result.message),
            )
        else:
            self._discard(session)
        return result, session

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, task: asyncio.Future, session: StreamSession) -> Result:
        token = session.token
        # Cancellation wins over a read that completed in the same tick.
        if token.cancelled:
            if not task.cancelled() and task.exception() is not None:
                _logger.debug("Ignoring failure after cancel: %r", task.exception())
            if token.timed_out:
                return Err(self._classifier.classify(ErrorSignal(timed_out=True)))
            _logger.info("Attempt aborted (%s)", token.reason.value)
            return Cancelled(token.reason)
        if task.cancelled():
            return Cancelled(CancelReason.USER)

        exc = task.exception()
        if exc is not None:
            if isinstance(exc, _EXPECTED_FAULTS):
                _logger.warning("Attempt failed: %s: %s", type(exc).__name__, exc)
                return Err(self._classifier.classify_exception(exc))
            self._discard(session)
            raise exc
        return task.result()

    def _discard(self, session: StreamSession) -> None:
        if session.renderer is not None:
            session.renderer.close()
        self._conversation.apply(conv.remove(session.message_id))

    async def _consume(self, request: QueryRequest, session: StreamSession) -> Result:
        token = session.token
        async with self._transport.open(request) as outcome:
            if isinstance(outcome, JsonError):
                return Err(outcome.error)
            if isinstance(outcome, JsonUnexpected):
                return Err(_unexpected_response(outcome.raw))

            async for chunk in outcome.chunks():
                if token.cancelled:
                    return Cancelled(token.reason)
                token.touch()
                error = self._apply_all(session.reader.feed(chunk), session)
                if error is not None:
                    return Err(error)

        error = self._apply_all(session.reader.finish(), session)
        if error is not None:
            return Err(error)

        if session.reader.parse_errors:
            _logger.warning(
                "Recovered from %d malformed frame(s)", session.reader.parse_errors,
            )
        session.renderer.flush()
        return Ok(session.to_message())

    def _apply_all(self, frames: list[Frame], session: StreamSession) -> ErrorRecord | None:
        for frame in frames:
            if isinstance(frame, ContentFrame):
                session.content += frame.text
                if frame.provider:
                    session.provider = frame.provider
                session.renderer.notify(session.content)
            elif isinstance(frame, ChartFrame):
                session.chart = frame.chart
            elif isinstance(frame, StructuredFrame):
                session.structured = frame.payload
            elif isinstance(frame, ErrorFrame):
                _logger.warning("In-stream error frame: %.200r", frame.payload)
                return self._classifier.classify(ErrorSignal.from_body(frame.payload))
        return None
