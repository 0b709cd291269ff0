"""Incremental parser for the SSE-style response stream.

The wire format is a sequence of records separated by a blank line::

    data: {"content": "Here"}

    event: chart
    data: {"chartType": "bar", "chartData": [...], "chartTitle": "Pipeline"}

Network chunks do not respect record (or even UTF-8 character) boundaries,
so parsing is a small state machine: ``parse_chunk(state, data)`` returns the
new state plus every record completed by *data*.  Anything after the last
separator stays in ``state.buffer`` until more bytes arrive.  The function is
pure: feeding the same state twice gives the same result.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Union

from query_stream.types import ChartPayload

_logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"
CHART_EVENT = "chart"
STRUCTURED_EVENT = "structured"

_SEPARATOR = "\n\n"


def _decode(data: bytes, *, final: bool) -> tuple[str, bytes]:
    """Decode *data*, returning the text and any incomplete trailing bytes."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    text = decoder.decode(data, final=final)
    pending, _ = decoder.getstate()
    return text, pending


# ---------------------------------------------------------------------------
# Parse state and records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParseState:
    """Carry-over between chunks.

    ``buffer`` holds decoded text after the last record separator.
    ``pending_bytes`` holds a multi-byte character cut by a chunk boundary.
    ``pending_event`` is the event name of the unfinished record still
    awaiting its ``data:`` line; it never survives a record boundary.
    """

    buffer: str = ""
    pending_bytes: bytes = b""
    pending_event: str | None = None
    parse_errors: int = 0


@dataclass(frozen=True)
class StreamRecord:
    """One decoded ``(event, payload)`` pair."""

    event: str
    data: Any


def parse_chunk(
    state: ParseState, data: bytes,
) -> tuple[ParseState, list[StreamRecord]]:
    """Feed raw bytes.  Returns ``(new_state, completed_records)``."""
    text, pending = _decode(state.pending_bytes + data, final=False)
    return _consume(state, state.buffer + text, pending, final=False)


def finish_stream(state: ParseState) -> tuple[ParseState, list[StreamRecord]]:
    """Flush at end of stream.

    A producer may close the stream without a trailing blank line; the
    remaining buffer is then treated as one last record.
    """
    text, _ = _decode(state.pending_bytes, final=True)
    return _consume(state, state.buffer + text, b"", final=True)


def _consume(
    state: ParseState, text: str, pending: bytes, *, final: bool,
) -> tuple[ParseState, list[StreamRecord]]:
    text = text.replace("\r\n", "\n")
    parts = text.split(_SEPARATOR)
    remainder = "" if final else parts.pop()

    records: list[StreamRecord] = []
    errors = state.parse_errors
    for raw in parts:
        if not raw.strip():
            continue
        parsed, failed = _parse_record(raw)
        records.extend(parsed)
        errors += failed

    new_state = replace(
        state,
        buffer=remainder,
        pending_bytes=pending,
        pending_event=_open_event(remainder),
        parse_errors=errors,
    )
    return new_state, records


def _open_event(remainder: str) -> str | None:
    """Event name declared by the unfinished record and not yet consumed."""
    pending: str | None = None
    # The last piece may be a partial line
    for line in remainder.split("\n")[:-1]:
        line = line.rstrip("\r")
        if line.startswith("event:"):
            pending = line[6:].strip() or None
        else:
            pending = None
    return pending


def _parse_record(raw: str) -> tuple[list[StreamRecord], int]:
    """Parse one complete record.  Returns ``(records, malformed_count)``."""
    records: list[StreamRecord] = []
    failed = 0
    pending: str | None = None

    for line in raw.split("\n"):
        line = line.rstrip("\r")
        if line.startswith("event:"):
            pending = line[6:].strip() or None
            continue
        if not line.startswith("data:"):
            # Comments, heartbeats, id:/retry: fields
            pending = None
            continue

        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        event = pending or DEFAULT_EVENT
        pending = None
        if not payload.strip():
            continue
        try:
            value = json.loads(payload)
        except json.JSONDecodeError as e:
            failed += 1
            _logger.warning(
                "Skipping malformed %s frame (%s): %.80r", event, e.msg, payload,
            )
            continue
        records.append(StreamRecord(event=event, data=value))

    return records, failed


# ---------------------------------------------------------------------------
# Frame interpretation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentFrame:
    text: str
    provider: str | None = None


@dataclass(frozen=True)
class ErrorFrame:
    payload: dict[str, Any]


@dataclass(frozen=True)
class ChartFrame:
    chart: ChartPayload


@dataclass(frozen=True)
class StructuredFrame:
    payload: dict[str, Any]


Frame = Union[ContentFrame, ErrorFrame, ChartFrame, StructuredFrame]


def interpret(record: StreamRecord) -> Frame | None:
    """Map a record to a typed frame, or ``None`` if it is not recognized."""
    data = record.data
    if not isinstance(data, dict):
        _logger.debug("Ignoring non-object %s payload", record.event)
        return None

    if record.event == CHART_EVENT:
        return ChartFrame(ChartPayload.from_dict(data))
    if record.event == STRUCTURED_EVENT:
        return StructuredFrame(data)
    if record.event != DEFAULT_EVENT:
        _logger.debug("Ignoring unknown event channel %r", record.event)
        return None

    if data.get("error"):
        return ErrorFrame(data)
    # Some producers send the chart on the default channel
    if data.get("chartType") and data.get("chartData") is not None:
        return ChartFrame(ChartPayload.from_dict(data))
    content = data.get("content")
    if isinstance(content, str) and content:
        provider = data.get("provider")
        return ContentFrame(text=content, provider=provider if provider else None)
    return None


class FrameReader:
    """Stateful convenience wrapper around :func:`parse_chunk`.

    Usage::

        reader = FrameReader()
        async for chunk in response.aiter_bytes():
            for frame in reader.feed(chunk):
                ...
        for frame in reader.finish():
            ...
    """

    def __init__(self) -> None:
        self.state = ParseState()

    def feed(self, data: bytes) -> list[Frame]:
        self.state, records = parse_chunk(self.state, data)
        return self._frames(records)

    def finish(self) -> list[Frame]:
        self.state, records = finish_stream(self.state)
        return self._frames(records)

    @property
    def parse_errors(self) -> int:
        return self.state.parse_errors

    @staticmethod
    def _frames(records: list[StreamRecord]) -> list[Frame]:
        frames = []
        for record in records:
            frame = interpret(record)
            if frame is not None:
                frames.append(frame)
        return frames
