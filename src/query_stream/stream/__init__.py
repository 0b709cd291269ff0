"""Transport, frame parsing and throttled rendering for query-stream."""

from query_stream.stream.client import QueryRequest, StaticTokenProvider, StreamTransport
from query_stream.stream.parser import FrameReader, ParseState, parse_chunk
from query_stream.stream.throttle import ThrottledRenderer

__all__ = [
    "FrameReader",
    "ParseState",
    "QueryRequest",
    "StaticTokenProvider",
    "StreamTransport",
    "ThrottledRenderer",
    "parse_chunk",
]
