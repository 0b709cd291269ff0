"""Shared fixtures: an httpx.MockTransport-backed stream endpoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from query_stream.config import QueryStreamConfig, StreamSpec, TimeoutSpec
from query_stream.stream.client import StaticTokenProvider, StreamTransport

BASE_URL = "http://crm.test"


def sse(*frames: dict[str, Any], event: str | None = None) -> bytes:
    """Encode *frames* as ``data:`` records (optionally on a named channel)."""
    prefix = f"event: {event}\n" if event else ""
    return b"".join(
        f"{prefix}data: {json.dumps(f)}\n\n".encode() for f in frames
    )


async def drip(chunks: list[bytes], delay: float = 0.0) -> AsyncIterator[bytes]:
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


def stream_response(body: bytes | AsyncIterator[bytes], status: int = 200) -> httpx.Response:
    return httpx.Response(
        status, headers={"content-type": "text/event-stream"}, content=body,
    )


def json_response(data: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json=data)


@pytest.fixture
def config() -> QueryStreamConfig:
    return QueryStreamConfig(
        timeouts=TimeoutSpec(stream=2),
        stream=StreamSpec(throttle_interval=0.0),
    )


@pytest.fixture
def make_transport(config: QueryStreamConfig):
    """Build a StreamTransport whose network is *handler*."""

    def _make(
        handler: Callable[[httpx.Request], Any],
        token: str | None = "tok-123",
        cfg: QueryStreamConfig | None = None,
    ) -> StreamTransport:
        client = httpx.AsyncClient(
            base_url=BASE_URL, transport=httpx.MockTransport(handler),
        )
        return StreamTransport(cfg or config, StaticTokenProvider(token), client=client)

    return _make
