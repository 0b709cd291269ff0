"""Tests for SessionRunner: one stream attempt against a mocked endpoint."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import drip, json_response, sse, stream_response
from query_stream.config import QueryStreamConfig, StreamSpec, TimeoutSpec
from query_stream.conversation import Conversation
from query_stream.session.cancel import CancelToken
from query_stream.session.runner import SessionRunner
from query_stream.stream.client import QueryRequest
from query_stream.types import CancelReason, Cancelled, Err, ErrorCode, Ok, Role


PLAN_MY_DAY = (
    sse({"content": "Section 1..."}, {"content": " Section 2..."})
    + sse({"response_type": "plan_my_day", "tasks": [{"title": "Call Acme"}]},
          event="structured")
)


def _runner(transport, config) -> tuple[SessionRunner, Conversation]:
    conversation = Conversation()
    return SessionRunner(transport, conversation, config), conversation


class TestSuccessfulStream:
    async def test_plan_my_day(self, make_transport, config):
        runner, conversation = _runner(
            make_transport(lambda r: stream_response(PLAN_MY_DAY)), config,
        )
        result, session = await runner.run(QueryRequest("Plan my day"), CancelToken())

        assert isinstance(result, Ok)
        assert result.message.content == "Section 1... Section 2..."
        assert result.message.structured["response_type"] == "plan_my_day"
        assert not result.message.streaming
        assert conversation.messages == (result.message,)
        assert result.message.id == session.message_id

    async def test_chunked_delivery(self, make_transport, config):
        body = sse(*({"content": f"part{i} "} for i in range(10)))
        chunks = [body[i:i + 7] for i in range(0, len(body), 7)]
        runner, _ = _runner(
            make_transport(lambda r: stream_response(drip(chunks))), config,
        )
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert result.message.content == "".join(f"part{i} " for i in range(10))

    async def test_chart_and_provider(self, make_transport, config):
        body = (
            sse({"content": "Pipeline below", "provider": "Claude"})
            + sse({"chartType": "bar", "chartData": [{"stage": "won", "value": 2}],
                   "chartTitle": "Pipeline"}, event="chart")
        )
        runner, _ = _runner(make_transport(lambda r: stream_response(body)), config)
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert result.message.provider == "Claude"
        assert result.message.chart.chart_title == "Pipeline"

    async def test_malformed_frame_recovered(self, make_transport, config):
        body = sse({"content": "a"}) + b"data: {broken\n\n" + sse({"content": "b"})
        runner, _ = _runner(make_transport(lambda r: stream_response(body)), config)
        result, session = await runner.run(QueryRequest("q"), CancelToken())
        assert result.message.content == "ab"
        assert session.reader.parse_errors == 1

    async def test_placeholder_streams_before_commit(self, make_transport, config):
        seen: list[tuple] = []
        body = [sse({"content": "a"}), sse({"content": "b"})]
        runner, conversation = _runner(
            make_transport(lambda r: stream_response(drip(body, delay=0.01))), config,
        )
        conversation.subscribe(seen.append)
        await runner.run(QueryRequest("q", preferred_provider="openai"), CancelToken())

        first = seen[0][0]
        assert first.role is Role.ASSISTANT
        assert first.streaming
        assert first.provider == "openai"
        assert any(m[0].content == "a" and m[0].streaming for m in seen)


class TestFailures:
    async def test_in_stream_error_frame(self, make_transport, config):
        body = sse({"content": "partial"}, {"error": "Rate limit exceeded", "code": "RATE_LIMITED"})
        runner, conversation = _runner(make_transport(lambda r: stream_response(body)), config)
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.RATE_LIMITED
        assert conversation.messages == ()

    async def test_json_error(self, make_transport, config):
        runner, conversation = _runner(
            make_transport(lambda r: json_response({"error": "No AI provider configured"})),
            config,
        )
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert result.error.code == ErrorCode.NO_PROVIDERS
        assert conversation.messages == ()

    async def test_unexpected_json(self, make_transport, config):
        runner, _ = _runner(make_transport(lambda r: json_response({"answer": 42})), config)
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert result.error.code == ErrorCode.UNKNOWN
        assert result.error.retryable

    async def test_network_error(self, make_transport, config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        runner, conversation = _runner(make_transport(handler), config)
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert result.error.code == ErrorCode.NETWORK_ERROR
        assert conversation.messages == ()

    async def test_programming_error_propagates(self, make_transport, config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("bug")

        runner, conversation = _runner(make_transport(handler), config)
        with pytest.raises(RuntimeError):
            await runner.run(QueryRequest("q"), CancelToken())
        assert conversation.messages == ()


class TestTimeoutAndCancel:
    async def test_idle_timeout(self, make_transport):
        config = QueryStreamConfig(
            timeouts=TimeoutSpec(stream=0.1), stream=StreamSpec(throttle_interval=0.0),
        )
        body = drip([sse({"content": "first"}), sse({"content": "never"})], delay=0.05)

        async def stalled():
            async for chunk in body:
                yield chunk
                await asyncio.sleep(10)

        runner, conversation = _runner(
            make_transport(lambda r: stream_response(stalled()), cfg=config), config,
        )
        token = CancelToken()
        result, _ = await runner.run(QueryRequest("q"), token)

        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.TIMEOUT
        assert token.timed_out
        assert conversation.messages == ()

    async def test_slow_but_active_stream_does_not_time_out(self, make_transport):
        config = QueryStreamConfig(
            timeouts=TimeoutSpec(stream=0.1), stream=StreamSpec(throttle_interval=0.0),
        )
        chunks = [sse({"content": str(i)}) for i in range(6)]
        runner, _ = _runner(
            make_transport(lambda r: stream_response(drip(chunks, delay=0.05)), cfg=config),
            config,
        )
        result, _ = await runner.run(QueryRequest("q"), CancelToken())
        assert isinstance(result, Ok)
        assert result.message.content == "012345"

    async def test_cancel_mid_stream_is_silent(self, make_transport, config):
        got_content = asyncio.Event()

        async def endless():
            yield sse({"content": "Here"})
            await asyncio.sleep(10)

        runner, conversation = _runner(
            make_transport(lambda r: stream_response(endless())), config,
        )
        conversation.subscribe(
            lambda msgs: got_content.set() if msgs and msgs[-1].content else None,
        )
        token = CancelToken()
        task = asyncio.ensure_future(runner.run(QueryRequest("q"), token))
        await asyncio.wait_for(got_content.wait(), 1)
        token.cancel(CancelReason.USER)
        result, session = await task

        assert isinstance(result, Cancelled)
        assert result.reason is CancelReason.USER
        assert session.committed
        assert conversation.messages == ()

    async def test_cancel_before_request(self, make_transport, config):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return stream_response(sse({"content": "x"}))

        runner, conversation = _runner(make_transport(handler), config)
        token = CancelToken()
        token.cancel(CancelReason.SUPERSEDED)
        result, _ = await runner.run(QueryRequest("q"), token)
        assert isinstance(result, Cancelled)
        assert calls == []
        assert conversation.messages == ()
