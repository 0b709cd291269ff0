"""Tests for the async EventBus."""

import pytest

from query_stream.events.bus import EventBus
from query_stream.types import EventType, SessionEvent


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribeAndEmit:
    @pytest.mark.asyncio
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(event: SessionEvent):
            received.append(event)

        bus.subscribe(EventType.SESSION_STARTED, handler)
        ev = SessionEvent(type=EventType.SESSION_STARTED, data={"message": "hi"})
        await bus.emit(ev)

        assert received == [ev]

    @pytest.mark.asyncio
    async def test_sync_handler_and_publish(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.NOTICE, received.append)
        await bus.publish(EventType.NOTICE, message="Claude answered instead")

        assert len(received) == 1
        assert received[0].data == {"message": "Claude answered instead"}

    @pytest.mark.asyncio
    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.SESSION_ERROR, received.append)
        await bus.publish(EventType.SESSION_COMPLETED)
        assert received == []

    @pytest.mark.asyncio
    async def test_wildcard(self, bus: EventBus):
        received = []
        bus.subscribe("*", lambda e: received.append(e.type))
        await bus.publish(EventType.SESSION_STARTED)
        await bus.publish(EventType.PROVIDER_FALLBACK)
        assert received == [EventType.SESSION_STARTED, EventType.PROVIDER_FALLBACK]

    @pytest.mark.asyncio
    async def test_delivery_order(self, bus: EventBus):
        order = []
        bus.subscribe("*", lambda e: order.append("all"))
        bus.subscribe(EventType.NOTICE, lambda e: order.append("first"))

        async def second(event: SessionEvent):
            order.append("second")

        bus.subscribe(EventType.NOTICE, second)
        await bus.publish(EventType.NOTICE)
        assert order == ["first", "second", "all"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.NOTICE, received.append)
        bus.unsubscribe(EventType.NOTICE, received.append)
        await bus.publish(EventType.NOTICE)
        assert received == []


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_others(self, bus: EventBus):
        received = []

        def bad(event: SessionEvent):
            raise RuntimeError("boom")

        bus.subscribe(EventType.NOTICE, bad)
        bus.subscribe(EventType.NOTICE, received.append)
        await bus.publish(EventType.NOTICE)
        assert len(received) == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_bounded_history(self):
        bus = EventBus(max_history=3)
        for _ in range(5):
            await bus.publish(EventType.NOTICE)
        assert len(bus.history) == 3

    @pytest.mark.asyncio
    async def test_clear(self, bus: EventBus):
        bus.subscribe(EventType.NOTICE, lambda e: None)
        await bus.publish(EventType.NOTICE)
        bus.clear()
        assert bus.history == []
