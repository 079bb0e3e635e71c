import asyncio

import pytest

from chat_core.engine.events import ChatEvent, EventStream


@pytest.mark.asyncio
async def test_subscribers_receive_events_in_order():
    stream = EventStream()
    first = stream.subscribe()
    second = stream.subscribe()
    stream.publish(ChatEvent(kind="partial", text="a"))
    stream.publish(ChatEvent(kind="partial", text="ab"))

    assert [e.text for e in first.drain()] == ["a", "ab"]
    assert [e.text for e in second.drain()] == ["a", "ab"]


@pytest.mark.asyncio
async def test_close_ends_iteration():
    stream = EventStream()
    sub = stream.subscribe()
    received = []

    async def consume():
        async for event in sub:
            received.append(event.kind)

    task = asyncio.create_task(consume())
    stream.publish(ChatEvent(kind="title", text="Trip"))
    stream.close()
    await asyncio.wait_for(task, timeout=1)

    assert received == ["title"]
    assert stream.subscriber_count == 0
    late = stream.subscribe()
    assert late.drain() == []


@pytest.mark.asyncio
async def test_unsubscribe():
    stream = EventStream()
    sub = stream.subscribe()
    sub.close()
    stream.publish(ChatEvent(kind="error", text="boom"))
    assert sub.drain() == []
    assert stream.subscriber_count == 0
