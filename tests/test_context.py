import asyncio

import pytest

from helpers import connected_context, wait_for


@pytest.mark.asyncio
async def test_events_arrive_in_publish_order():
    ctx, _ = connected_context()
    received = []

    async def slow_listener(event_type, data):
        # Later events must not overtake this one
        await asyncio.sleep(0.001 if data["latency_ms"] % 2 else 0)
        received.append(data["latency_ms"])

    ctx.on_event(slow_listener)
    for ms in range(1, 51):
        ctx.set_latency(float(ms))

    await wait_for(lambda: len(received) == 50)
    assert received == [float(ms) for ms in range(1, 51)]


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_delivery():
    ctx, _ = connected_context()
    received = []

    async def broken(event_type, data):
        raise RuntimeError("listener failed")

    async def listener(event_type, data):
        received.append(event_type)

    ctx.on_event(broken)
    ctx.on_event(listener)
    ctx.set_latency(5.0)
    ctx.set_latency(None)

    await wait_for(lambda: len(received) == 2)
    assert received == ["latency", "latency"]


@pytest.mark.asyncio
async def test_close_drops_undelivered_events():
    ctx, _ = connected_context()
    received = []

    async def listener(event_type, data):
        received.append(event_type)

    ctx.on_event(listener)
    ctx.set_latency(5.0)
    ctx.close()
    await asyncio.sleep(0.01)

    assert received == []
