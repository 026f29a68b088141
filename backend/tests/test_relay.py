import asyncio

import pytest

from app.services.chat import SSERelay, encode_event
from conftest import parse_sse_frames


async def drain(relay: SSERelay, producer) -> list[bytes]:
    return [frame async for frame in relay.stream(producer)]


def test_event_is_encoded_as_one_frame():
    frame = encode_event("delta", {"delta": "héllo"})
    assert frame == 'event: delta\ndata: {"delta": "héllo"}\n\n'.encode("utf-8")


async def test_frames_arrive_in_order_and_done_ends_the_stream():
    async def producer(relay):
        await relay.send("delta", {"delta": "a"})
        await relay.send("delta", {"delta": "b"})
        await relay.send("done", {"message": {"content": "ab"}})

    frames = await drain(SSERelay(), producer)

    assert [parse_sse_frames(f)[0] for f in frames] == [
        ("delta", {"delta": "a"}),
        ("delta", {"delta": "b"}),
        ("done", {"message": {"content": "ab"}}),
    ]


async def test_nothing_may_follow_a_terminal_event():
    relay = SSERelay()
    await relay.send("error", {"message": "boom"})

    with pytest.raises(RuntimeError):
        await relay.send("delta", {"delta": "late"})
    assert relay.finished


async def test_crashing_producer_ends_with_stream_error():
    async def producer(relay):
        await relay.send("delta", {"delta": "a"})
        raise ValueError("unexpected")

    frames = parse_sse_frames(b"".join(await drain(SSERelay(), producer)))

    assert frames[-1] == ("error", {"message": "Stream error", "code": "internal_error"})
    assert len(frames) == 2


async def test_producer_returning_without_terminal_gets_an_error():
    async def producer(relay):
        await relay.send("delta", {"delta": "a"})

    frames = parse_sse_frames(b"".join(await drain(SSERelay(), producer)))

    assert [event for event, _ in frames] == ["delta", "error"]


async def test_consumer_leaving_cancels_the_producer():
    cancelled = asyncio.Event()

    async def producer(relay):
        await relay.send("delta", {"delta": "a"})
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    relay = SSERelay()
    frames = relay.stream(producer)
    first = await frames.__anext__()
    await frames.aclose()
    await asyncio.wait([relay.task])

    assert parse_sse_frames(first) == [("delta", {"delta": "a"})]
    assert cancelled.is_set()
    assert relay.task.cancelled()
