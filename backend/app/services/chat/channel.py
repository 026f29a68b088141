"""
Bounded hand-off between an upstream reader and the exchange consuming it.

The adapter stream runs in its own producer task and pushes events into a
bounded queue; the consumer pulls them in order. Closing the channel
cancels the producer, which closes the adapter iterator and with it the
upstream HTTP response.
"""
import asyncio
from contextlib import aclosing
from typing import AsyncIterator, Optional

from app.core.config import settings
from app.services.adapter import StreamEvent

_END = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


class DeltaChannel:
    """
    Usage:
        async with DeltaChannel(adapter.stream_chat(...)) as channel:
            async for event in channel:
                ...
    """

    def __init__(self, source: AsyncIterator[StreamEvent], maxsize: Optional[int] = None):
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize or settings.STREAM_QUEUE_SIZE)
        self._producer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._producer is not None and not self._producer.done()

    def start(self) -> None:
        if self._producer is not None:
            raise RuntimeError("DeltaChannel already started")
        self._producer = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            async with aclosing(self._source) as source:
                async for event in source:
                    await self._queue.put(event)
        except Exception as e:
            await self._queue.put(_Failure(e))
            return
        await self._queue.put(_END)

    def __aiter__(self) -> "DeltaChannel":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._producer is None:
            raise RuntimeError("DeltaChannel not started")
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def aclose(self) -> None:
        """Stop the producer and wait for the upstream to be released."""
        if self._producer is None or self._producer.done():
            return
        self._producer.cancel()
        # asyncio.wait does not re-raise the producer's cancellation
        await asyncio.wait([self._producer])

    async def __aenter__(self) -> "DeltaChannel":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
