"""
Outbound SSE relay.

Exchanges publish `delta`, `done` and `error` events through `send`; the
HTTP response iterates `stream`. Each event is encoded into one bytes
frame before it is queued, so a partially written frame never reaches
the transport.
"""
import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_EVENTS = frozenset({"done", "error"})

Producer = Callable[["SSERelay"], Awaitable[None]]


def encode_event(event: str, payload: Any) -> bytes:
    data = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


class SSERelay:
    """
    One relay per exchange. Exactly one terminal event (`done` or `error`)
    is sent, and it is always the last frame.
    """

    def __init__(self):
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._finished = False
        self._task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The producer task, once `stream` has started."""
        return self._task

    async def send(self, event: str, payload: Any) -> None:
        if self._finished:
            raise RuntimeError(f"Cannot send {event!r}: relay already finished")

        frame = encode_event(event, payload)
        if event in TERMINAL_EVENTS:
            self._finished = True
        self._queue.put_nowait(frame)
        if self._finished:
            self._queue.put_nowait(None)

    async def _run(self, producer: Producer) -> None:
        try:
            await producer(self)
        except Exception:
            logger.exception("Stream producer failed")
        if not self._finished:
            await self.send("error", {"message": "Stream error", "code": "internal_error"})

    async def stream(self, producer: Producer) -> AsyncIterator[bytes]:
        """
        Run `producer(relay)` in its own task and yield its frames.

        If the consumer stops early (client disconnect), the producer task
        is cancelled. It is not awaited here: the surrounding response may
        itself be inside a cancelled scope.
        """
        if self._task is not None:
            raise RuntimeError("SSERelay.stream can only run once")
        self._task = asyncio.create_task(self._run(producer))
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if not self._finished and not self._task.done():
                logger.info("Client went away, cancelling exchange")
                self._task.cancel()
