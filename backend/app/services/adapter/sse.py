"""
Server-sent events wire parser.

Turns a raw upstream byte stream into discrete frames. Vendor-agnostic:
adapters decide what the `event` and `data` values mean.
"""
import codecs
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional


@dataclass(frozen=True)
class SSEFrame:
    """One blank-line-terminated block."""
    event: Optional[str]
    data: str


class SSEParser:
    """
    Incremental, single-use SSE frame parser.

    Bytes are buffered until a blank line closes a block; only complete
    blocks become frames. Whatever is left when the source closes is
    dropped (still readable through `pending`, never emitted).
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        """Unterminated text not yet part of any frame."""
        return self._buffer

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> List[SSEFrame]:
        """Add bytes; return the frames they complete, in order."""
        if self._closed:
            raise RuntimeError("SSEParser is single-use and already closed")

        # CRLF may straddle two reads, so normalize on the joined buffer
        self._buffer = (self._buffer + self._decoder.decode(data)).replace("\r\n", "\n")

        frames: List[SSEFrame] = []
        idx = self._buffer.find("\n\n")
        while idx != -1:
            block = self._buffer[:idx]
            self._buffer = self._buffer[idx + 2:]
            frame = self._parse_block(block)
            if frame is not None:
                frames.append(frame)
            idx = self._buffer.find("\n\n")
        return frames

    def close(self) -> str:
        """Finish the stream. Returns the discarded remainder."""
        if self._closed:
            return ""
        self._closed = True
        remainder = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = remainder
        return remainder

    @staticmethod
    def _parse_block(block: str) -> Optional[SSEFrame]:
        event: Optional[str] = None
        data_parts: List[str] = []

        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_parts.append(line[len("data:"):].strip())

        data = "".join(data_parts)
        if not data:
            return None
        return SSEFrame(event=event or None, data=data)


async def iter_frames(
    chunks: AsyncIterator[bytes],
    parser: Optional[SSEParser] = None,
) -> AsyncIterator[SSEFrame]:
    """Lazily yield frames from an async byte iterator until it is exhausted."""
    parser = parser or SSEParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    parser.close()
