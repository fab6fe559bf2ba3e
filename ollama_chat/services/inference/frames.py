import asyncio
import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import structlog

logger = structlog.get_logger()


class FrameDecoder:
    """Incremental decoder for newline-delimited JSON.

    Bytes can be fed in arbitrary chunks; a frame or a multi-byte character
    split across two chunks is reassembled before parsing. Lines that are not
    valid JSON are skipped and counted in ``skipped``.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, data: bytes) -> list[Any]:
        """Consume one chunk and return every frame it completed, in order."""
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[Any]:
        """Finish the stream, parsing whatever is left in the buffer."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: list[str]) -> list[Any]:
        frames = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                frames.append(json.loads(line))
            except json.JSONDecodeError as e:
                self.skipped += 1
                logger.debug("malformed_frame", error=str(e), line=line[:200])
        return frames


async def iter_frames(
    chunks: AsyncIterable[bytes],
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[Any]:
    """Lazily decode a byte stream into JSON frames.

    ``cancel`` is checked before every read; once it is set the generator
    returns without flushing, leaving teardown to the caller's context
    managers.
    """
    def cancelled() -> bool:
        return cancel is not None and cancel.is_set()

    decoder = FrameDecoder()
    reader = aiter(chunks)
    while not cancelled():
        try:
            chunk = await anext(reader)
        except StopAsyncIteration:
            break
        for frame in decoder.feed(chunk):
            if cancelled():
                return
            yield frame
    else:
        return
    for frame in decoder.flush():
        yield frame
