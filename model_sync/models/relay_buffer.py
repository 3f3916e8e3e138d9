"""
Bounded relay buffer between a download task and an upload task
"""

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, Optional

import structlog

from ..core.cancellation import CancellationToken
from ..core.errors import ModelSyncError, RunCancelled

logger = structlog.get_logger(__name__)


class BufferClosed(ModelSyncError):
    """Write attempted after the consumer side went away"""


class RelayBuffer:
    """
    Fixed capacity byte queue with backpressure.

    ``write`` suspends while the buffered byte count would exceed ``capacity`` and
    ``read`` suspends until data arrives or the writer closes. ``close`` marks end of
    stream; ``close_with_error`` fails every pending and future read (and write)
    with the given error.

    Args:
        capacity: Maximum number of buffered bytes
        cancel_token: Optional token; when it fires, blocked calls raise RunCancelled
    """

    def __init__(self, capacity: int, cancel_token: Optional[CancellationToken] = None):
        if capacity <= 0:
            raise ValueError("Relay buffer capacity must be positive")
        self.capacity = capacity
        self.cancel_token = cancel_token
        self._chunks: Deque[memoryview] = deque()
        self._buffered = 0
        self._closed = False
        self._error: Optional[BaseException] = None
        self._condition = asyncio.Condition()
        self._watcher: Optional[asyncio.Task] = None
        self.bytes_written = 0
        self.bytes_read = 0
        self.high_water_mark = 0

    @property
    def buffered(self) -> int:
        return self._buffered

    @property
    def closed(self) -> bool:
        return self._closed

    def _watch_cancellation(self) -> None:
        if self.cancel_token is not None and self._watcher is None and not self._closed:
            self._watcher = asyncio.ensure_future(self._on_cancel())

    async def _on_cancel(self) -> None:
        await self.cancel_token.wait()
        await self.close_with_error(RunCancelled("Transfer cancelled by user"))

    def _stop_watching(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()

    async def write(self, data: bytes) -> None:
        """Append data, waiting for the reader to drain space when full"""
        if not data:
            return
        self._watch_cancellation()
        view = memoryview(bytes(data))
        async with self._condition:
            while view:
                if self._error is not None:
                    raise self._error
                if self._closed:
                    raise BufferClosed("Relay buffer closed, consumer is gone")
                free = self.capacity - self._buffered
                if free <= 0:
                    await self._condition.wait()
                    continue
                piece = view[:free]
                view = view[len(piece):]
                self._chunks.append(piece)
                self._buffered += len(piece)
                self.bytes_written += len(piece)
                self.high_water_mark = max(self.high_water_mark, self._buffered)
                self._condition.notify_all()

    async def read(self, max_bytes: int = 65536) -> bytes:
        """Return up to max_bytes; an empty result means end of stream"""
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._watch_cancellation()
        async with self._condition:
            while not self._chunks:
                if self._error is not None:
                    raise self._error
                if self._closed:
                    return b""
                await self._condition.wait()
            out = bytearray()
            while self._chunks and len(out) < max_bytes:
                chunk = self._chunks[0]
                take = min(len(chunk), max_bytes - len(out))
                out += chunk[:take]
                if take == len(chunk):
                    self._chunks.popleft()
                else:
                    self._chunks[0] = chunk[take:]
            self._buffered -= len(out)
            self.bytes_read += len(out)
            self._condition.notify_all()
            return bytes(out)

    async def close(self) -> None:
        """Signal end of stream; buffered data stays readable"""
        async with self._condition:
            self._closed = True
            self._stop_watching()
            self._condition.notify_all()

    async def close_with_error(self, error: BaseException) -> None:
        """Fail all pending and future reads and writes with error"""
        async with self._condition:
            if self._error is None:
                self._error = error
            self._closed = True
            self._chunks.clear()
            self._buffered = 0
            self._stop_watching()
            self._condition.notify_all()
        logger.debug("Relay buffer closed with error", error=str(error))

    async def iter_chunks(self, chunk_size: int = 65536) -> AsyncIterator[bytes]:
        """Async iterator over the stream, suitable as an aiohttp request body"""
        while True:
            chunk = await self.read(chunk_size)
            if not chunk:
                return
            yield chunk
