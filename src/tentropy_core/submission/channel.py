"""Producer/consumer channel between a running submission and its stream."""

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Channel(Generic[T]):
    """Unbounded FIFO that one producer closes and one consumer drains.

    ``send`` is synchronous so sandbox output callbacks can push chunks
    without awaiting. Items sent after ``close`` are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> bool:
        """Enqueue an item. Returns False if the channel is closed."""
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
