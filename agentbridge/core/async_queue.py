"""Unbounded async channel with an explicit finished state.

Adapts push-style producers (callbacks, a background pump task) into
plain ``async for`` consumption without polling.

Usage:
    queue: AsyncQueue[int] = AsyncQueue()

    # producer side
    queue.put(1)
    queue.finish()

    # consumer side
    async for item in queue:
        ...
"""

import asyncio
from collections import deque
from typing import Deque, Generic, List, Optional, TypeVar

T = TypeVar("T")


class QueueFinished(Exception):
    """Raised by AsyncQueue.get() when the queue is empty and finished."""


class AsyncQueue(Generic[T]):
    """FIFO channel for one logical consumer.

    Multiple producers may call ``put`` safely from the event loop thread.
    Items put after ``finish()`` are dropped.
    """

    def __init__(self) -> None:
        self._items: Deque[T] = deque()
        self._finished = False
        self._waiter: Optional[asyncio.Future[None]] = None

    @property
    def finished(self) -> bool:
        """Whether finish() has been called."""
        return self._finished

    def __len__(self) -> int:
        return len(self._items)

    def put(self, item: T) -> None:
        """Append an item and wake a waiting consumer. No-op after finish()."""
        if self._finished:
            return
        self._items.append(item)
        self._wake()

    def finish(self) -> None:
        """Mark that no more items will arrive and wake any waiter."""
        self._finished = True
        self._wake()

    def drain(self) -> List[T]:
        """Remove and return every buffered item without waiting."""
        items = list(self._items)
        self._items.clear()
        return items

    async def get(self) -> T:
        """Return the next item, waiting if the buffer is empty.

        Raises:
            QueueFinished: If the queue is empty and finished
        """
        while True:
            if self._items:
                return self._items.popleft()
            if self._finished:
                raise QueueFinished()

            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def __aiter__(self) -> "AsyncQueue[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except QueueFinished:
            raise StopAsyncIteration
