from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Generic, Optional, TypeVar


T = TypeVar("T")


class QueueClosed(Exception):
    pass


Predicate = Callable[[T], bool]


class BoundedDequeQueue(Generic[T]):
    """
    Bounded async queue with explicit overflow policies.

    - put() never blocks: when full it either evicts a victim chosen by the
      caller's predicate or refuses the item.
    - put_drop_oldest() is the audio policy: the oldest frame is discarded.
    - Single consumer, any number of producers.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = int(maxsize)
        self._q: Deque[T] = deque()
        self._closed = False
        self._cv = asyncio.Condition()

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def qsize(self) -> int:
        return len(self._q)

    def closed(self) -> bool:
        return self._closed

    async def put(self, item: T, *, evict: Optional[Predicate[T]] = None) -> bool:
        async with self._cv:
            if self._closed:
                return False
            if len(self._q) >= self._maxsize and evict is not None:
                for existing in list(self._q):
                    if evict(existing):
                        self._q.remove(existing)
                        break
            if len(self._q) >= self._maxsize:
                return False
            self._q.append(item)
            self._cv.notify()
            return True

    async def put_drop_oldest(self, item: T) -> int:
        """Append item, discarding from the head while full. Returns the drop count (-1 if closed)."""
        async with self._cv:
            if self._closed:
                return -1
            dropped = 0
            while len(self._q) >= self._maxsize:
                self._q.popleft()
                dropped += 1
            self._q.append(item)
            self._cv.notify()
            return dropped

    async def get(self) -> T:
        async with self._cv:
            while not self._q and not self._closed:
                await self._cv.wait()
            if self._q:
                return self._q.popleft()
            raise QueueClosed()

    async def get_prefer(self, pred: Predicate[T]) -> T:
        """
        Dequeue the first item matching pred, else FIFO.
        """
        async with self._cv:
            while not self._q and not self._closed:
                await self._cv.wait()
            if not self._q:
                raise QueueClosed()
            for existing in self._q:
                if pred(existing):
                    self._q.remove(existing)
                    return existing
            return self._q.popleft()

    async def close(self) -> None:
        async with self._cv:
            self._closed = True
            self._cv.notify_all()

    async def drop_where(self, pred: Predicate[T]) -> int:
        async with self._cv:
            before = len(self._q)
            self._q = deque(x for x in self._q if not pred(x))
            dropped = before - len(self._q)
            if dropped > 0:
                self._cv.notify_all()
            return dropped

    def drain_nowait(self) -> list[T]:
        items = list(self._q)
        self._q.clear()
        return items
