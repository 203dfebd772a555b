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
    Bounded async queue with explicit overflow handling.

    - put() never blocks: when full the caller may name an eviction victim, else the item is refused.
    - put_wait() blocks until there is room (used for speech frames so the producer is back-pressured).
    - get_prefer() lets a single consumer pull priority items ahead of FIFO order.
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
            self._cv.notify_all()
            return True

    async def put_wait(self, item: T) -> None:
        async with self._cv:
            while len(self._q) >= self._maxsize and not self._closed:
                await self._cv.wait()
            if self._closed:
                raise QueueClosed()
            self._q.append(item)
            self._cv.notify_all()

    async def get(self) -> T:
        return await self.get_prefer(lambda _: False)

    async def get_prefer(self, pred: Predicate[T]) -> T:
        """
        Dequeue the first item matching pred, else the oldest item.
        """
        async with self._cv:
            while not self._q and not self._closed:
                await self._cv.wait()

            if not self._q:
                raise QueueClosed()

            picked: Optional[T] = None
            for existing in self._q:
                if pred(existing):
                    picked = existing
                    break
            if picked is not None:
                self._q.remove(picked)
            else:
                picked = self._q.popleft()
            # Wake producers parked in put_wait().
            self._cv.notify_all()
            return picked

    async def close(self) -> None:
        async with self._cv:
            self._closed = True
            self._cv.notify_all()

    async def drop_where(self, pred: Predicate[T]) -> int:
        async with self._cv:
            before = len(self._q)
            self._q = deque(x for x in self._q if not pred(x))
            dropped = before - len(self._q)
            if dropped:
                self._cv.notify_all()
            return dropped

    async def evict_one_where(self, pred: Predicate[T]) -> bool:
        async with self._cv:
            for existing in self._q:
                if pred(existing):
                    self._q.remove(existing)
                    self._cv.notify_all()
                    return True
            return False
