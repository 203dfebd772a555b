from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


class FakeClock(Clock):
    """
    Manually advanced clock for tests.

    Sleepers park on futures keyed by wake time; advance() releases every sleeper whose
    wake time has been reached. Nothing moves unless a test calls advance().
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._seq = itertools.count()
        self._sleepers: list[tuple[int, int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now_ms + int(ms), next(self._seq), fut))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        main_task = asyncio.ensure_future(awaitable)
        timer = asyncio.create_task(self.sleep_ms(timeout_ms))
        try:
            done, _ = await asyncio.wait({main_task, timer}, return_when=asyncio.FIRST_COMPLETED)
            if main_task not in done:
                main_task.cancel()
                await asyncio.gather(main_task, return_exceptions=True)
                raise TimeoutError(f"operation timed out after {timeout_ms}ms")
            return main_task.result()
        finally:
            for t in (main_task, timer):
                if not t.done():
                    t.cancel()
            await asyncio.gather(main_task, timer, return_exceptions=True)

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Let tasks scheduled in this tick register sleepers against the old time.
        await asyncio.sleep(0)
        self._now_ms += int(ms)
        while self._sleepers and self._sleepers[0][0] <= self._now_ms:
            _, _, fut = heapq.heappop(self._sleepers)
            if not fut.done():
                fut.set_result(None)
        await asyncio.sleep(0)
