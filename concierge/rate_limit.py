from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class _Window:
    count: int
    reset_at_ms: int


@dataclass(frozen=True, slots=True)
class RateDecision:
    allowed: bool
    count: int
    retry_after_ms: int = 0


class FixedWindowRateLimiter:
    """
    Per-key fixed window counter. The window starts on a key's first hit; expired windows are
    swept at most once per window length so the map stays bounded by active clients.
    """

    def __init__(self, *, limit: int, window_ms: int, now_ms: Callable[[], int]) -> None:
        if limit <= 0 or window_ms <= 0:
            raise ValueError("limit and window_ms must be > 0")
        self.limit = int(limit)
        self.window_ms = int(window_ms)
        self._now_ms = now_ms
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}
        self._next_sweep_ms = 0

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> RateDecision:
        now = self._now_ms()
        with self._lock:
            if now >= self._next_sweep_ms:
                self._sweep(now)
            w = self._windows.get(key)
            if w is None or now > w.reset_at_ms:
                w = self._windows[key] = _Window(count=0, reset_at_ms=now + self.window_ms)
            w.count += 1
            if w.count > self.limit:
                return RateDecision(allowed=False, count=w.count, retry_after_ms=max(0, w.reset_at_ms - now))
            return RateDecision(allowed=True, count=w.count)

    def _sweep(self, now: int) -> None:
        for key in [k for k, w in self._windows.items() if now > w.reset_at_ms]:
            del self._windows[key]
        self._next_sweep_ms = now + self.window_ms
