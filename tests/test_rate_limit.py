from __future__ import annotations

import pytest

from concierge.rate_limit import FixedWindowRateLimiter


class _Now:
    def __init__(self) -> None:
        self.ms = 0

    def __call__(self) -> int:
        return self.ms


def test_limit_per_key_within_window() -> None:
    now = _Now()
    lim = FixedWindowRateLimiter(limit=3, window_ms=1000, now_ms=now)
    assert [lim.hit("a").allowed for _ in range(4)] == [True, True, True, False]
    # Other clients have their own window.
    assert lim.hit("b").allowed

    now.ms = 400
    denied = lim.hit("a")
    assert not denied.allowed
    assert denied.count == 5
    assert denied.retry_after_ms == 600


def test_window_resets_after_expiry() -> None:
    now = _Now()
    lim = FixedWindowRateLimiter(limit=1, window_ms=1000, now_ms=now)
    assert lim.hit("a").allowed
    assert not lim.hit("a").allowed
    now.ms = 1001
    decision = lim.hit("a")
    assert decision.allowed
    assert decision.count == 1


def test_expired_windows_are_swept() -> None:
    now = _Now()
    lim = FixedWindowRateLimiter(limit=5, window_ms=1000, now_ms=now)
    for i in range(10):
        lim.hit(f"client-{i}")
    assert len(lim) == 10

    now.ms = 2500
    lim.hit("late")
    assert len(lim) == 1


def test_rejects_non_positive_settings() -> None:
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(limit=0, window_ms=1000, now_ms=_Now())
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(limit=1, window_ms=0, now_ms=_Now())
