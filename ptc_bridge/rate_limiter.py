"""Fixed-window rate limiting for tool calls."""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

WINDOW_SECONDS = 60


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_in_seconds: int


@dataclass
class _Counter:
    count: int
    window_reset_time: float


class RateLimiter(ABC):
    """Counts calls per key within a one-minute window."""

    @abstractmethod
    def check(self, key: str, max_per_minute: int) -> RateLimitStatus:
        """Record one call for ``key`` and report whether it is allowed."""


class InMemoryRateLimiter(RateLimiter):
    """
    Process-local fixed-window limiter.

    A window opens lazily on the first call after the previous window's
    reset time and always lasts 60 seconds. Calls are counted until the
    window resets, so up to 2x ``max_per_minute`` calls can land around a
    window boundary. Expired counters are swept at most once per window.

    Thread-safe: every read-modify-write happens under one lock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: dict[str, _Counter] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def check(self, key: str, max_per_minute: int) -> RateLimitStatus:
        with self._lock:
            now = self._clock()
            self._sweep(now)

            counter = self._counters.get(key)
            if counter is None or now > counter.window_reset_time:
                if max_per_minute < 1:
                    return RateLimitStatus(allowed=False, remaining=0, reset_in_seconds=WINDOW_SECONDS)
                self._counters[key] = _Counter(count=1, window_reset_time=now + WINDOW_SECONDS)
                return RateLimitStatus(
                    allowed=True,
                    remaining=max_per_minute - 1,
                    reset_in_seconds=WINDOW_SECONDS
                )

            reset_in = math.ceil(counter.window_reset_time - now)
            if counter.count >= max_per_minute:
                return RateLimitStatus(allowed=False, remaining=0, reset_in_seconds=reset_in)

            counter.count += 1
            return RateLimitStatus(
                allowed=True,
                remaining=max_per_minute - counter.count,
                reset_in_seconds=reset_in
            )

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        expired = [k for k, c in self._counters.items() if now > c.window_reset_time]
        for key in expired:
            del self._counters[key]
        self._last_sweep = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
