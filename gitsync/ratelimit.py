"""Token-bucket limiters and bandwidth errors."""

from __future__ import annotations

import math
import threading
import time
from typing import Callable


class BandwidthError(Exception):
    """Raised when bandwidth cannot be granted."""


class CongestionLimitError(BandwidthError):
    """Raised when the congestion window has no room for a transfer."""

    def __init__(self, message: str = "congestion limit exceeded") -> None:
        super().__init__(message)


class TokenBucket:
    """Non-blocking token bucket refilled at `limit` tokens per second."""

    def __init__(self, limit: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._limit = limit
        self._tokens = float(limit)
        self._last_refill = clock()

    @property
    def limit(self) -> int:
        return self._limit

    def acquire(self, nbytes: int) -> None:
        """Take `nbytes` tokens or raise BandwidthError."""
        with self._lock:
            now = self._clock()
            elapsed = now - self._last_refill
            self._tokens = min(float(self._limit), self._tokens + self._limit * elapsed)
            self._last_refill = now
            if self._tokens < nbytes:
                raise BandwidthError("rate limit exceeded")
            self._tokens -= nbytes

    def set_limit(self, limit: int) -> None:
        with self._lock:
            self._limit = limit


class Limiter:
    """Blocking token bucket with a burst size and a per-call deadline."""

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def _advance(self, now: float) -> None:
        if now > self._last:
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.rate)
            self._last = now

    def wait(self, n: int, timeout: float) -> None:
        """Block until `n` tokens are available, failing if that takes longer than `timeout` seconds."""
        if timeout <= 0:
            raise BandwidthError("deadline exceeded")
        if math.isinf(self.rate):
            return
        if n > self.burst:
            raise BandwidthError(f"requested {n} exceeds limiter's burst {self.burst}")
        with self._lock:
            self._advance(self._clock())
            remaining = self._tokens - n
            if remaining >= 0:
                delay = 0.0
            elif self.rate > 0:
                delay = -remaining / self.rate
            else:
                delay = math.inf
            if delay > timeout:
                raise BandwidthError(f"waiting for {n} tokens would exceed the deadline")
            self._tokens = remaining
        if delay > 0:
            self._sleep(delay)