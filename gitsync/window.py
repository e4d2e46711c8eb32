"""Per-peer send window driven by RTT statistics."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Callable

from gitsync.congestion import INITIAL_WINDOW, MIN_WINDOW, CongestionState

_MIN_SEND_INTERVAL = 0.010
_RTT_ALPHA = 0.125
_RTT_BETA = 0.25


class RTTStats:
    """Round-trip time statistics in seconds over a bounded sample window."""

    def __init__(self, max_samples: int = 100) -> None:
        self._lock = threading.Lock()
        self._min_rtt = 0.0
        self._smooth_rtt = 0.0
        self._rtt_var = 0.0
        self._samples: deque[float] = deque(maxlen=max_samples)

    def add_sample(self, rtt: float) -> None:
        """Record one round-trip sample."""
        with self._lock:
            if self._min_rtt == 0 or rtt < self._min_rtt:
                self._min_rtt = rtt
            if self._smooth_rtt == 0:
                self._smooth_rtt = rtt
                self._rtt_var = rtt / 2
            else:
                diff = abs(rtt - self._smooth_rtt)
                self._rtt_var = self._rtt_var * (1 - _RTT_BETA) + diff * _RTT_BETA
                self._smooth_rtt = (
                    self._smooth_rtt * (1 - _RTT_ALPHA) + rtt * _RTT_ALPHA
                )
            self._samples.append(rtt)

    @property
    def smoothed_rtt(self) -> float:
        with self._lock:
            return self._smooth_rtt

    @property
    def rtt_variance(self) -> float:
        with self._lock:
            return self._rtt_var

    @property
    def min_rtt(self) -> float:
        with self._lock:
            return self._min_rtt


class WindowController:
    """Congestion window that also paces sends and scales with RTT drift."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._window = float(INITIAL_WINDOW)
        self.ssthresh = math.inf
        self.state = CongestionState.SLOW_START
        self.rtt_stats = RTTStats(100)
        self._last_updated = clock()

    @property
    def window(self) -> float:
        """Current window size in bytes."""
        with self._lock:
            return self._window

    def can_send(self, bytes_in_flight: float) -> bool:
        """Whether a send fits the window and enough time has passed since the last one."""
        with self._lock:
            now = self._clock()
            if now - self._last_updated < _MIN_SEND_INTERVAL:
                return False
            allowed = bytes_in_flight < self._window
            if allowed:
                self._last_updated = now
            return allowed

    def on_ack(self, nbytes: int) -> None:
        with self._lock:
            if self.state is CongestionState.SLOW_START:
                self._window = min(self._window + nbytes, self.ssthresh)
                if self._window >= self.ssthresh:
                    self.state = CongestionState.CONGESTION_AVOIDANCE
            elif self.state is CongestionState.CONGESTION_AVOIDANCE:
                self._window += nbytes * (nbytes / self._window)
            else:
                self.state = CongestionState.CONGESTION_AVOIDANCE
                self._window = self.ssthresh
            self._last_updated = self._clock()

    def on_loss(self) -> None:
        with self._lock:
            self.ssthresh = max(self._window / 2, MIN_WINDOW)
            self._window = self.ssthresh
            self.state = CongestionState.CONGESTION_AVOIDANCE
            self._last_updated = self._clock()

    def on_timeout(self) -> None:
        with self._lock:
            self.ssthresh = max(self._window / 2, MIN_WINDOW)
            self._window = float(INITIAL_WINDOW)
            self.state = CongestionState.SLOW_START
            self._last_updated = self._clock()

    def update_rtt(self, rtt: float) -> None:
        """Record an RTT sample and scale the window by min/smoothed RTT."""
        if rtt > 0:
            self.rtt_stats.add_sample(rtt)
        with self._lock:
            smoothed = self.rtt_stats.smoothed_rtt
            if smoothed > 0:
                self._window *= self.rtt_stats.min_rtt / smoothed

    @property
    def rtt(self) -> float:
        """Smoothed RTT in seconds."""
        return self.rtt_stats.smoothed_rtt