"""TCP-style congestion window with RTT-based retransmission timeout."""

from __future__ import annotations

import math
import threading
from enum import Enum

INITIAL_WINDOW = 1024 * 10
MIN_WINDOW = 1024 * 10
MIN_RTO = 1.0
MAX_RTO = 60.0

_RTT_ALPHA = 0.125
_RTT_BETA = 0.25


class CongestionState(Enum):
    """Phase of the congestion control state machine."""

    SLOW_START = "slow_start"
    CONGESTION_AVOIDANCE = "congestion_avoidance"
    FAST_RECOVERY = "fast_recovery"


class CongestionController:
    """Congestion window in bytes; round-trip times in seconds."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._cwnd = float(INITIAL_WINDOW)
        self.ssthresh = math.inf
        self.state = CongestionState.SLOW_START
        self._rtt = 0.0
        self._rtt_var = 0.0
        self.last_window_size = 0.0

    def update_rtt(self, sample_rtt: float) -> None:
        """Fold a round-trip sample into the smoothed RTT and its variance."""
        with self._lock:
            if self._rtt == 0:
                self._rtt = sample_rtt
                self._rtt_var = sample_rtt / 2
            else:
                diff = abs(sample_rtt - self._rtt)
                self._rtt_var = (1 - _RTT_BETA) * self._rtt_var + _RTT_BETA * diff
                self._rtt = (1 - _RTT_ALPHA) * self._rtt + _RTT_ALPHA * sample_rtt

    def on_ack(self, nbytes: int) -> None:
        """Grow the window after an acknowledged transmission."""
        with self._lock:
            if self.state is CongestionState.SLOW_START:
                self._cwnd += nbytes
                if self._cwnd >= self.ssthresh:
                    self.state = CongestionState.CONGESTION_AVOIDANCE
            elif self.state is CongestionState.CONGESTION_AVOIDANCE:
                self._cwnd += nbytes * nbytes / self._cwnd
            else:
                self._cwnd = self.ssthresh
                self.state = CongestionState.CONGESTION_AVOIDANCE
            self.last_window_size = self._cwnd

    def on_loss(self) -> None:
        """Halve the window (never below the minimum) after a loss."""
        with self._lock:
            self.ssthresh = max(self._cwnd / 2, MIN_WINDOW)
            self._cwnd = self.ssthresh
            self.state = CongestionState.CONGESTION_AVOIDANCE

    def on_timeout(self) -> None:
        """Reset to the initial window and re-enter slow start."""
        with self._lock:
            self.ssthresh = max(self._cwnd / 2, MIN_WINDOW)
            self._cwnd = float(INITIAL_WINDOW)
            self.state = CongestionState.SLOW_START

    @property
    def window(self) -> float:
        """Current congestion window in bytes."""
        with self._lock:
            return self._cwnd

    @property
    def rtt(self) -> float:
        """Smoothed round-trip time in seconds."""
        with self._lock:
            return self._rtt

    def should_backoff(self, bytes_in_flight: float) -> bool:
        """True when the bytes in flight fill the window."""
        with self._lock:
            return bytes_in_flight >= self._cwnd

    def calculate_backoff(self) -> float:
        """Retransmission timeout in seconds, bounded to [1, 60]."""
        with self._lock:
            rto = self._rtt + 4 * self._rtt_var
        return min(max(rto, MIN_RTO), MAX_RTO)

    def transmission_quota(self, bytes_in_flight: float) -> float:
        """Bytes that may still be sent without exceeding the window."""
        with self._lock:
            return max(self._cwnd - bytes_in_flight, 0.0)