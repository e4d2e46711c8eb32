"""Per-peer bandwidth allocation with rate limiting and congestion control."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from gitsync.ratelimit import CongestionLimitError, Limiter
from gitsync.window import WindowController

MAX_INT64 = 2**63 - 1


@dataclass
class ConnectionQuality:
    """Connection metrics for a peer; latency in seconds, bandwidth in bytes/s."""

    bandwidth: float = 0.0
    latency: float = 0.0
    packet_loss: float = 0.0
    last_measured: float | None = None
    reliability_score: float = 0.0


def reliability_score(quality: ConnectionQuality | None) -> float:
    """Weighted 0..1 score from bandwidth, latency and packet loss."""
    if quality is None:
        return 0.0
    bandwidth_score = min(1.0, quality.bandwidth / 1e6)
    # Latency is scaled as microseconds against a bound of 1000.
    latency_score = 1 - min(1.0, quality.latency * 1e9 / 1000.0)
    loss_score = 1 - quality.packet_loss
    return bandwidth_score * 0.3 + latency_score * 0.3 + loss_score * 0.4


class BandwidthManager:
    """Hands out bandwidth to peers and tracks their connection quality."""

    def __init__(
        self,
        global_limit: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if global_limit <= 0:
            global_limit = MAX_INT64
        self.global_limit = global_limit
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, Limiter] = {}
        self._limiters_lock = threading.Lock()
        self._in_flight: dict[str, float] = {}
        self._in_flight_lock = threading.Lock()
        self._connections: dict[str, ConnectionQuality] = {}
        self._controllers: dict[str, WindowController] = {}
        self._lock = threading.RLock()

    @classmethod
    def unlimited(cls) -> BandwidthManager:
        """A manager with no effective global limit."""
        return cls(MAX_INT64)

    def _limiter_for(self, peer_id: str, nbytes: int) -> Limiter:
        with self._limiters_lock:
            limiter = self._limiters.get(peer_id)
            if limiter is None:
                burst = int(max(float(nbytes), self.global_limit / 10))
                limiter = Limiter(
                    self.global_limit // 10, burst, clock=self._clock, sleep=self._sleep
                )
                self._limiters[peer_id] = limiter
            return limiter

    def _controller_for(self, peer_id: str) -> WindowController:
        with self._lock:
            controller = self._controllers.get(peer_id)
            if controller is None:
                controller = WindowController(clock=self._clock)
                self._controllers[peer_id] = controller
            return controller

    def acquire_bandwidth(self, peer_id: str, nbytes: int) -> None:
        """Wait for bandwidth for a transfer; raise BandwidthError if refused."""
        limiter = self._limiter_for(peer_id, nbytes)
        controller = self._controller_for(peer_id)

        with self._in_flight_lock:
            in_flight = self._in_flight.setdefault(peer_id, 0.0)
        if not controller.can_send(in_flight + nbytes):
            raise CongestionLimitError()

        limiter.wait(nbytes, nbytes / self.global_limit)

        with self._in_flight_lock:
            self._in_flight[peer_id] = in_flight + nbytes

    def on_transfer_complete(
        self, peer_id: str, nbytes: int, duration: float, success: bool
    ) -> None:
        """Update congestion state and quality metrics after a transfer of `duration` seconds."""
        with self._lock:
            controller = self._controllers.get(peer_id)
            quality = self._connections.setdefault(peer_id, ConnectionQuality())

            if controller is not None:
                controller.update_rtt(duration)
                if success:
                    controller.on_ack(nbytes)
                else:
                    controller.on_loss()

            with self._in_flight_lock:
                if peer_id in self._in_flight:
                    self._in_flight[peer_id] = max(0.0, self._in_flight[peer_id] - nbytes)

            quality.last_measured = time.time()
            if success:
                quality.bandwidth = nbytes / duration if duration > 0 else float("inf")
                if controller is not None:
                    quality.latency = controller.rtt
                quality.packet_loss = quality.packet_loss * 0.8
            else:
                quality.packet_loss = quality.packet_loss * 0.8 + 0.2
            quality.reliability_score = reliability_score(quality)

    def connection_quality(self, peer_id: str) -> ConnectionQuality | None:
        with self._lock:
            return self._connections.get(peer_id)

    def congestion_controller(self, peer_id: str) -> WindowController | None:
        with self._lock:
            return self._controllers.get(peer_id)