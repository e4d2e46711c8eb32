import pytest

from gitsync.bandwidth import (
    MAX_INT64,
    BandwidthManager,
    ConnectionQuality,
    reliability_score,
)
from gitsync.congestion import CongestionState
from gitsync.ratelimit import BandwidthError, CongestionLimitError


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.slept = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_manager(limit, clock):
    return BandwidthManager(limit, clock=clock, sleep=clock.sleep)


def ready(bm, clock, peer, nbytes):
    with pytest.raises(CongestionLimitError):
        bm.acquire_bandwidth(peer, nbytes)
    clock.advance(0.02)


def test_first_acquire_is_paced(clock):
    bm = make_manager(1000, clock)
    with pytest.raises(CongestionLimitError):
        bm.acquire_bandwidth("test-peer", 100)
    assert bm.congestion_controller("test-peer") is not None


def test_rate_limiting(clock):
    bm = make_manager(1000, clock)
    ready(bm, clock, "test-peer", 1500)
    bm.acquire_bandwidth("test-peer", 1500)
    assert clock.slept == []
    clock.advance(0.02)
    with pytest.raises(BandwidthError) as info:
        bm.acquire_bandwidth("test-peer", 1500)
    assert not isinstance(info.value, CongestionLimitError)


def test_waits_for_small_deficit(clock):
    bm = make_manager(10000, clock)
    ready(bm, clock, "test-peer", 1000)
    bm.acquire_bandwidth("test-peer", 1000)
    clock.advance(0.95)
    bm.acquire_bandwidth("test-peer", 1000)
    assert clock.slept == [pytest.approx(0.05)]


def test_peer_isolation(clock):
    bm = make_manager(2000, clock)
    ready(bm, clock, "peer1", 1000)
    bm.acquire_bandwidth("peer1", 1000)
    ready(bm, clock, "peer2", 1000)
    bm.acquire_bandwidth("peer2", 1000)
    assert clock.slept == []
    clock.advance(0.02)
    with pytest.raises(BandwidthError):
        bm.acquire_bandwidth("peer1", 1000)


def test_transfer_with_congestion_control(clock):
    bm = make_manager(1000000, clock)
    ready(bm, clock, "test-peer", 2048)
    windows = []
    for _ in range(5):
        bm.acquire_bandwidth("test-peer", 2048)
        bm.on_transfer_complete("test-peer", 2048, 0.1, True)
        windows.append(bm.congestion_controller("test-peer").window)
        clock.advance(0.02)
    assert all(a < b for a, b in zip(windows, windows[1:]))


def test_loss_response(clock):
    bm = make_manager(1000000, clock)
    ready(bm, clock, "test-peer", 1024)
    for _ in range(5):
        bm.acquire_bandwidth("test-peer", 1024)
        bm.on_transfer_complete("test-peer", 1024, 0.05, True)
        clock.advance(0.02)
    cc = bm.congestion_controller("test-peer")
    before = cc.window
    bm.acquire_bandwidth("test-peer", 2048)
    bm.on_transfer_complete("test-peer", 2048, 0.05, False)
    assert cc.window < before
    assert cc.state is CongestionState.CONGESTION_AVOIDANCE


def test_in_flight_released_on_completion(clock):
    bm = make_manager(1000000, clock)
    ready(bm, clock, "test-peer", 6000)
    bm.acquire_bandwidth("test-peer", 6000)
    clock.advance(0.02)
    with pytest.raises(CongestionLimitError):
        bm.acquire_bandwidth("test-peer", 6000)
    bm.on_transfer_complete("test-peer", 6000, 0.1, False)
    clock.advance(0.02)
    bm.acquire_bandwidth("test-peer", 6000)
    assert clock.slept == []


def test_rtt_tracking(clock):
    bm = make_manager(1000000, clock)
    ready(bm, clock, "test-peer", 1024)
    for duration in (0.100, 0.120, 0.090):
        bm.on_transfer_complete("test-peer", 1024, duration, True)
    rtt = bm.congestion_controller("test-peer").rtt
    assert rtt != 0
    assert 0.090 <= rtt <= 0.120


def test_connection_quality_tracking(clock):
    bm = make_manager(1000000, clock)
    ready(bm, clock, "test-peer", 1024)
    bm.acquire_bandwidth("test-peer", 1024)
    bm.on_transfer_complete("test-peer", 1024, 0.1, True)
    bm.on_transfer_complete("test-peer", 1024, 0.1, False)
    quality = bm.connection_quality("test-peer")
    assert quality is not None
    assert quality.packet_loss == pytest.approx(0.2)
    assert quality.bandwidth > 0
    assert quality.reliability_score > 0
    assert quality.last_measured is not None


def test_unknown_peer_has_no_metrics(clock):
    bm = make_manager(1000000, clock)
    assert bm.connection_quality("nobody") is None
    assert bm.congestion_controller("nobody") is None


def test_unlimited_manager():
    assert BandwidthManager.unlimited().global_limit == MAX_INT64
    assert BandwidthManager(0).global_limit == MAX_INT64
    assert BandwidthManager(-5).global_limit == MAX_INT64


def test_reliability_score_none():
    assert reliability_score(None) == 0


def test_reliability_score_perfect_connection():
    quality = ConnectionQuality(bandwidth=1e6, latency=0.0, packet_loss=0.0)
    assert reliability_score(quality) == pytest.approx(1.0)


def test_reliability_score_full_loss_drops_weight():
    good = ConnectionQuality(bandwidth=2e6, latency=0.0, packet_loss=0.0)
    bad = ConnectionQuality(bandwidth=2e6, latency=0.0, packet_loss=1.0)
    assert reliability_score(good) - reliability_score(bad) == pytest.approx(0.4)