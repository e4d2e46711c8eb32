import pytest

from gitsync.congestion import (
    INITIAL_WINDOW,
    MAX_RTO,
    MIN_RTO,
    CongestionController,
    CongestionState,
)


def test_slow_start_grows_window():
    cc = CongestionController()
    initial = cc.window
    for _ in range(5):
        cc.on_ack(1024)
    assert cc.window > initial


def test_initial_window_is_ten_kilobytes():
    cc = CongestionController()
    assert cc.window == 1024 * 10
    assert cc.state is CongestionState.SLOW_START


def test_congestion_avoidance_increase_shrinks():
    cc = CongestionController()
    cc.ssthresh = 20480
    while cc.state is not CongestionState.CONGESTION_AVOIDANCE:
        cc.on_ack(1024)

    initial = cc.window
    previous_increase = 0.0
    for i in range(5):
        before = cc.window
        cc.on_ack(1024)
        increase = cc.window - before
        if i > 0:
            assert increase < previous_increase
        previous_increase = increase
    assert cc.window > initial


def test_loss_handling():
    cc = CongestionController()
    for _ in range(10):
        cc.on_ack(1024)
    before = cc.window
    cc.on_loss()
    after = cc.window
    assert after < before
    assert after == cc.ssthresh
    assert cc.state is CongestionState.CONGESTION_AVOIDANCE


def test_timeout_recovery():
    cc = CongestionController()
    for _ in range(10):
        cc.on_ack(1024)
    cc.on_timeout()
    assert cc.window == 1024 * 10
    assert cc.state is CongestionState.SLOW_START


def test_fast_recovery_returns_to_threshold():
    cc = CongestionController()
    cc.ssthresh = 20480
    cc.state = CongestionState.FAST_RECOVERY
    cc.on_ack(1024)
    assert cc.window == 20480
    assert cc.state is CongestionState.CONGESTION_AVOIDANCE


def test_rtt_estimation_is_smooth():
    cc = CongestionController()
    samples = [0.100, 0.120, 0.090, 0.110]
    last = 0.0
    for sample in samples:
        cc.update_rtt(sample)
        if last != 0:
            assert cc.rtt - last <= 0.020
        last = cc.rtt
    assert 0.090 <= cc.rtt <= 0.120


def test_first_rtt_sample_taken_as_is():
    cc = CongestionController()
    cc.update_rtt(0.1)
    assert cc.rtt == pytest.approx(0.1)


@pytest.mark.parametrize(
    "fraction, expect_quota",
    [(0.0, True), (0.5, True), (1.0, False), (2.0, False)],
)
def test_transmission_quota(fraction, expect_quota):
    cc = CongestionController()
    quota = cc.transmission_quota(cc.window * fraction)
    assert (quota > 0) is expect_quota
    assert quota >= 0


def test_should_backoff_when_window_full():
    cc = CongestionController()
    assert cc.should_backoff(cc.window)
    assert not cc.should_backoff(cc.window - 1)


def test_backoff_calculation():
    cc = CongestionController()
    cc.update_rtt(0.100)
    cc.update_rtt(0.120)
    cc.update_rtt(0.090)
    backoff = cc.calculate_backoff()
    assert backoff >= cc.rtt
    assert backoff >= MIN_RTO
    assert backoff <= MAX_RTO


def test_backoff_capped_at_maximum():
    cc = CongestionController()
    cc.update_rtt(100.0)
    assert cc.calculate_backoff() == MAX_RTO


def test_timeout_resets_to_initial_constant():
    cc = CongestionController()
    cc.on_ack(5000)
    cc.on_timeout()
    assert cc.window == INITIAL_WINDOW