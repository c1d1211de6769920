import threading
import time
from unittest.mock import Mock

import pytest

from strobecam.exceptions import MeasurementInProgressError
from strobecam.latency import LatencyEstimator, PeriodicPinger
from strobecam.testing import FakeClock, ScriptedChannel
from strobecam.timing import TimingState


def make_estimator(rtts, tag_probes=False, baseline=20.0):
    clock = FakeClock(100.0)
    channel = ScriptedChannel(clock)
    channel.script_rtts(rtts)
    timing = TimingState(baseline_ms=baseline, safety_margin_ms=40)
    estimator = LatencyEstimator(
        channel, timing, batch_size=len(rtts), timeout=0.2, tag_probes=tag_probes, clock=clock
    )
    return estimator, channel, timing


def test_baseline_is_half_mean_of_successful_rtts():
    estimator, channel, timing = make_estimator([18, 22, 20, None, 19])

    result = estimator.measure()

    assert result.successes == 4
    assert result.samples[3] is None
    assert result.mean_rtt_ms == pytest.approx(19.75)
    assert result.baseline_ms == pytest.approx(9.875)
    assert timing.snapshot.baseline_ms == pytest.approx(9.875)
    assert timing.snapshot.measured
    assert channel.sent == ["PING"] * 5


def test_rtt_longer_than_timeout_counts_as_timeout():
    estimator, _, timing = make_estimator([18, 100000, 22])

    result = estimator.measure()

    assert result.samples[1] is None
    assert result.baseline_ms == pytest.approx(10.0)


def test_all_probes_failing_keeps_previous_baseline():
    estimator, _, timing = make_estimator([None, None, None], baseline=12.5)
    before = timing.snapshot

    result = estimator.measure()

    assert not result.success
    assert result.baseline_ms is None
    assert timing.snapshot is before
    assert timing.snapshot.baseline_ms == 12.5
    assert estimator.last_timed_out


def test_display_ping_does_not_touch_baseline():
    estimator, _, timing = make_estimator([30, None])
    before = timing.snapshot

    assert estimator.ping_for_display() == pytest.approx(30)
    assert estimator.last_rtt_ms == pytest.approx(30)
    assert not estimator.last_timed_out

    assert estimator.ping_for_display() is None
    assert estimator.last_timed_out
    assert estimator.last_rtt_ms == pytest.approx(30)
    assert estimator.ping_count == 2
    assert timing.snapshot is before

    stats = estimator.stats()
    assert stats.ping_count == 2
    assert stats.last_timed_out
    assert stats.approx_one_way_ms == pytest.approx(15)


def test_ack_replies_are_not_taken_as_pong():
    estimator, channel, _ = make_estimator([25])

    # An ACK that lands after the drain must be skipped, not used as the sample
    original_send = channel.send

    def send_then_ack(command, duplicates=None):
        count = original_send(command, duplicates)
        channel.queue("ACK")
        return count

    channel.send = send_then_ack
    assert estimator.probe() == pytest.approx(25)


def test_tagged_probe_discards_stale_pong():
    estimator, channel, _ = make_estimator([7, 9], tag_probes=True)
    original_send = channel.send

    def send_with_stale_reply(command, duplicates=None):
        count = original_send(command, duplicates)
        channel.queue("PONG 999")
        return count

    channel.send = send_with_stale_reply
    assert estimator.probe() == pytest.approx(7)
    assert estimator.probe() == pytest.approx(9)
    assert channel.sent == ["PING 1", "PING 2"]


def test_stale_replies_are_drained_before_probing():
    estimator, channel, _ = make_estimator([11])
    channel.queue("PONG", "ACK")

    assert estimator.probe() == pytest.approx(11)
    assert not channel.inbox


def test_second_measurement_is_rejected_while_running():
    estimator, channel, _ = make_estimator([10, 10, 10])
    started = threading.Event()
    release = threading.Event()
    original = channel.receive_with_timeout

    def slow_receive(timeout):
        started.set()
        release.wait(5)
        return original(timeout)

    channel.receive_with_timeout = slow_receive

    future = estimator.measure_async()
    assert started.wait(5)
    assert estimator.busy
    with pytest.raises(MeasurementInProgressError):
        estimator.measure()
    with pytest.raises(MeasurementInProgressError):
        estimator.measure_async()
    assert estimator.ping_for_display() is None

    release.set()
    result = future.result(timeout=5)
    assert result.baseline_ms == pytest.approx(5.0)
    assert not estimator.busy


def test_periodic_pinger_only_pings_for_display():
    estimator = Mock()
    estimator.ping_for_display.side_effect = [RuntimeError("boom"), 12.0, 12.0, 12.0, 12.0, 12.0]
    pinger = PeriodicPinger(estimator, ping_hz=10)
    pinger.start()
    time.sleep(0.35)
    pinger.stop()

    assert estimator.ping_for_display.call_count >= 2
    estimator.measure.assert_not_called()
    assert pinger.thread is None


def test_periodic_pinger_disabled_at_zero_hz():
    pinger = PeriodicPinger(Mock(), ping_hz=0)
    pinger.start()
    assert pinger.thread is None
    pinger.stop()
