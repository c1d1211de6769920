import threading
import time

import pytest

from strobecam.blink import BlinkDriver
from strobecam.configuration import SyncConfig
from strobecam.controller import EdgeTriggeredCapture
from strobecam.fake import FakeFrameSource
from strobecam.frame import Slot
from strobecam.phases import EdgeRecord
from strobecam.testing import FakeClock, ScriptedChannel


class StubDriver:
    def __init__(self):
        self.is_blinking = True
        self.latest_edge = None
        self.closed = False

    def close(self):
        self.closed = True


def make_capture(phase_compensation_ms=40.0, measured_one_way=None):
    clock = FakeClock(9.0)
    driver = StubDriver()
    source = FakeFrameSource(light_state=lambda: bool(driver.latest_edge and driver.latest_edge.state))
    capture = EdgeTriggeredCapture(
        driver,
        source,
        SyncConfig(phase_compensation_ms=phase_compensation_ms),
        clock=clock,
    )
    if measured_one_way is not None:
        capture.timing.set_baseline(measured_one_way)
    return capture, driver, source


def test_single_capture_per_edge():
    capture, driver, _ = make_capture(40.0, measured_one_way=15.0)
    driver.latest_edge = EdgeRecord(10.000, True)

    assert capture.tick(10.050)
    assert capture.buffer.write_count(Slot.ON) == 0

    capture.tick(10.060)
    assert capture.buffer.write_count(Slot.ON) == 1

    for now in (10.070, 10.080, 10.5):
        capture.tick(now)
    assert capture.buffer.write_count(Slot.ON) == 1
    assert capture.captures == 1


def test_unmeasured_latency_counts_as_zero():
    capture, driver, _ = make_capture(40.0)
    # The configured baseline guess is not a measurement
    assert capture.timing.snapshot.baseline_ms == 20.0
    driver.latest_edge = EdgeRecord(10.000, False)

    capture.tick(10.039)
    assert capture.buffer.write_count(Slot.OFF) == 0
    capture.tick(10.041)
    assert capture.buffer.write_count(Slot.OFF) == 1


def test_pairs_follow_edges():
    capture, driver, _ = make_capture(10.0)
    pairs = []
    capture.add_pair_callback(lambda pair: pairs.append((pair.on.copy(), pair.off.copy())))

    t = 10.0
    state = True
    for _ in range(6):
        driver.latest_edge = EdgeRecord(t, state)
        for step in range(10):
            capture.tick(t + step * 0.005)
        state = not state
        t += 0.05

    assert capture.captures == 6
    assert len(pairs) == 3
    on, off = pairs[0]
    assert int(on[24, 32, 0]) > int(off[24, 32, 0])


def test_not_blinking_means_no_capture():
    capture, driver, _ = make_capture(0.0)
    driver.is_blinking = False
    driver.latest_edge = EdgeRecord(10.0, True)
    capture.tick(11.0)
    assert capture.captures == 0


def test_no_frame_skips_the_tick():
    capture, driver, source = make_capture(0.0)
    driver.latest_edge = EdgeRecord(10.0, True)
    source.ready = False
    assert not capture.tick(11.0)
    source.ready = True
    assert capture.tick(11.1)
    assert capture.captures == 1


def test_resize_clears_pair_and_edge_state():
    capture, driver, source = make_capture(0.0)
    driver.latest_edge = EdgeRecord(10.0, True)
    capture.tick(10.01)
    driver.latest_edge = EdgeRecord(10.05, False)
    capture.tick(10.06)
    assert capture.pairs_delivered == 1
    assert capture.buffer.has_frame(Slot.OFF)

    source.resize((96, 72))
    capture.tick(10.07)
    assert capture.buffer.shape == (72, 96, 3)
    assert not capture.buffer.is_pair_ready()
    assert not capture.buffer.has_frame(Slot.ON)
    # The current edge is captured again at the new size
    assert capture.buffer.has_frame(Slot.OFF)
    assert capture.pairs_delivered == 1


def test_live_phase_compensation():
    capture, driver, _ = make_capture(40.0)
    assert capture.set_phase_compensation(500) == 200
    assert capture.set_phase_compensation(-3) == 0
    driver.latest_edge = EdgeRecord(10.0, True)
    capture.tick(10.0)
    assert capture.captures == 1


def test_close_closes_driver():
    capture, driver, _ = make_capture()
    capture.close()
    assert driver.closed
    assert not capture.tick(1.0)


def test_blink_driver_publishes_alternating_edges():
    channel = ScriptedChannel(duplicates=1)
    driver = BlinkDriver(channel, half_period=0.01)
    seen = []
    done = threading.Event()

    def watch():
        deadline = time.monotonic() + 2
        while time.monotonic() < deadline and len(seen) < 6:
            edge = driver.latest_edge
            if edge is not None and (not seen or seen[-1] != edge):
                seen.append(edge)
            time.sleep(0.001)
        done.set()

    driver.start()
    assert driver.is_blinking
    with pytest.raises(RuntimeError):
        driver.start()
    watcher = threading.Thread(target=watch)
    watcher.start()
    done.wait(3)
    watcher.join()
    driver.stop()

    assert not driver.is_blinking
    assert driver.light_on is False
    assert channel.sent[0] == "ON"
    assert channel.sent[-1] == "OFF"
    times = [edge.toggle_time for edge in seen]
    assert times == sorted(times)
    assert len(seen) >= 3


def test_blink_driver_close_closes_channel():
    channel = ScriptedChannel(duplicates=1)
    driver = BlinkDriver(channel, half_period=0.01)
    driver.start()
    driver.close()
    assert channel.closed
    driver.close()
