import socket
import time

import pytest

from strobecam.channel import Command, CommandChannel, Reply, start_blink_payload
from strobecam.configuration import Endpoint
from strobecam.fake import FakeLightRemote
from strobecam.latency import LatencyEstimator
from strobecam.timing import TimingState


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def remote():
    with FakeLightRemote(seed=1) as remote:
        yield remote


@pytest.fixture
def channel(remote):
    with CommandChannel(Endpoint(*remote.address)) as channel:
        yield channel


def test_reply_tokens():
    assert Reply("ACK").is_ack()
    assert Reply("pong 7").is_pong()
    assert Reply("pong 7").tag == "7"
    assert Reply("PING").is_pong()
    assert Reply("PONG").tag is None
    assert not Reply("").is_ack()
    assert start_blink_payload(33333, False) == "START 33333 0"


def test_light_commands_are_acknowledged(remote, channel):
    assert channel.send_light(True) == 2
    assert wait_for(lambda: remote.light_on)

    reply = channel.receive_with_timeout(1.0)
    assert reply is not None and reply.is_ack()
    assert reply.sender == remote.address

    assert wait_for(lambda: len(remote.received) == 2)
    assert remote.received == ["ON", "ON"]

    channel.send(Command.OFF, duplicates=1)
    assert wait_for(lambda: not remote.light_on)


def test_try_receive_does_not_block(channel):
    start = time.monotonic()
    assert channel.try_receive() is None
    assert time.monotonic() - start < 0.1


def test_drain_discards_queued_replies(remote, channel):
    channel.send_light(True)
    assert wait_for(lambda: len(remote.received) == 2)
    time.sleep(0.05)
    assert channel.drain() == 2
    assert channel.try_receive() is None


def test_receive_times_out(channel):
    start = time.monotonic()
    assert channel.receive_with_timeout(0.05) is None
    assert time.monotonic() - start >= 0.04


def test_start_and_stop_blink(remote, channel):
    assert channel.send_start_blink(33333) == 3
    assert channel.send_stop() == 2
    assert wait_for(lambda: len(remote.received) == 5)
    assert remote.received[0] == "START 33333 1"
    assert remote.received[-1] == "STOP"


def test_closed_channel_does_not_send(channel):
    channel.close()
    assert channel.closed
    assert channel.send_light(True) == 0
    assert channel.stats.dropped == 2
    assert channel.try_receive() is None
    assert channel.receive_with_timeout(0.01) is None
    channel.close()


def test_unreachable_port_does_not_raise():
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    with CommandChannel(Endpoint("127.0.0.1", port)) as channel:
        channel.send_light(True)
        time.sleep(0.02)
        channel.send_light(False)
        channel.drain()
        assert channel.receive_with_timeout(0.02) is None


def test_estimator_against_fake_remote():
    with FakeLightRemote(latency=0.005) as remote:
        with CommandChannel(Endpoint(*remote.address)) as channel:
            timing = TimingState()
            estimator = LatencyEstimator(channel, timing, batch_size=5, timeout=0.2, tag_probes=True)
            result = estimator.measure()

    assert result.successes == 5
    assert all(rtt >= 5.0 for rtt in result.rtts)
    assert timing.snapshot.measured
    assert timing.snapshot.baseline_ms == pytest.approx(result.mean_rtt_ms / 2)
    assert timing.snapshot.total_wait_ms >= 10.0


def test_estimator_with_lossy_link_keeps_baseline():
    with FakeLightRemote(drop_rate=1.0) as remote:
        with CommandChannel(Endpoint(*remote.address)) as channel:
            timing = TimingState(baseline_ms=20.0)
            estimator = LatencyEstimator(channel, timing, batch_size=3, timeout=0.02)
            result = estimator.measure()
        assert remote.dropped == 3

    assert not result.success
    assert timing.snapshot.baseline_ms == 20.0
    assert not timing.snapshot.measured
