import json
import logging

import pytest

from strobecam.configuration import MAX_THRESHOLD, Endpoint, SyncConfig
from strobecam.controller import (
    AckGatedController,
    DisabledController,
    EdgeTriggeredCapture,
    EstimatedDelayController,
    build_controller,
)
from strobecam.exceptions import ConfigurationError
from strobecam.fake import FakeFrameSource, FakeLightRemote
from strobecam.logger import initialize_logger
from strobecam.testing import FakeClock


def test_endpoint_parse():
    assert Endpoint.parse("192.168.4.1:4210") == Endpoint("192.168.4.1", 4210)
    assert Endpoint.parse(" lamp.local ") == Endpoint("lamp.local", 4210)
    assert str(Endpoint.parse("10.0.0.2:9000")) == "10.0.0.2:9000"
    assert Endpoint("h", 1).as_tuple() == ("h", 1)


@pytest.mark.parametrize("text", ["", "   ", "host:port", "host:0", "host:70000", ":4210", None])
def test_endpoint_parse_rejects(text):
    with pytest.raises(ConfigurationError):
        Endpoint.parse(text)


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        Endpoint("", 4210)


def test_defaults():
    config = SyncConfig()
    assert config.endpoint == Endpoint("192.168.4.1", 4210)
    assert config.duplicate_sends == 2
    assert config.exposure_margin_ms == 30.0
    assert config.probe_batch_size == 5
    assert config.probe_timeout_s == pytest.approx(0.2)


@pytest.mark.parametrize(
    "changes",
    [
        {"duplicate_sends": 0},
        {"duplicate_sends": 1.5},
        {"baseline_ms": -1},
        {"max_delay_ms": 5.0},
        {"exposure_margin_ms": 150},
        {"phase_compensation_ms": 250},
        {"threshold": 0.9},
        {"threshold": 0.4},
        {"ack_timeout_s": 0},
        {"tick_hz": float("nan")},
        {"tag_probes": 1},
        {"port": True},
    ],
)
def test_bad_values_are_rejected(changes):
    with pytest.raises(ConfigurationError):
        SyncConfig(**changes)


def test_replace_checks_values():
    config = SyncConfig()
    assert config.replace(safety_margin_ms=80).safety_margin_ms == 80
    with pytest.raises(ConfigurationError):
        config.replace(probe_batch_size=0)


def test_from_dict_accepts_endpoint_string():
    config = SyncConfig.from_dict({"endpoint": "10.1.1.1:5000", "threshold": 0.1})
    assert config.host == "10.1.1.1"
    assert config.port == 5000
    assert config.threshold == 0.1


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match="colour"):
        SyncConfig.from_dict({"colour": "red"})


def test_save_and_load(tmp_path):
    path = tmp_path / "sync.json"
    config = SyncConfig(host="127.0.0.1", safety_margin_ms=55.0, tag_probes=True)
    config.save(path)
    assert json.loads(path.read_text())["safety_margin_ms"] == 55.0
    assert SyncConfig.load(path) == config


def test_load_rejects_bad_files(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigurationError):
        SyncConfig.load(broken)

    listed = tmp_path / "list.json"
    listed.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        SyncConfig.load(listed)


@pytest.mark.parametrize(
    "mode, cls",
    [("ack", AckGatedController), ("delay", EstimatedDelayController), ("edge", EdgeTriggeredCapture)],
)
def test_build_controller_modes(mode, cls):
    controller = build_controller({"endpoint": "127.0.0.1:4210"}, FakeFrameSource(), mode=mode)
    try:
        assert isinstance(controller, cls)
        assert controller.enabled
    finally:
        controller.close()


def test_build_controller_from_file(tmp_path):
    path = tmp_path / "sync.json"
    SyncConfig(host="127.0.0.1", baseline_ms=30.0).save(path)
    controller = build_controller(str(path), FakeFrameSource(), mode="delay")
    try:
        assert controller.timing.snapshot.baseline_ms == 30.0
    finally:
        controller.close()


@pytest.mark.parametrize(
    "config, mode",
    [
        ({"endpoint": "no-port-here:"}, "ack"),
        ({"endpoint": "127.0.0.1:4210"}, "strobe"),
        ({"safety_margin_ms": "lots"}, "ack"),
    ],
)
def test_build_controller_disables_on_bad_setup(config, mode, caplog):
    with caplog.at_level(logging.ERROR, logger="strobecam"):
        controller = build_controller(config, FakeFrameSource(), mode=mode)
    assert isinstance(controller, DisabledController)
    assert not controller.enabled
    assert not controller.tick()
    assert controller.reason
    assert "Light sync disabled" in caplog.text
    controller.close()


def test_initialize_logger_levels(tmp_path):
    with pytest.raises(ValueError):
        initialize_logger(console_level=5)
    with pytest.raises(ValueError):
        initialize_logger(log_level=2)
    logger = initialize_logger(console_level=0)
    assert logger.name == "strobecam"
    assert logger.handlers


def test_threshold_range_matches_live_setter():
    config = SyncConfig(threshold=MAX_THRESHOLD)
    controller = build_controller(config.replace(host="127.0.0.1"), FakeFrameSource(), mode="delay")
    try:
        assert controller.threshold == MAX_THRESHOLD
        assert controller.set_threshold(MAX_THRESHOLD) == MAX_THRESHOLD
        assert controller.set_threshold(1.0) == MAX_THRESHOLD
    finally:
        controller.close()


def test_disabled_controller_accepts_live_controls(caplog):
    controller = build_controller({"endpoint": "bad:port"}, FakeFrameSource())
    assert isinstance(controller, DisabledController)

    with caplog.at_level(logging.WARNING, logger="strobecam"):
        assert controller.set_safety_margin(50) is None
        assert controller.set_threshold(0.1) is None
        assert controller.set_exposure_margin(20) is None
        assert controller.set_phase_compensation(30) is None
        assert controller.remeasure() is None
    assert controller.link_stats() is None
    assert "ignoring safety margin change" in caplog.text
    controller.start()
    controller.close()


def test_edge_mode_probes_use_the_given_clock():
    clock = FakeClock(50.0)
    with FakeLightRemote(latency=0.005) as remote:
        host, port = remote.address
        controller = build_controller(
            {"host": host, "port": port, "probe_batch_size": 3},
            FakeFrameSource(),
            mode="edge",
            clock=clock,
        )
        try:
            result = controller.estimator.measure()
        finally:
            controller.close()

    # The injected clock never moves, so every round trip reads as zero
    assert result.successes == 3
    assert result.rtts == [0.0, 0.0, 0.0]
    assert controller.timing.snapshot.measured
