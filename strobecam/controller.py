#!/usr/bin/python3
"""Synchronization controllers

Three ways of deciding when a frame shows the light on and when it shows it off:

* ``AckGatedController`` waits for the remote to acknowledge each command,
  then a short exposure margin, then captures.
* ``EstimatedDelayController`` sends and waits the delay budget from the
  timing snapshot, no acknowledgment needed.
* ``EdgeTriggeredCapture`` leaves toggling to a ``BlinkDriver`` and captures a
  fixed time after each published edge.

All of them are driven by calling ``tick()`` from a single thread, once per
frame or from a ``SyncLoop``. ``tick()`` never blocks.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from strobecam.blink import BlinkDriver
from strobecam.buffer import PairedFrameBuffer
from strobecam.channel import CommandChannel, Reply
from strobecam.configuration import MAX_THRESHOLD, SyncConfig
from strobecam.exceptions import ConfigurationError, MeasurementInProgressError
from strobecam.frame import FramePair, FrameSource, Slot
from strobecam.latency import LatencyEstimator, LinkStats, PeriodicPinger
from strobecam.phases import (
    CAPTURE_PHASES,
    WAIT_ACK_PHASES,
    AckInputs,
    AckPhase,
    DelayPhase,
    Effect,
    EdgeTracker,
    PhaseState,
    Step,
    step_ack_gated,
    step_edge,
    step_estimated_delay,
)
from strobecam.timing import TimingState

_log = logging.getLogger(__name__)

PairCallback = Callable[[FramePair], None]
TransitionCallback = Callable[[PhaseState, PhaseState], None]


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


class CaptureMachinery:
    """Frame handling shared by every controller.

    Owns the paired buffer, checks the frame source each tick, reallocates on a
    frame size change and hands finished pairs to the registered callbacks.
    """

    def __init__(
        self,
        source: FrameSource,
        config: Optional[SyncConfig] = None,
        timing: Optional[TimingState] = None,
        clock=time.monotonic,
    ) -> None:
        self.config = config if config is not None else SyncConfig()
        self.source = source
        self.timing = timing if timing is not None else TimingState(
            self.config.baseline_ms,
            self.config.safety_margin_ms,
            self.config.min_delay_ms,
            self.config.max_delay_ms,
        )
        self.buffer = PairedFrameBuffer()
        self.threshold = self.config.threshold
        self.enabled = True
        self._clock = clock
        self._pair_callbacks: List[PairCallback] = []
        self._last_tick: Optional[float] = None
        self.pairs_delivered = 0
        self.skipped_ticks = 0

    def add_pair_callback(self, callback: PairCallback) -> None:
        """Add a callback to be called with every completed frame pair.

        The arrays in the pair belong to the buffer and are overwritten by later
        captures, so copy them if they need to outlive the callback.
        """
        self._pair_callbacks.append(callback)

    def remove_pair_callback(self, callback: PairCallback) -> None:
        self._pair_callbacks.remove(callback)

    def set_threshold(self, threshold: float) -> float:
        self.threshold = _clamp(threshold, 0.0, MAX_THRESHOLD)
        return self.threshold

    def set_safety_margin(self, margin_ms: float) -> float:
        """Change the safety margin; the new total wait applies from the next tick."""
        return self.timing.set_safety_margin(margin_ms).total_wait_ms

    def _elapsed(self, now: float) -> float:
        elapsed = 0.0 if self._last_tick is None else max(0.0, now - self._last_tick)
        self._last_tick = now
        return elapsed

    def _acquire_frame(self) -> Optional[np.ndarray]:
        """The current frame, or None when this tick has to be skipped."""
        if not self.source.ready:
            return None
        frame = self.source.get_frame()
        if frame is None:
            return None

        min_size = self.config.min_frame_size
        if frame.ndim < 2 or frame.shape[0] < min_size or frame.shape[1] < min_size:
            return None

        if self.buffer.shape != frame.shape:
            if self.buffer.shape is not None:
                _log.info(f"Frame shape changed {self.buffer.shape} -> {frame.shape}")
            self.buffer.dtype = frame.dtype
            self.buffer.reallocate(frame.shape)
            self._reset_cycle()
        return frame

    def _reset_cycle(self) -> None:
        pass

    def _deliver_pair(self) -> None:
        if not self.buffer.is_pair_ready():
            return
        pair = self.buffer.consume()
        pair.threshold = self.threshold
        self.pairs_delivered += 1
        for callback in list(self._pair_callbacks):
            try:
                callback(pair)
            except Exception as e:
                _log.error(f"Error in pair callback ({callback}): {e}")

    def tick(self, now: Optional[float] = None) -> bool:
        """Run one scheduling step. Returns False if the tick was skipped."""
        if not self.enabled:
            return False
        now = self._clock() if now is None else now
        frame = self._acquire_frame()
        if frame is None:
            self.skipped_ticks += 1
            return False
        self._process(frame, now)
        return True

    def _process(self, frame: np.ndarray, now: float) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.enabled = False


class CommandedController(CaptureMachinery):
    """Base for the two controllers that send ON/OFF themselves."""

    initial_phase = None
    display_pings_on_tick = False

    def __init__(
        self,
        channel: CommandChannel,
        source: FrameSource,
        config: Optional[SyncConfig] = None,
        timing: Optional[TimingState] = None,
        estimator: Optional[LatencyEstimator] = None,
        clock=time.monotonic,
    ) -> None:
        super().__init__(source, config, timing, clock)
        self.channel = channel
        self.estimator = estimator if estimator is not None else LatencyEstimator(
            channel,
            self.timing,
            batch_size=self.config.probe_batch_size,
            timeout=self.config.probe_timeout_s,
            tag_probes=self.config.tag_probes,
            clock=clock,
        )
        self._pinger = PeriodicPinger(self.estimator, self.config.ping_hz)
        self.state = PhaseState(self.initial_phase)
        self.light_on: Optional[bool] = None
        self.cycles = 0
        self._transition_callbacks: List[TransitionCallback] = []

    def add_transition_callback(self, callback: TransitionCallback) -> None:
        self._transition_callbacks.append(callback)

    def remove_transition_callback(self, callback: TransitionCallback) -> None:
        self._transition_callbacks.remove(callback)

    def start(self) -> None:
        """Calibrate (if configured) and start the display pinger.

        The calibration blocks for up to one probe timeout per probe.
        """
        if not self.enabled:
            return
        if self.config.auto_measure:
            self.estimator.measure()
        if not self.display_pings_on_tick:
            self._pinger.start()

    def remeasure(self, batch_size: Optional[int] = None) -> Optional[Future]:
        """Re-run the latency calibration on a worker thread.

        Returns None (and logs) if a measurement is already running.
        """
        try:
            return self.estimator.measure_async(batch_size)
        except MeasurementInProgressError:
            _log.warning("Re-measure ignored, a measurement is already running")
            return None

    def link_stats(self) -> LinkStats:
        return self.estimator.stats()

    def _reset_cycle(self) -> None:
        self._transition(PhaseState(self.initial_phase))

    def _transition(self, state: PhaseState) -> None:
        old = self.state
        self.state = state
        if old.phase is not state.phase:
            _log.debug(f"{old.phase.name} -> {state.phase.name}")
            for callback in self._transition_callbacks:
                callback(old, state)

    def _send(self, on: bool) -> None:
        self.channel.send_light(on)
        self.light_on = on

    def _apply(self, effects: Iterable[Effect], frame: np.ndarray, now: float) -> None:
        for effect in effects:
            if effect is Effect.SEND_ON:
                self._send(True)
            elif effect is Effect.SEND_OFF:
                self._send(False)
            elif effect is Effect.CAPTURE_ON:
                self.buffer.write(Slot.ON, frame, now)
            elif effect is Effect.CAPTURE_OFF:
                self.buffer.write(Slot.OFF, frame, now)
            elif effect is Effect.PAIR_COMPLETE:
                self.cycles += 1
                self._deliver_pair()
            elif effect is Effect.ACK_TIMEOUT:
                self._on_ack_timeout()

    def _on_ack_timeout(self) -> None:
        pass

    def _step(self, elapsed: float) -> Step:
        raise NotImplementedError

    def _process(self, frame: np.ndarray, now: float) -> None:
        elapsed = self._elapsed(now)
        captured = self.state.phase in CAPTURE_PHASES
        state, effects = self._step(elapsed)
        self._apply(effects, frame, now)
        self._transition(state)

        # A capture is followed straight away by the next command
        if captured:
            state, effects = self._step(0.0)
            self._apply(effects, frame, now)
            self._transition(state)

    def close(self) -> None:
        if not self.enabled and self.channel.closed:
            return
        super().close()
        self._pinger.stop()
        self._send(False)
        self.channel.close()


class AckGatedController(CommandedController):
    """Waits for an ACK after each command, then the exposure margin.

    If the ACK never shows up the wait ends after ``ack_timeout_s`` (or the
    current total wait, whichever is longer) and the cycle carries on using
    the estimated delay instead.

    All replies are read on the ticking thread. Display pings (``ping_hz``) are
    sent from ``tick()`` too and their PONGs picked out of the same reply stream,
    so no other thread ever drains an ACK this controller is waiting for.
    """

    initial_phase = AckPhase.SEND_ON
    display_pings_on_tick = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.estimator.display_pings_on_tick = True
        self.exposure_margin_ms = self.config.exposure_margin_ms
        self.ack_timeouts = 0
        self.acks_received = 0
        self._ack_seen = False
        # (send time, tag) of the display ping in flight
        self._display_ping: Optional[Tuple[float, Optional[str]]] = None
        self._last_display_ping: Optional[float] = None

    def set_exposure_margin(self, margin_ms: float) -> float:
        self.exposure_margin_ms = _clamp(margin_ms, 0.0, 100.0)
        return self.exposure_margin_ms

    def _poll_replies(self) -> bool:
        """Read everything queued. Returns True if an ACK was among it."""
        acked = False
        while True:
            reply = self.channel.try_receive()
            if reply is None:
                return acked
            if reply.is_ack():
                acked = True
            elif reply.is_pong():
                self._display_reply(reply)
            else:
                _log.debug(f"Ignoring {reply.text!r} while waiting for ACK")

    def _display_reply(self, reply: Reply) -> None:
        if self._display_ping is None:
            _log.debug(f"Ignoring unexpected {reply.text!r}")
            return
        sent_at, tag = self._display_ping
        if tag is not None and reply.tag is not None and reply.tag != tag:
            _log.debug(f"Discarding stale reply {reply.text!r}, expected tag {tag}")
            return
        self._display_ping = None
        self.estimator.record_display_rtt((reply.received_at - sent_at) * 1000.0)

    def _service_display_ping(self, now: float) -> None:
        ping_hz = self.config.ping_hz
        if ping_hz <= 0:
            return
        if self._display_ping is not None:
            sent_at, _ = self._display_ping
            if now - sent_at > self.estimator.timeout:
                self._display_ping = None
                self.estimator.record_display_rtt(None)
            return
        if self._last_display_ping is not None and now - self._last_display_ping < 1.0 / ping_hz:
            return
        payload, tag = self.estimator.next_probe()
        if self.channel.send(payload, duplicates=1):
            self._display_ping = (now, tag)
        self._last_display_ping = now

    def _send(self, on: bool) -> None:
        # A late duplicate ACK for the previous command must not satisfy the next wait
        self._poll_replies()
        super()._send(on)

    def _step(self, elapsed: float) -> Step:
        ack, self._ack_seen = self._ack_seen, False
        if ack:
            self.acks_received += 1
        inputs = AckInputs(
            ack_received=ack,
            exposure_margin_s=self.exposure_margin_ms / 1000.0,
            ack_timeout_s=max(self.config.ack_timeout_s, self.timing.snapshot.total_wait_s),
        )
        return step_ack_gated(self.state, elapsed, inputs)

    def _on_ack_timeout(self) -> None:
        self.ack_timeouts += 1
        _log.warning(
            f"No ACK for {'ON' if self.light_on else 'OFF'}, "
            f"falling back to estimated delay ({self.ack_timeouts} so far)"
        )

    def _process(self, frame: np.ndarray, now: float) -> None:
        acked = self._poll_replies()
        self._ack_seen = acked and self.state.phase in WAIT_ACK_PHASES
        self._service_display_ping(now)
        super()._process(frame, now)

    def tick(self, now: Optional[float] = None) -> bool:
        if not self.enabled:
            return False
        if not self.estimator.claim_socket():
            # A probe owns the socket; hold still and don't count the time
            self._last_tick = self._clock() if now is None else now
            return False
        try:
            return super().tick(now)
        finally:
            self.estimator.release_socket()


class EstimatedDelayController(CommandedController):
    """Sends each command and waits the current delay budget before capturing."""

    initial_phase = DelayPhase.SEND_ON

    def _step(self, elapsed: float) -> Step:
        return step_estimated_delay(self.state, elapsed, self.timing.snapshot.total_wait_s)


class EdgeTriggeredCapture(CaptureMachinery):
    """Captures a fixed delay after each edge published by a ``BlinkDriver``.

    The driver owns the light; this class only reads its latest edge. The
    delay is the measured one-way latency (zero before any measurement) plus the
    tunable phase compensation.
    """

    def __init__(
        self,
        driver: BlinkDriver,
        source: FrameSource,
        config: Optional[SyncConfig] = None,
        timing: Optional[TimingState] = None,
        estimator: Optional[LatencyEstimator] = None,
        clock=time.monotonic,
    ) -> None:
        super().__init__(source, config, timing, clock)
        self.driver = driver
        self.estimator = estimator
        self.phase_compensation_ms = self.config.phase_compensation_ms
        self.tracker = EdgeTracker()
        self.captures = 0

    def start(self) -> None:
        """Calibrate (if configured) and start the blink driver."""
        if not self.enabled:
            return
        if self.config.auto_measure and self.estimator is not None:
            self.estimator.measure()
        self.driver.start()

    def set_phase_compensation(self, compensation_ms: float) -> float:
        self.phase_compensation_ms = _clamp(compensation_ms, 0.0, 200.0)
        return self.phase_compensation_ms

    def remeasure(self, batch_size: Optional[int] = None) -> Optional[Future]:
        if self.estimator is None:
            _log.warning("No latency estimator attached, cannot re-measure")
            return None
        try:
            return self.estimator.measure_async(batch_size)
        except MeasurementInProgressError:
            _log.warning("Re-measure ignored, a measurement is already running")
            return None

    def link_stats(self) -> Optional[LinkStats]:
        return None if self.estimator is None else self.estimator.stats()

    def _reset_cycle(self) -> None:
        # Stale frames are gone, so nothing counts as captured for the current edge
        self.tracker = EdgeTracker()

    def _process(self, frame: np.ndarray, now: float) -> None:
        if not self.driver.is_blinking:
            return
        snapshot = self.timing.snapshot
        self.tracker, slot = step_edge(
            self.tracker,
            self.driver.latest_edge,
            now,
            snapshot.one_way_ms,
            self.phase_compensation_ms,
        )
        if slot is None:
            return
        self.buffer.write(slot, frame, now)
        self.captures += 1
        self._deliver_pair()

    def close(self) -> None:
        super().close()
        self.driver.close()


class DisabledController:
    """Stand-in returned when the controller could not be set up."""

    enabled = False

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def tick(self, now: Optional[float] = None) -> bool:
        return False

    def start(self) -> None:
        pass

    def add_pair_callback(self, callback: PairCallback) -> None:
        pass

    def remove_pair_callback(self, callback: PairCallback) -> None:
        pass

    def _ignored(self, what: str) -> None:
        _log.warning(f"Light sync disabled ({self.reason}), ignoring {what}")

    def set_threshold(self, threshold: float) -> None:
        self._ignored("threshold change")

    def set_safety_margin(self, margin_ms: float) -> None:
        self._ignored("safety margin change")

    def set_exposure_margin(self, margin_ms: float) -> None:
        self._ignored("exposure margin change")

    def set_phase_compensation(self, compensation_ms: float) -> None:
        self._ignored("phase compensation change")

    def remeasure(self, batch_size: Optional[int] = None) -> None:
        self._ignored("re-measure")

    def link_stats(self) -> None:
        return None

    def close(self) -> None:
        pass


MODES = ("ack", "delay", "edge")


def build_controller(
    config,
    source: FrameSource,
    mode: str = "ack",
    bind: Optional[Tuple[str, int]] = None,
    clock=time.monotonic,
):
    """Create a ready-to-tick controller for ``mode`` ("ack", "delay" or "edge").

    ``config`` may be a SyncConfig, a dict or a path to a JSON file. Problems
    found here (bad endpoint, bad values, no socket) are logged and give a
    ``DisabledController`` rather than an exception, so a host application
    keeps running without light sync.
    """
    try:
        if isinstance(config, SyncConfig):
            pass
        elif isinstance(config, dict):
            config = SyncConfig.from_dict(config)
        else:
            config = SyncConfig.load(config)
        if mode not in MODES:
            raise ConfigurationError(f"Unknown mode {mode!r}, expected one of {MODES}")
        channel = CommandChannel(config.endpoint, config.duplicate_sends, bind=bind, clock=clock)
    except (ConfigurationError, OSError) as e:
        _log.error(f"Light sync disabled: {e}")
        return DisabledController(str(e))

    timing = TimingState(
        config.baseline_ms,
        config.safety_margin_ms,
        config.min_delay_ms,
        config.max_delay_ms,
    )
    if mode == "ack":
        return AckGatedController(channel, source, config, timing, clock=clock)
    if mode == "delay":
        return EstimatedDelayController(channel, source, config, timing, clock=clock)

    estimator = LatencyEstimator(
        channel,
        timing,
        batch_size=config.probe_batch_size,
        timeout=config.probe_timeout_s,
        tag_probes=config.tag_probes,
        clock=clock,
    )
    driver = BlinkDriver(channel, config.half_period_s, clock=clock)
    return EdgeTriggeredCapture(driver, source, config, timing, estimator, clock=clock)
