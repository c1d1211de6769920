"""Pure phase logic for the synchronization controllers.

Nothing in here touches the network, the clock or a frame. Each step takes the
current state, the time elapsed since the previous tick and the inputs sampled
for this tick, and returns the next state plus the effects the caller has to
carry out. The drivers in ``strobecam.controller`` do the I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from strobecam.frame import Slot


class Effect(Enum):
    SEND_ON = "send_on"
    SEND_OFF = "send_off"
    CAPTURE_ON = "capture_on"
    CAPTURE_OFF = "capture_off"
    PAIR_COMPLETE = "pair_complete"
    ACK_TIMEOUT = "ack_timeout"


class AckPhase(Enum):
    SEND_ON = 0
    WAIT_ACK_ON = 1
    WAIT_EXPOSURE_ON = 2
    CAPTURE_ON = 3
    SEND_OFF = 4
    WAIT_ACK_OFF = 5
    WAIT_EXPOSURE_OFF = 6
    CAPTURE_OFF = 7

    @property
    def next(self) -> AckPhase:
        return AckPhase((self.value + 1) % len(AckPhase))


class DelayPhase(Enum):
    SEND_ON = 0
    WAIT_ON = 1
    CAPTURE_ON = 2
    SEND_OFF = 3
    WAIT_OFF = 4
    CAPTURE_OFF = 5

    @property
    def next(self) -> DelayPhase:
        return DelayPhase((self.value + 1) % len(DelayPhase))


SEND_PHASES = (AckPhase.SEND_ON, AckPhase.SEND_OFF, DelayPhase.SEND_ON, DelayPhase.SEND_OFF)
CAPTURE_PHASES = (
    AckPhase.CAPTURE_ON,
    AckPhase.CAPTURE_OFF,
    DelayPhase.CAPTURE_ON,
    DelayPhase.CAPTURE_OFF,
)
WAIT_ACK_PHASES = (AckPhase.WAIT_ACK_ON, AckPhase.WAIT_ACK_OFF)


@dataclass(frozen=True)
class PhaseState:
    phase: Enum
    timer: float = 0.0
    """Seconds spent in the current wait phase."""


Step = Tuple[PhaseState, Tuple[Effect, ...]]

_SEND_EFFECT = {
    AckPhase.SEND_ON: Effect.SEND_ON,
    AckPhase.SEND_OFF: Effect.SEND_OFF,
    DelayPhase.SEND_ON: Effect.SEND_ON,
    DelayPhase.SEND_OFF: Effect.SEND_OFF,
}

_CAPTURE_EFFECTS = {
    AckPhase.CAPTURE_ON: (Effect.CAPTURE_ON,),
    AckPhase.CAPTURE_OFF: (Effect.CAPTURE_OFF, Effect.PAIR_COMPLETE),
    DelayPhase.CAPTURE_ON: (Effect.CAPTURE_ON,),
    DelayPhase.CAPTURE_OFF: (Effect.CAPTURE_OFF, Effect.PAIR_COMPLETE),
}


@dataclass(frozen=True)
class AckInputs:
    ack_received: bool
    exposure_margin_s: float
    ack_timeout_s: float


def step_ack_gated(state: PhaseState, elapsed: float, inputs: AckInputs) -> Step:
    """Advance the ack-gated machine by one tick.

    A missing ACK no longer stalls the machine: after ``ack_timeout_s`` the wait
    gives up, reports ACK_TIMEOUT and carries on to the exposure wait as if
    the light had switched on the estimated schedule.
    """
    phase = state.phase

    if phase in SEND_PHASES:
        return PhaseState(phase.next), (_SEND_EFFECT[phase],)

    if phase in WAIT_ACK_PHASES:
        timer = state.timer + elapsed
        if inputs.ack_received:
            return PhaseState(phase.next), ()
        if timer >= inputs.ack_timeout_s:
            return PhaseState(phase.next), (Effect.ACK_TIMEOUT,)
        return PhaseState(phase, timer), ()

    if phase in (AckPhase.WAIT_EXPOSURE_ON, AckPhase.WAIT_EXPOSURE_OFF):
        timer = state.timer + elapsed
        if timer >= inputs.exposure_margin_s:
            return PhaseState(phase.next), ()
        return PhaseState(phase, timer), ()

    if phase in CAPTURE_PHASES:
        return PhaseState(phase.next), _CAPTURE_EFFECTS[phase]

    raise ValueError(f"Unknown phase {phase}")


def step_estimated_delay(state: PhaseState, elapsed: float, total_wait_s: float) -> Step:
    """Advance the open-loop machine by one tick.

    ``total_wait_s`` is read fresh on every tick, so a margin change shows up at
    the next comparison against the running timer.
    """
    phase = state.phase

    if phase in SEND_PHASES:
        return PhaseState(phase.next), (_SEND_EFFECT[phase],)

    if phase in (DelayPhase.WAIT_ON, DelayPhase.WAIT_OFF):
        timer = state.timer + elapsed
        if timer >= total_wait_s:
            return PhaseState(phase.next), ()
        return PhaseState(phase, timer), ()

    if phase in CAPTURE_PHASES:
        return PhaseState(phase.next), _CAPTURE_EFFECTS[phase]

    raise ValueError(f"Unknown phase {phase}")


@dataclass(frozen=True)
class EdgeRecord:
    toggle_time: float
    """Clock reading when the toggle command went out."""

    state: bool
    """Light state after the toggle."""

    @property
    def slot(self) -> Slot:
        return Slot.for_state(self.state)


@dataclass(frozen=True)
class EdgeTracker:
    last_edge: Optional[EdgeRecord] = None
    captured: bool = False


def capture_time(edge: EdgeRecord, one_way_ms: float, phase_compensation_ms: float) -> float:
    return edge.toggle_time + (one_way_ms + phase_compensation_ms) / 1000.0


def step_edge(
    tracker: EdgeTracker,
    edge: Optional[EdgeRecord],
    now: float,
    one_way_ms: float,
    phase_compensation_ms: float,
) -> Tuple[EdgeTracker, Optional[Slot]]:
    """Decide whether this tick captures, and into which slot.

    At most one capture happens per edge, however many ticks pass after the
    capture time.
    """
    if edge is None:
        return tracker, None

    if edge != tracker.last_edge:
        tracker = EdgeTracker(edge, False)

    if tracker.captured:
        return tracker, None

    if now < capture_time(edge, one_way_ms, phase_compensation_ms):
        return tracker, None

    return EdgeTracker(edge, True), edge.slot
