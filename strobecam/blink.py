"""Free-running light toggler for the edge-triggered capture scheduler."""
from __future__ import annotations

import threading
import time
from logging import getLogger
from typing import Optional

from strobecam.channel import CommandChannel
from strobecam.phases import EdgeRecord

_log = getLogger(__name__)


class BlinkDriver:
    """Toggles the light every ``half_period`` seconds on its own thread.

    After each toggle it publishes an ``EdgeRecord`` with the send time and the
    new state. Readers get the record through ``latest_edge``; publication is a
    single reference swap so no lock is needed on the reading side.
    """

    def __init__(
        self,
        channel: CommandChannel,
        half_period: float = 0.033333,
        start_on: bool = True,
        clock=time.monotonic,
    ) -> None:
        self.channel = channel
        self.half_period = half_period
        self.start_on = start_on
        self._clock = clock
        self._abort = threading.Event()
        self._latest_edge: Optional[EdgeRecord] = None
        self.thread = None
        self.edges = 0

    @property
    def latest_edge(self) -> Optional[EdgeRecord]:
        return self._latest_edge

    @property
    def is_blinking(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    @property
    def light_on(self) -> Optional[bool]:
        edge = self._latest_edge
        return None if edge is None else edge.state

    def toggle(self, state: bool) -> EdgeRecord:
        """Send one transition and publish its edge."""
        self.channel.send_light(state)
        edge = EdgeRecord(self._clock(), state)
        self._latest_edge = edge
        self.edges += 1
        return edge

    def thread_func(self):
        state = self.start_on
        next_toggle = time.monotonic()
        while not self._abort.is_set():
            self.toggle(state)
            state = not state
            next_toggle += self.half_period
            delay = next_toggle - time.monotonic()
            if delay < 0:
                # Fell behind, don't try to catch up with a burst of toggles
                _log.debug(f"Blink loop late by {-delay * 1000:.1f}ms")
                next_toggle = time.monotonic()
                delay = 0
            self._abort.wait(delay)

    def start(self) -> None:
        if self.is_blinking:
            raise RuntimeError("Blink driver is already running")
        self._abort.clear()
        self.thread = threading.Thread(target=self.thread_func, daemon=True)
        self.thread.start()
        _log.info(f"Blinking with half period {self.half_period * 1000:.1f}ms")

    def stop(self) -> None:
        """Stop toggling and leave the light off."""
        self._abort.set()
        if self.thread is not None:
            self.thread.join()
            self.thread = None
        self.toggle(False)

    def restart(self) -> None:
        self.stop()
        self.start()

    def close(self) -> None:
        if self.channel.closed:
            return
        self.stop()
        self.channel.close()
