"""Round-trip latency probing.

A batch of PING probes produces the one-way baseline (mean RTT / 2) that feeds
the delay policy. Probing blocks for up to the probe timeout per probe, so it
belongs at startup or on an explicit re-measure, or on a worker thread via
``measure_async``. Only one batch may use the socket at a time.
"""
from __future__ import annotations

import itertools
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from logging import getLogger
from statistics import fmean
from typing import List, Optional, Tuple, Union

from strobecam.channel import Command, CommandChannel
from strobecam.exceptions import MeasurementInProgressError
from strobecam.timing import TimingSnapshot, TimingState

_log = getLogger(__name__)


@dataclass
class MeasurementResult:
    samples: List[Optional[float]] = field(default_factory=list)
    """Round trip per probe in milliseconds, None where the probe timed out."""

    baseline_ms: Optional[float] = None
    snapshot: Optional[TimingSnapshot] = None

    @property
    def rtts(self) -> List[float]:
        return [s for s in self.samples if s is not None]

    @property
    def successes(self) -> int:
        return len(self.rtts)

    @property
    def success(self) -> bool:
        return self.successes > 0

    @property
    def mean_rtt_ms(self) -> Optional[float]:
        return fmean(self.rtts) if self.rtts else None


@dataclass(frozen=True)
class LinkStats:
    ping_count: int
    last_rtt_ms: Optional[float]
    last_timed_out: bool
    baseline_ms: float
    safety_margin_ms: float
    total_wait_ms: float
    measured: bool

    @property
    def approx_one_way_ms(self) -> Optional[float]:
        if self.last_rtt_ms is None:
            return None
        return self.last_rtt_ms / 2


class LatencyEstimator:
    def __init__(
        self,
        channel: CommandChannel,
        timing: TimingState,
        batch_size: int = 5,
        timeout: float = 0.2,
        tag_probes: bool = False,
        clock=time.monotonic,
    ) -> None:
        self.channel = channel
        self.timing = timing
        self.batch_size = batch_size
        self.timeout = timeout
        self.tag_probes = tag_probes
        self._clock = clock
        # Held for a whole probe or batch
        self._lock = threading.Lock()
        # Held by whoever is reading replies right now, a probe or a controller tick
        self._socket_lock = threading.Lock()
        self._tags = itertools.count(1)

        # Set when a controller sends display pings from its own tick, so
        # nothing else may drain the socket between its ticks
        self.display_pings_on_tick = False

        # Display-only values, never fed back into capture timing
        self.ping_count = 0
        self.last_rtt_ms: Optional[float] = None
        self.last_timed_out = False

    @property
    def busy(self) -> bool:
        """True while a probe or a batch holds the socket."""
        return self._lock.locked()

    def claim_socket(self) -> bool:
        """Take the reply side of the socket for one controller tick, without waiting.

        Returns False if a probe is reading it. Pair with ``release_socket``.
        """
        return self._socket_lock.acquire(blocking=False)

    def release_socket(self) -> None:
        self._socket_lock.release()

    def next_probe(self) -> Tuple[Union[Command, str], Optional[str]]:
        """The PING payload to send and the tag its reply should carry."""
        if self.tag_probes:
            tag = str(next(self._tags))
            return f"{Command.PING.value} {tag}", tag
        return Command.PING, None

    def _probe(self, timeout: float) -> Optional[float]:
        self.channel.drain()
        payload, tag = self.next_probe()

        t0 = self._clock()
        if not self.channel.send(payload, duplicates=1):
            return None

        while True:
            remaining = timeout - (self._clock() - t0)
            if remaining <= 0:
                return None
            reply = self.channel.receive_with_timeout(remaining)
            if reply is None:
                return None
            elapsed = self._clock() - t0
            if not reply.is_pong():
                _log.debug(f"Ignoring {reply.text!r} while waiting for PONG")
                continue
            if tag is not None and reply.tag is not None and reply.tag != tag:
                _log.debug(f"Discarding stale reply {reply.text!r}, expected tag {tag}")
                continue
            return elapsed * 1000.0

    def probe(self, timeout: Optional[float] = None) -> Optional[float]:
        """Send one PING and return the round trip in ms, or None on timeout."""
        if not self._lock.acquire(blocking=False):
            raise MeasurementInProgressError("A latency measurement is already running")
        try:
            with self._socket_lock:
                return self._probe(self.timeout if timeout is None else timeout)
        finally:
            self._lock.release()

    def _measure(self, batch_size: int) -> MeasurementResult:
        result = MeasurementResult()
        for i in range(batch_size):
            rtt = self._probe(self.timeout)
            result.samples.append(rtt)
            if rtt is None:
                self.last_timed_out = True
                _log.warning(f"Ping {i + 1}: timeout")
            else:
                self.last_rtt_ms = rtt
                self.last_timed_out = False
                _log.debug(f"Ping {i + 1}: {rtt:.1f}ms")

        if result.success:
            mean_rtt = result.mean_rtt_ms
            result.baseline_ms = mean_rtt / 2.0
            result.snapshot = self.timing.set_baseline(result.baseline_ms)
            self.last_rtt_ms = mean_rtt
            self.last_timed_out = False
            _log.info(
                f"Avg RTT={mean_rtt:.1f}ms ({result.successes}/{batch_size}) -> "
                f"baseline={result.baseline_ms:.1f}ms -> "
                f"total wait={result.snapshot.total_wait_ms:.1f}ms"
            )
        else:
            result.snapshot = self.timing.snapshot
            _log.warning(
                f"All {batch_size} pings failed, keeping baseline="
                f"{result.snapshot.baseline_ms:.1f}ms"
            )
        return result

    def measure(self, batch_size: Optional[int] = None) -> MeasurementResult:
        """Run a probe batch and publish the new baseline if any probe succeeded.

        With zero successful probes the previous baseline is left alone.
        Raises MeasurementInProgressError if another batch is running.
        """
        if not self._lock.acquire(blocking=False):
            raise MeasurementInProgressError("A latency measurement is already running")
        try:
            with self._socket_lock:
                return self._measure(batch_size or self.batch_size)
        finally:
            self._lock.release()

    def measure_async(self, batch_size: Optional[int] = None) -> Future:
        """Run ``measure`` on a worker thread and return a future for the result.

        The in-progress check happens here, on the calling thread, so a rejected
        request raises immediately rather than through the future.
        """
        if not self._lock.acquire(blocking=False):
            raise MeasurementInProgressError("A latency measurement is already running")

        future = Future()
        future.set_running_or_notify_cancel()

        def worker():
            try:
                with self._socket_lock:
                    result = self._measure(batch_size or self.batch_size)
                future.set_result(result)
            except Exception as e:
                _log.exception("Latency measurement failed")
                future.set_exception(e)
            finally:
                self._lock.release()

        threading.Thread(target=worker, daemon=True).start()
        return future

    def ping_for_display(self) -> Optional[float]:
        """Single probe that only updates the display values.

        Skipped (returns None) while a batch is running, and always when a
        controller runs display pings from its own tick.
        """
        if self.display_pings_on_tick:
            return None
        if not self._lock.acquire(blocking=False):
            return None
        try:
            with self._socket_lock:
                rtt = self._probe(self.timeout)
        finally:
            self._lock.release()
        return self.record_display_rtt(rtt)

    def record_display_rtt(self, rtt: Optional[float]) -> Optional[float]:
        """Update the display values with one ping result (None for a timeout)."""
        self.ping_count += 1
        if rtt is None:
            self.last_timed_out = True
        else:
            self.last_rtt_ms = rtt
            self.last_timed_out = False
        return rtt

    def stats(self) -> LinkStats:
        snapshot = self.timing.snapshot
        return LinkStats(
            ping_count=self.ping_count,
            last_rtt_ms=self.last_rtt_ms,
            last_timed_out=self.last_timed_out,
            baseline_ms=snapshot.baseline_ms,
            safety_margin_ms=snapshot.safety_margin_ms,
            total_wait_ms=snapshot.total_wait_ms,
            measured=snapshot.measured,
        )


class PeriodicPinger:
    """Background display pinger. Never touches the baseline or delay budget."""

    def __init__(self, estimator: LatencyEstimator, ping_hz: float) -> None:
        self.estimator = estimator
        self.ping_hz = ping_hz
        self._abort = threading.Event()
        self.thread = None

    def thread_func(self):
        while not self._abort.wait(1.0 / self.ping_hz):
            try:
                self.estimator.ping_for_display()
            except Exception:
                _log.exception("Display ping failed")

    def start(self):
        if self.ping_hz <= 0:
            _log.debug("Display pinging disabled")
            return
        self._abort.clear()
        self.thread = threading.Thread(target=self.thread_func, daemon=True)
        self.thread.start()

    def stop(self):
        self._abort.set()
        if self.thread is not None:
            self.thread.join()
            self.thread = None
