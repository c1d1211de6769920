"""Delay policy and the single owner of the shared timing values."""
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from logging import getLogger

_log = getLogger(__name__)

MIN_DELAY_MS = 10.0
MAX_DELAY_MS = 500.0


def compute_total_wait(
    baseline_ms: float,
    safety_margin_ms: float,
    min_ms: float = MIN_DELAY_MS,
    max_ms: float = MAX_DELAY_MS,
) -> float:
    """Return ``clamp(baseline + margin, min_ms, max_ms)``.

    Always lands inside the bounds, NaN included (which maps to ``min_ms``).
    """
    total = baseline_ms + safety_margin_ms
    if math.isnan(total):
        return min_ms
    return min(max(total, min_ms), max_ms)


@dataclass(frozen=True)
class TimingSnapshot:
    baseline_ms: float
    safety_margin_ms: float
    total_wait_ms: float
    measured: bool = False
    """True once a probe batch has produced the baseline."""

    @property
    def total_wait_s(self) -> float:
        return self.total_wait_ms / 1000.0

    @property
    def one_way_ms(self) -> float:
        """Measured one-way latency, or 0 when nothing has been measured yet."""
        return self.baseline_ms if self.measured else 0.0


class TimingState:
    """Publishes ``(baseline, margin, total_wait)`` as one immutable snapshot.

    Writers swap in a whole new snapshot under a lock; readers take
    ``snapshot`` once per tick and never see a half-updated tuple.
    """

    def __init__(
        self,
        baseline_ms: float = 20.0,
        safety_margin_ms: float = 40.0,
        min_ms: float = MIN_DELAY_MS,
        max_ms: float = MAX_DELAY_MS,
    ) -> None:
        self.min_ms = min_ms
        self.max_ms = max_ms
        self._lock = threading.Lock()
        self._snapshot = self._make(baseline_ms, safety_margin_ms, False)

    def _make(self, baseline_ms, safety_margin_ms, measured) -> TimingSnapshot:
        return TimingSnapshot(
            baseline_ms=baseline_ms,
            safety_margin_ms=safety_margin_ms,
            total_wait_ms=compute_total_wait(
                baseline_ms, safety_margin_ms, self.min_ms, self.max_ms
            ),
            measured=measured,
        )

    @property
    def snapshot(self) -> TimingSnapshot:
        return self._snapshot

    def set_baseline(self, baseline_ms: float, measured: bool = True) -> TimingSnapshot:
        with self._lock:
            current = self._snapshot
            self._snapshot = self._make(
                baseline_ms, current.safety_margin_ms, measured or current.measured
            )
            snapshot = self._snapshot
        _log.debug(
            f"Baseline {baseline_ms:.3f}ms -> total wait {snapshot.total_wait_ms:.3f}ms"
        )
        return snapshot

    def set_safety_margin(self, safety_margin_ms: float) -> TimingSnapshot:
        with self._lock:
            current = self._snapshot
            self._snapshot = self._make(
                current.baseline_ms, safety_margin_ms, current.measured
            )
            snapshot = self._snapshot
        _log.debug(
            f"Safety margin {safety_margin_ms:.3f}ms -> total wait {snapshot.total_wait_ms:.3f}ms"
        )
        return snapshot

