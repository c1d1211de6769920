from __future__ import annotations

from logging import getLogger
from typing import Dict, Optional, Tuple

import numpy as np

from strobecam.frame import FramePair, Slot

_log = getLogger(__name__)


class PairedFrameBuffer:
    """Holds the latest lit and unlit frames for the differencing stage.

    A pair is only ready once both slots have been written since the last
    ``consume()``. Consuming does not throw the frames away: they stay readable
    until overwritten (last writer wins, no history). Storage is allocated on
    the first write and reused afterwards; a different frame shape needs an
    explicit ``reallocate()``.
    """

    def __init__(self, shape: Optional[Tuple[int, ...]] = None, dtype=np.uint8) -> None:
        self.dtype = dtype
        self.cycle = 0
        self.reallocate(shape)

    @property
    def shape(self) -> Optional[Tuple[int, ...]]:
        return self._shape

    def reallocate(self, shape: Optional[Tuple[int, ...]]) -> None:
        """Drop both frames and all validity, sizing storage for ``shape``."""
        self._shape = tuple(shape) if shape is not None else None
        self._frames: Dict[Slot, Optional[np.ndarray]] = {
            slot: None if shape is None else np.zeros(shape, dtype=self.dtype)
            for slot in Slot
        }
        self._valid = {slot: False for slot in Slot}
        self._fresh = {slot: False for slot in Slot}
        self._times = {slot: 0.0 for slot in Slot}
        self._writes = {slot: 0 for slot in Slot}
        if shape is not None:
            _log.debug(f"Frame buffer allocated for shape {self._shape}")

    def write(self, slot: Slot, frame: np.ndarray, timestamp: float = 0.0) -> None:
        if self._shape is None:
            self.dtype = frame.dtype
            self.reallocate(frame.shape)
        elif frame.shape != self._shape:
            raise ValueError(
                f"Frame shape {frame.shape} does not match buffer shape {self._shape}"
            )
        np.copyto(self._frames[slot], frame, casting="unsafe")
        self._valid[slot] = True
        self._fresh[slot] = True
        self._times[slot] = timestamp
        self._writes[slot] += 1

    def has_frame(self, slot: Slot) -> bool:
        return self._valid[slot]

    def write_count(self, slot: Slot) -> int:
        return self._writes[slot]

    def frame(self, slot: Slot) -> Optional[np.ndarray]:
        return self._frames[slot] if self._valid[slot] else None

    def is_pair_ready(self) -> bool:
        return self._fresh[Slot.ON] and self._fresh[Slot.OFF]

    def consume(self) -> FramePair:
        """Hand the current pair over and start waiting for the next one.

        Raises RuntimeError if either slot has never been written.
        """
        if not (self._valid[Slot.ON] and self._valid[Slot.OFF]):
            raise RuntimeError("Cannot consume a frame pair before both slots are written")
        self.cycle += 1
        self._fresh = {slot: False for slot in Slot}
        return FramePair(
            on=self._frames[Slot.ON],
            off=self._frames[Slot.OFF],
            on_time=self._times[Slot.ON],
            off_time=self._times[Slot.OFF],
            cycle=self.cycle,
        )
