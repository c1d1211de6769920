from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Tuple

import numpy as np
from PIL import Image


class FrameSource(Protocol):
    """The live video feed. Implemented outside this package."""

    @property
    def ready(self) -> bool:
        """True once the source is producing frames."""

    def get_frame(self) -> Optional[np.ndarray]:
        """The current frame as an (H, W) or (H, W, C) array, or None."""


class Slot(Enum):
    ON = "on"
    OFF = "off"

    @classmethod
    def for_state(cls, light_on: bool) -> Slot:
        return cls.ON if light_on else cls.OFF

    @property
    def other(self) -> Slot:
        return Slot.OFF if self is Slot.ON else Slot.ON


def frame_size(frame: np.ndarray) -> Tuple[int, int]:
    """(width, height) of an image array."""
    return (frame.shape[1], frame.shape[0])


def _to_image(array: np.ndarray) -> Image.Image:
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    return Image.fromarray(array)


@dataclass
class FramePair:
    on: np.ndarray
    """Frame captured while the light was on."""

    off: np.ndarray
    """Frame captured while the light was off."""

    on_time: float
    off_time: float
    cycle: int
    """Index of the cycle that produced this pair, counted from 1."""

    threshold: float = 0.0
    """Subtraction threshold in effect when the pair was handed over."""

    @property
    def size(self) -> Tuple[int, int]:
        return frame_size(self.on)

    def make_images(self) -> Tuple[Image.Image, Image.Image]:
        return (_to_image(self.on), _to_image(self.off))

    def save(self, on_file, off_file, format=None) -> None:
        """Write both frames out as images, e.g. for offline inspection."""
        on_image, off_image = self.make_images()
        on_image.convert("RGB").save(on_file, format=format)
        off_image.convert("RGB").save(off_file, format=format)
