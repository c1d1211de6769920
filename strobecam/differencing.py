"""Reference differencing stage.

The real subtraction normally runs elsewhere (on a GPU, in a shader). This
numpy version exists so a pipeline can be run and inspected end to end.
"""
from typing import Callable, Optional

import numpy as np
from PIL import Image

from strobecam.frame import FramePair

Differencer = Callable[[np.ndarray, np.ndarray, float], np.ndarray]


def subtract_with_threshold(on: np.ndarray, off: np.ndarray, threshold: float) -> np.ndarray:
    """``max(on - off, 0)`` with differences below ``threshold`` zeroed.

    ``threshold`` is a fraction of full scale (255 for uint8 frames, 1.0 for
    float frames).
    """
    scale = 255.0 if np.issubdtype(on.dtype, np.integer) else 1.0
    diff = np.clip(on.astype(np.float32) - off.astype(np.float32), 0, None)
    diff[diff < threshold * scale] = 0
    return diff.astype(on.dtype)


class DifferenceSink:
    """Pair callback that runs a differencer and keeps the latest result."""

    def __init__(self, differencer: Differencer = subtract_with_threshold) -> None:
        self.differencer = differencer
        self.latest: Optional[np.ndarray] = None
        self.cycle = 0

    def __call__(self, pair: FramePair) -> None:
        self.latest = self.differencer(pair.on, pair.off, pair.threshold)
        self.cycle = pair.cycle

    def make_image(self) -> Image.Image:
        if self.latest is None:
            raise RuntimeError("No difference image produced yet")
        return Image.fromarray(self.latest)
