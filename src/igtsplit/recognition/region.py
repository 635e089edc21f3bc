"""Timer region cropping and OCR preprocessing.

The transform is fixed and deterministic (no learned parameters, no state
carried between frames), so region extraction may run concurrently across
frames.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from igtsplit.config.schema import PreprocessConfig, RegionConfig
from igtsplit.errors import InvalidRegion
from igtsplit.models import Frame


@dataclass(frozen=True)
class TimerRegion:
    """Rectangle around the on-screen timer."""

    x: float
    y: float
    width: float
    height: float
    units: str = "px"   # "px" | "relative"

    @classmethod
    def from_config(cls, config: RegionConfig) -> "TimerRegion":
        return cls(x=config.x, y=config.y, width=config.width, height=config.height, units=config.units)

    def to_pixels(self, frame_width: int, frame_height: int) -> tuple[int, int, int, int]:
        """Return ``(x, y, w, h)`` in integer pixels for a frame of the given size."""
        if self.units == "relative":
            x = int(round(self.x * frame_width))
            y = int(round(self.y * frame_height))
            w = int(round(self.width * frame_width))
            h = int(round(self.height * frame_height))
        else:
            x, y, w, h = int(self.x), int(self.y), int(self.width), int(self.height)
        return x, y, w, h


class RegionExtractor:
    """Crops frames to the timer region and normalises them for OCR."""

    def __init__(self, region: TimerRegion, preprocess: PreprocessConfig | None = None) -> None:
        self.region = region
        self.preprocess = preprocess if preprocess is not None else PreprocessConfig()

    def validate(self, frame_width: int, frame_height: int) -> tuple[int, int, int, int]:
        """Check the region against a frame size; raise InvalidRegion if it does not fit."""
        x, y, w, h = self.region.to_pixels(frame_width, frame_height)
        if w <= 0 or h <= 0 or x < 0 or y < 0 or x + w > frame_width or y + h > frame_height:
            raise InvalidRegion((x, y, w, h), (frame_width, frame_height))
        return x, y, w, h

    def extract(self, frame: Frame) -> np.ndarray:
        """Return the preprocessed crop of *frame*'s timer region."""
        height, width = frame.image.shape[:2]
        x, y, w, h = self.validate(width, height)
        crop = frame.image[y:y + h, x:x + w]
        return self._normalize(crop)

    def _normalize(self, crop: np.ndarray) -> np.ndarray:
        p = self.preprocess
        img = crop

        if p.grayscale and img.ndim == 3:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

        if p.contrast_stretch:
            img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)

        if p.scale != 1.0:
            img = cv2.resize(img, None, fx=p.scale, fy=p.scale, interpolation=cv2.INTER_CUBIC)

        if p.binarize:
            if img.ndim == 3:
                img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
            _, img = cv2.threshold(img, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

        if p.invert:
            img = cv2.bitwise_not(img)

        return np.ascontiguousarray(img)
