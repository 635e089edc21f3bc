from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class Frame:
    """A single decoded video frame."""

    index: int            # Ordinal position in the source video
    timestamp_s: float    # Seconds since video start
    image: np.ndarray = field(repr=False, compare=False)


@dataclass(frozen=True)
class RawReading:
    """Result of one OCR call over the timer region of one frame."""

    frame_index: int
    timestamp_s: float
    text: str             # Recognised string, "" when nothing was read
    confidence: float     # Opaque, comparable only against other readings
    success: bool         # OCR returned a charset-valid result


@dataclass(frozen=True)
class TimerValue:
    """Elapsed in-game time decomposed into integer fields."""

    hours: int = 0
    minutes: int = 0
    seconds: int = 0
    millis: int = 0
    percent: Optional[int] = None   # Completion marker shown beside some timers ("117% 3:03:23")

    @property
    def total_ms(self) -> int:
        return ((self.hours * 60 + self.minutes) * 60 + self.seconds) * 1000 + self.millis

    @property
    def total_s(self) -> float:
        return self.total_ms / 1000.0

    @classmethod
    def from_ms(cls, total_ms: int, percent: Optional[int] = None) -> "TimerValue":
        total_ms = max(0, int(total_ms))
        seconds, millis = divmod(total_ms, 1000)
        minutes, seconds = divmod(seconds, 60)
        hours, minutes = divmod(minutes, 60)
        return cls(hours=hours, minutes=minutes, seconds=seconds, millis=millis, percent=percent)

    def format(self) -> str:
        """Render as ``H:MM:SS.mmm`` (minutes carried into hours)."""
        return TimerValue.from_ms(self.total_ms)._format_fields()

    def _format_fields(self) -> str:
        return f"{self.hours}:{self.minutes:02d}:{self.seconds:02d}.{self.millis:03d}"

    def __str__(self) -> str:
        if self.percent is None:
            return self.format()
        return f"{self.percent}% {self.format()}"


@dataclass(frozen=True)
class CleanedSample:
    """Authoritative per-frame timer record produced by the reconciler."""

    frame_index: int
    timestamp_s: float
    value: Optional[TimerValue]   # None means "unknown"
    corrected: bool = False       # Repaired from a rejected or missing reading
    reset: bool = False           # First sample after a recognised timer reset

    @property
    def known(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class SplitEvent:
    """A detected split boundary."""

    sequence_number: int
    timestamp_s: float            # Video time of the frame that crossed the boundary
    igt: TimerValue
    label: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label if self.label else f"Split {self.sequence_number}"


@dataclass(frozen=True)
class SubtitleCue:
    """One rendered subtitle cue."""

    index: int
    start_ms: int
    end_ms: int
    text: str
