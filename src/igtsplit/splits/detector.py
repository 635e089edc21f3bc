"""Split detection state machine over the cleaned timer stream.

    IDLE ──first known value > start──▶ RUNNING ──unknown gap > pause_gap_s──▶ PAUSED
                                          ▲  │                                   │
                                          │  └──end marker / finish()──▶ FINISHED ◀┘ finish()
                                          └──── resume_frames consistent samples ─┘

While RUNNING, every known sample is checked against the boundary policy.
Each boundary is emitted at most once per timer epoch (epochs advance on a
recognised reset), and a sample emits at most one event, so event timestamps
are strictly increasing.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Iterator, Optional

from igtsplit.config.schema import DetectorConfig
from igtsplit.models import CleanedSample, SplitEvent
from igtsplit.splits.policies import SplitBoundary, SplitPolicy

logger = logging.getLogger(__name__)


class DetectorState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"


_END_KEY = ("end",)


class SplitDetector:
    """Consumes CleanedSamples in frame order and emits SplitEvents."""

    def __init__(
        self,
        policy: SplitPolicy,
        start_igt_s: float = 0.0,
        pause_gap_s: float = 0.5,
        resume_frames: int = 2,
        end_igt_s: Optional[float] = None,
        end_label: str = "End",
        final_split: bool = False,
        final_label: str = "Final",
    ) -> None:
        self.policy = policy
        self.start_ms = int(round(start_igt_s * 1000))
        self.pause_gap_s = pause_gap_s
        self.resume_frames = max(1, resume_frames)
        self.end_ms = int(round(end_igt_s * 1000)) if end_igt_s is not None else None
        self.end_label = end_label
        self.final_split = final_split
        self.final_label = final_label

        self._state = DetectorState.IDLE
        self._events: list[SplitEvent] = []
        self._transitions: list[tuple[DetectorState, DetectorState, float]] = []
        self._last_known: Optional[CleanedSample] = None
        self._resume: list[CleanedSample] = []
        self._epoch = 0
        self._crossed: set = set()
        self._last_t: Optional[float] = None

    @classmethod
    def from_config(cls, config: DetectorConfig, policy: SplitPolicy) -> "SplitDetector":
        return cls(
            policy,
            start_igt_s=config.start_igt_s,
            pause_gap_s=config.pause_gap_s,
            resume_frames=config.resume_frames,
            end_igt_s=config.end_igt_s,
            end_label=config.end_label,
            final_split=config.final_split,
            final_label=config.final_label,
        )

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def events(self) -> list[SplitEvent]:
        return list(self._events)

    @property
    def transitions(self) -> list[tuple[DetectorState, DetectorState, float]]:
        return list(self._transitions)

    def feed(self, sample: CleanedSample) -> list[SplitEvent]:
        """Process one sample; return the events it produced."""
        self._last_t = sample.timestamp_s

        if self._state is DetectorState.FINISHED:
            return []

        if self._state is DetectorState.IDLE:
            if sample.known and self._starts(sample):
                self._move(DetectorState.RUNNING, sample.timestamp_s)
                self._last_known = sample
            return []

        if self._state is DetectorState.RUNNING:
            if not sample.known:
                if sample.timestamp_s - self._last_known.timestamp_s > self.pause_gap_s:
                    self._move(DetectorState.PAUSED, sample.timestamp_s)
                    self._resume = []
                return []
            return self._process(sample)

        # PAUSED
        if not sample.known:
            self._resume = []
            return []
        if not self._continues_trend(sample):
            logger.debug("frame %d: %s does not continue the pre-pause trend", sample.frame_index, sample.value)
            self._resume = []
            return []
        self._resume.append(sample)
        if len(self._resume) < self.resume_frames:
            return []

        buffered, self._resume = self._resume, []
        self._move(DetectorState.RUNNING, buffered[0].timestamp_s)
        events: list[SplitEvent] = []
        for s in buffered:
            if self._state is not DetectorState.RUNNING:
                break
            events.extend(self._process(s))
        return events

    def finish(self) -> list[SplitEvent]:
        """End of source: close the run, optionally emitting a final split."""
        if self._state is DetectorState.FINISHED:
            return []

        events: list[SplitEvent] = []
        last = self._last_known
        if self._state is not DetectorState.IDLE and self.final_split and last is not None:
            if not self._events or self._events[-1].timestamp_s < last.timestamp_s:
                events.append(self._emit(last, SplitBoundary(key=("final",), label=self.final_label)))

        t = self._last_t if self._last_t is not None else 0.0
        self._move(DetectorState.FINISHED, t)
        return events

    def run(self, samples: Iterable[CleanedSample]) -> Iterator[SplitEvent]:
        """Convenience generator over a whole sample stream, including finish()."""
        for sample in samples:
            yield from self.feed(sample)
        yield from self.finish()

    # ------------------------------------------------------------------

    def _starts(self, sample: CleanedSample) -> bool:
        value_ms = sample.value.total_ms
        if self.start_ms == 0:
            return value_ms > 0
        return value_ms >= self.start_ms

    def _continues_trend(self, sample: CleanedSample) -> bool:
        if sample.reset:
            return True
        ref = self._resume[-1] if self._resume else self._last_known
        return sample.value.total_ms >= ref.value.total_ms

    def _process(self, sample: CleanedSample) -> list[SplitEvent]:
        previous = self._last_known
        if sample.reset:
            self._epoch += 1

        boundaries = list(self.policy.crossings(previous, sample))
        if self.end_ms is not None and self._reaches_end(previous, sample):
            boundaries.append(SplitBoundary(key=_END_KEY, label=self.end_label))

        fresh = [b for b in boundaries if (self._epoch, b.key) not in self._crossed]
        for b in fresh:
            self._crossed.add((self._epoch, b.key))
        self._last_known = sample

        if not fresh:
            return []
        if len(fresh) > 1:
            logger.warning(
                "frame %d crossed %d boundaries at once (%s); emitting only '%s'",
                sample.frame_index, len(fresh), ", ".join(str(b.label) for b in fresh), fresh[-1].label,
            )
        if self._events and sample.timestamp_s <= self._events[-1].timestamp_s:
            logger.warning("frame %d: non-increasing timestamp %.3f, split dropped", sample.frame_index, sample.timestamp_s)
            return []

        event = self._emit(sample, fresh[-1])
        if fresh[-1].key == _END_KEY:
            self._move(DetectorState.FINISHED, sample.timestamp_s)
        return [event]

    def _reaches_end(self, previous: Optional[CleanedSample], sample: CleanedSample) -> bool:
        if sample.value.total_ms < self.end_ms:
            return False
        if sample.reset or previous is None or previous.value is None:
            return True
        return previous.value.total_ms < self.end_ms

    def _emit(self, sample: CleanedSample, boundary: SplitBoundary) -> SplitEvent:
        event = SplitEvent(
            sequence_number=len(self._events) + 1,
            timestamp_s=sample.timestamp_s,
            igt=boundary.igt if boundary.igt is not None else sample.value,
            label=boundary.label,
        )
        self._events.append(event)
        logger.info("split #%d '%s' at %.3fs: %s", event.sequence_number, event.label, event.timestamp_s, event.igt.format())
        return event

    def _move(self, new: DetectorState, t: float) -> None:
        logger.debug("detector %s -> %s at %.3fs", self._state.value, new.value, t)
        self._transitions.append((self._state, new, t))
        self._state = new
