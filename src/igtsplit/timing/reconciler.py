"""Temporal reconciliation of noisy timer readings.

OCR misreads single digits far more often than it misses a whole frame, and a
misread digit almost always produces a physically impossible jump.  The
reconciler therefore accepts a reading only if it lies inside the range the
timer could have reached since the last trusted reading:

    lo = V                                     (allow_hold: IGT may stop)
    lo = V + max(0, dt * rate * (1 - tol) - res)
    hi = V + dt * rate * (1 + tol) + res

where V is the last trusted value, dt the video time since it, rate the
running IGT/video rate estimate, tol the jitter tolerance and res the
display resolution of the timer format.

A reading equal to V is trusted at once.  A reading that advances V is held
as tentative until the next parsed reading agrees with it; a next reading
that is plausible from V but not from the tentative one demotes it to a
rejection.  A tentative reading that is never contradicted is trusted when it
would otherwise fall out of the queue, or at the end of the stream.

Readings that are missing, unparseable, low-confidence or out of range are
held in a pending queue of at most K (``window``) frames.  When the next
trusted reading arrives, the pending samples are repaired by linear
interpolation between the two trusted values and flagged ``corrected``.
Samples that fall out of the queue without a bracket are emitted as unknown.
Output is therefore delayed by at most K frames.

Discontinuities:

* reset: a chain of consistent readings that starts well below V is accepted
  as a timer reset (``reset=True``).  Near zero a short chain suffices; a
  reset first seen above ``reset_ceiling_s`` needs a relock-length chain;
* relock: a longer chain of consistent readings above the expected range
  re-anchors the reconciler (the timer really did jump forward).

Backward jumps are only ever accepted as resets, so known values are
non-decreasing between reset boundaries.  No reading, however garbled, makes
the reconciler raise; the worst case is a run of unknown samples.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from igtsplit.config.schema import ReconcilerConfig
from igtsplit.errors import ParseFailure
from igtsplit.models import CleanedSample, RawReading, TimerValue
from igtsplit.timing.grammar import TimerFormat

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerStats:
    """Per-run outcome counts."""

    trusted: int = 0
    corrected: int = 0
    resets: int = 0
    relocks: int = 0
    rejected: int = 0         # plausibility rejections
    provisional: int = 0      # failed OCR, parse failure or low confidence
    unrecoverable: int = 0    # emitted as unknown

    def as_dict(self) -> dict[str, int]:
        return {
            "trusted": self.trusted,
            "corrected": self.corrected,
            "resets": self.resets,
            "relocks": self.relocks,
            "rejected": self.rejected,
            "provisional": self.provisional,
            "unrecoverable": self.unrecoverable,
        }


@dataclass
class _Pending:
    reading: RawReading
    candidate: Optional[TimerValue]
    tentative: bool = False    # in range, awaiting a confirming reading

    @property
    def t(self) -> float:
        return self.reading.timestamp_s


class TemporalReconciler:
    """Turns a strictly ordered RawReading stream into CleanedSamples."""

    def __init__(
        self,
        timer_format: TimerFormat,
        nominal_rate: float = 1.0,
        tolerance: float = 0.5,
        window: int = 8,
        min_confidence: float = 0.0,
        allow_hold: bool = True,
        reset_ceiling_s: float = 5.0,
        reset_min_drop_s: float = 1.0,
        min_reset_gap_s: float = 5.0,
        reset_confirm_frames: int = 2,
        relock_frames: int = 6,
        rate_smoothing: float = 0.2,
    ) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self.timer_format = timer_format
        self.nominal_rate = nominal_rate
        self.tolerance = tolerance
        self.window_size = window
        self.min_confidence = min_confidence
        self.allow_hold = allow_hold
        self.reset_ceiling_ms = int(reset_ceiling_s * 1000)
        self.reset_min_drop_ms = int(reset_min_drop_s * 1000)
        self.min_reset_gap_s = min_reset_gap_s
        self.reset_confirm_frames = max(1, min(reset_confirm_frames, window))
        self.relock_frames = max(2, min(relock_frames, window))
        self.rate_smoothing = rate_smoothing

        self.stats = ReconcilerStats()
        self._res = timer_format.resolution_ms
        self._rate = nominal_rate
        self._anchor: Optional[CleanedSample] = None
        self._change: Optional[tuple[int, float]] = None   # (value_ms, first seen at)
        self._last_reset_t: Optional[float] = None
        self._pending: deque[_Pending] = deque()
        self._window: deque[CleanedSample] = deque(maxlen=window)
        self._last_index: Optional[int] = None

    @classmethod
    def from_config(
        cls,
        timer_format: TimerFormat,
        config: ReconcilerConfig,
        min_confidence: float = 0.0,
    ) -> "TemporalReconciler":
        return cls(
            timer_format,
            nominal_rate=config.nominal_rate,
            tolerance=config.tolerance,
            window=config.window,
            min_confidence=min_confidence,
            allow_hold=config.allow_hold,
            reset_ceiling_s=config.reset_ceiling_s,
            reset_min_drop_s=config.reset_min_drop_s,
            min_reset_gap_s=config.min_reset_gap_s,
            reset_confirm_frames=config.reset_confirm_frames,
            relock_frames=config.relock_frames,
            rate_smoothing=config.rate_smoothing,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def rate(self) -> float:
        """Current IGT seconds per video second estimate."""
        return self._rate

    @property
    def anchor(self) -> Optional[CleanedSample]:
        """Last trusted sample, if any."""
        return self._anchor

    @property
    def window(self) -> tuple[CleanedSample, ...]:
        """The last K emitted samples."""
        return tuple(self._window)

    def feed(self, reading: RawReading) -> list[CleanedSample]:
        """Consume one reading; return the samples finalised by it, in frame order."""
        if self._last_index is not None and reading.frame_index <= self._last_index:
            raise ValueError(
                f"readings must be strictly ordered: frame {reading.frame_index} "
                f"after frame {self._last_index}"
            )
        self._last_index = reading.frame_index

        out: list[CleanedSample] = []
        candidate = self._candidate(reading)
        if self._anchor is None:
            self._bootstrap(reading, candidate, out)
        else:
            self._advance(reading, candidate, out)
        return out

    def flush(self) -> list[CleanedSample]:
        """End of stream: a tentative sample is trusted, the rest have no closing bracket and become unknown."""
        out: list[CleanedSample] = []
        index = self._tentative_index()
        if index is not None:
            self._confirm(index, out)
        while self._pending:
            self._emit_unknown(self._pending.popleft(), out)
        return out

    def reconcile(self, readings: Iterable[RawReading]) -> Iterator[CleanedSample]:
        """Convenience generator over a whole reading stream."""
        for reading in readings:
            yield from self.feed(reading)
        yield from self.flush()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _candidate(self, reading: RawReading) -> Optional[TimerValue]:
        if not reading.success or reading.confidence < self.min_confidence:
            self.stats.provisional += 1
            return None
        try:
            return self.timer_format.parse(reading.text)
        except ParseFailure as exc:
            logger.debug("frame %d: %s", reading.frame_index, exc)
            self.stats.provisional += 1
            return None

    def _range(self, value_ms: int, dt: float, rate: float) -> tuple[float, float]:
        dt = max(0.0, dt)
        hi = value_ms + dt * 1000.0 * rate * (1.0 + self.tolerance) + self._res
        if self.allow_hold:
            lo = float(value_ms)
        else:
            lo = value_ms + max(0.0, dt * 1000.0 * rate * (1.0 - self.tolerance) - self._res)
        return lo, hi

    def _consistent(self, a: TimerValue, ta: float, b: TimerValue, tb: float, rate: float) -> bool:
        lo, hi = self._range(a.total_ms, tb - ta, rate)
        return lo <= b.total_ms <= hi

    def _bootstrap(self, reading: RawReading, candidate: Optional[TimerValue], out: list[CleanedSample]) -> None:
        if candidate is not None:
            for i in range(len(self._pending) - 1, -1, -1):
                p = self._pending[i]
                if p.candidate is None:
                    continue
                if self._consistent(p.candidate, p.t, candidate, reading.timestamp_s, self.nominal_rate):
                    for _ in range(i):
                        self._emit_unknown(self._pending.popleft(), out)
                    first = self._pending.popleft()
                    self._trust(first.reading, first.candidate, out)
                    logger.debug("anchored on frame %d (%s)", first.reading.frame_index, first.candidate)
                    self._advance(reading, candidate, out)
                    return
        self._defer(reading, candidate, out)

    def _advance(
        self,
        reading: RawReading,
        candidate: Optional[TimerValue],
        out: list[CleanedSample],
        refeed: bool = False,
    ) -> None:
        if candidate is None:
            self._defer(reading, None, out)
            return

        tentative = self._tentative_index()
        if tentative is not None:
            p = self._pending[tentative]
            if (
                self._consistent(p.candidate, p.t, candidate, reading.timestamp_s, self._rate)
                and not _percent_regressed(p.candidate, candidate)
            ):
                self._confirm(tentative, out)
                self._advance(reading, candidate, out, refeed=refeed)
                return

        anchor = self._anchor
        lo, hi = self._range(anchor.value.total_ms, reading.timestamp_s - anchor.timestamp_s, self._rate)
        if lo <= candidate.total_ms <= hi and not _percent_regressed(anchor.value, candidate):
            if tentative is not None:
                p = self._pending[tentative]
                p.tentative = False
                self.stats.rejected += 1
                logger.debug(
                    "frame %d: %s contradicted by frame %d (%s), rejected",
                    p.reading.frame_index, p.candidate, reading.frame_index, candidate,
                )
            if _same_reading(anchor.value, candidate):
                self._repair_pending(reading.timestamp_s, candidate, out)
                self._trust(reading, candidate, out)
            else:
                self._pending.append(_Pending(reading, candidate, tentative=True))
                self._settle(out)
            return

        if not refeed:
            self.stats.rejected += 1
        logger.debug(
            "frame %d: %s outside [%.0f, %.0f] ms, rejected",
            reading.frame_index, candidate, lo, hi,
        )
        self._defer(reading, candidate, out)
        self._try_discontinuity(out)

    # ------------------------------------------------------------------
    # Discontinuities
    # ------------------------------------------------------------------

    def _trailing_chain(self) -> list[int]:
        """Indices of the longest consistent run of candidates at the end of the pending queue."""
        chain: list[int] = []
        for i in range(len(self._pending) - 1, -1, -1):
            p = self._pending[i]
            if p.candidate is None:
                continue
            if chain:
                later = self._pending[chain[-1]]
                if not self._consistent(p.candidate, p.t, later.candidate, later.t, self._rate):
                    break
            chain.append(i)
        chain.reverse()
        return chain

    def _is_reset(self, value: TimerValue, t: float, chain_length: int) -> bool:
        drop = self._anchor.value.total_ms - value.total_ms
        if drop <= 0 or drop < self.reset_min_drop_ms:
            return False
        if self._last_reset_t is not None and t - self._last_reset_t < self.min_reset_gap_s:
            return False
        if value.total_ms <= self.reset_ceiling_ms:
            return chain_length >= self.reset_confirm_frames
        # first seen after the new run already passed the ceiling
        return chain_length >= self.relock_frames

    def _try_discontinuity(self, out: list[CleanedSample]) -> None:
        chain = self._trailing_chain()
        if not chain:
            return
        head = self._pending[chain[0]]

        if self._is_reset(head.candidate, head.t, len(chain)):
            logger.info(
                "timer reset at frame %d: %s -> %s",
                head.reading.frame_index, self._anchor.value, head.candidate,
            )
            self._restart_at(chain[0], out, reset=True)
            return

        if len(chain) >= self.relock_frames:
            _, hi = self._range(self._anchor.value.total_ms, head.t - self._anchor.timestamp_s, self._rate)
            if head.candidate.total_ms > hi:
                logger.warning(
                    "relocking at frame %d: %s -> %s after %d consistent readings",
                    head.reading.frame_index, self._anchor.value, head.candidate, len(chain),
                )
                self.stats.relocks += 1
                self._restart_at(chain[0], out, reset=False)

    def _restart_at(self, index: int, out: list[CleanedSample], reset: bool) -> None:
        """Anchor on pending[index]; earlier pending samples become unknown, later ones are re-classified.

        A tentative sample before the new anchor was never contradicted and is
        trusted first.
        """
        tentative = self._tentative_index()
        if tentative is not None and tentative < index:
            self._confirm(tentative, out)
            index -= tentative + 1
        for _ in range(index):
            self._emit_unknown(self._pending.popleft(), out)
        head = self._pending.popleft()
        rest = list(self._pending)
        self._pending.clear()

        self._trust(head.reading, head.candidate, out, reset=reset)
        for p in rest:
            self._advance(p.reading, p.candidate, out, refeed=True)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _defer(self, reading: RawReading, candidate: Optional[TimerValue], out: list[CleanedSample]) -> None:
        self._pending.append(_Pending(reading, candidate))
        self._settle(out)

    def _settle(self, out: list[CleanedSample]) -> None:
        while len(self._pending) > self.window_size:
            if self._pending[0].tentative:
                # uncontradicted for a full window
                self._confirm(0, out)
            else:
                self._emit_unknown(self._pending.popleft(), out)

    def _tentative_index(self) -> Optional[int]:
        for i in range(len(self._pending) - 1, -1, -1):
            if self._pending[i].tentative:
                return i
        return None

    def _confirm(self, index: int, out: list[CleanedSample]) -> None:
        """Trust the tentative pending[index], repairing the samples queued before it."""
        p = self._pending[index]
        self._repair_pending(p.t, p.candidate, out, count=index)
        self._pending.popleft()
        self._trust(p.reading, p.candidate, out)

    def _repair_pending(
        self,
        t_new: float,
        value_new: TimerValue,
        out: list[CleanedSample],
        count: Optional[int] = None,
    ) -> None:
        anchor = self._anchor
        v0 = anchor.value.total_ms
        v1 = value_new.total_ms
        span = t_new - anchor.timestamp_s
        for _ in range(len(self._pending) if count is None else count):
            p = self._pending.popleft()
            frac = (p.t - anchor.timestamp_s) / span if span > 0 else 0.0
            interp = v0 + frac * (v1 - v0)
            # Snap down to the display grid, never below the anchor.
            ms = max(v0, int(math.floor(interp / self._res)) * self._res)
            ms = min(ms, v1)
            sample = CleanedSample(
                frame_index=p.reading.frame_index,
                timestamp_s=p.t,
                value=TimerValue.from_ms(ms, percent=anchor.value.percent),
                corrected=True,
            )
            self.stats.corrected += 1
            self._emit(sample, out)

    def _trust(
        self,
        reading: RawReading,
        value: TimerValue,
        out: list[CleanedSample],
        reset: bool = False,
    ) -> None:
        sample = CleanedSample(
            frame_index=reading.frame_index,
            timestamp_s=reading.timestamp_s,
            value=value,
            corrected=False,
            reset=reset,
        )
        if reset:
            self.stats.resets += 1
            self._last_reset_t = reading.timestamp_s
            self._change = (value.total_ms, reading.timestamp_s)
        else:
            self._update_rate(value.total_ms, reading.timestamp_s)
        self._anchor = sample
        self.stats.trusted += 1
        self._emit(sample, out)

    def _update_rate(self, value_ms: int, t: float) -> None:
        if self._change is None:
            self._change = (value_ms, t)
            return
        prev_ms, prev_t = self._change
        if value_ms == prev_ms:
            return
        self._change = (value_ms, t)
        if value_ms < prev_ms or t <= prev_t:
            return
        observed = (value_ms - prev_ms) / 1000.0 / (t - prev_t)
        low = self.nominal_rate * (1.0 - self.tolerance)
        high = self.nominal_rate * (1.0 + self.tolerance)
        # Holds and display quantisation produce out-of-band observations; they say nothing about rate.
        if low <= observed <= high:
            self._rate += self.rate_smoothing * (observed - self._rate)

    def _emit_unknown(self, p: _Pending, out: list[CleanedSample]) -> None:
        self.stats.unrecoverable += 1
        self._emit(CleanedSample(frame_index=p.reading.frame_index, timestamp_s=p.t, value=None), out)

    def _emit(self, sample: CleanedSample, out: list[CleanedSample]) -> None:
        self._window.append(sample)
        out.append(sample)


def _percent_regressed(anchor: TimerValue, candidate: TimerValue) -> bool:
    """Completion percentage only moves forward between resets."""
    if anchor.percent is None or candidate.percent is None:
        return False
    return candidate.percent < anchor.percent


def _same_reading(a: TimerValue, b: TimerValue) -> bool:
    return a.total_ms == b.total_ms and a.percent == b.percent
