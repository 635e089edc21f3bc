"""Single forward pass from frames to split events.

    frames -> RegionExtractor -> DigitRecognizer -> TemporalReconciler -> SplitDetector

Recognition may fan out over a thread pool (see
:func:`igtsplit.recognition.iter_readings`); everything after it runs on the
calling thread, in frame order.  The timer region is validated against the
frame size before any frame is recognised, so a bad configuration fails
before work starts.  After that the pass always completes: on cancellation
the reconciler is flushed and the detector finished, and the events already
produced are returned.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from itertools import chain
from typing import Callable, Iterable, Iterator, Optional

from igtsplit.config.schema import RunConfig
from igtsplit.models import CleanedSample, Frame, RawReading, SplitEvent
from igtsplit.recognition.engine import OcrEngine, TesseractEngine
from igtsplit.recognition.recognizer import DigitRecognizer, iter_readings
from igtsplit.recognition.region import RegionExtractor, TimerRegion
from igtsplit.splits.detector import DetectorState, SplitDetector
from igtsplit.splits.policies import build_policy
from igtsplit.timing.grammar import TimerFormat
from igtsplit.timing.reconciler import ReconcilerStats, TemporalReconciler

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    events: list[SplitEvent]
    samples: list[CleanedSample]
    stats: ReconcilerStats
    transitions: list[tuple[DetectorState, DetectorState, float]] = field(default_factory=list)
    frames_processed: int = 0
    cancelled: bool = False


def build_engine(config: RunConfig) -> OcrEngine:
    """Default OCR engine for *config*."""
    return TesseractEngine(
        psm=config.ocr.psm,
        timeout_s=config.ocr.timeout_s,
        tesseract_cmd=config.ocr.tesseract_cmd,
    )


def build_extractor(config: RunConfig) -> RegionExtractor:
    return RegionExtractor(TimerRegion.from_config(config.region), config.preprocess)


def recognize_frames(
    frames: Iterable[Frame],
    config: RunConfig,
    engine: Optional[OcrEngine] = None,
    frame_size: Optional[tuple[int, int]] = None,
    cancel: Optional[threading.Event] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
) -> Iterator[RawReading]:
    """Validate the region, then yield one RawReading per frame in order.

    *frame_size* is ``(width, height)``.  When omitted it is taken from the
    first frame.  Raises :class:`igtsplit.errors.InvalidRegion` before the
    first reading if the region does not fit.
    """
    frame_iter = iter(frames)
    if frame_size is None:
        first = next(frame_iter, None)
        if first is None:
            return iter(())
        height, width = first.image.shape[:2]
        frame_size = (width, height)
        frame_iter = chain([first], frame_iter)

    extractor = build_extractor(config)
    x, y, w, h = extractor.validate(*frame_size)
    logger.info("Timer region %dx%d at (%d, %d) in %dx%d frames", w, h, x, y, *frame_size)

    timer_format = TimerFormat(config.timer.format)
    recognizer = DigitRecognizer(engine if engine is not None else build_engine(config), timer_format.charset)
    return iter_readings(
        frame_iter,
        extractor,
        recognizer,
        workers=config.ocr.workers,
        batch_size=config.ocr.batch_size,
        cancel=cancel,
        progress_callback=progress_callback,
    )


def process_readings(
    readings: Iterable[RawReading],
    config: RunConfig,
    cancel: Optional[threading.Event] = None,
) -> PipelineResult:
    """Reconcile *readings* and detect splits.

    Used directly when readings come from the cache.
    """
    timer_format = TimerFormat(config.timer.format)
    reconciler = TemporalReconciler.from_config(timer_format, config.reconciler, config.timer.min_confidence)
    detector = SplitDetector.from_config(config.detector, build_policy(config.policy))

    samples: list[CleanedSample] = []
    events: list[SplitEvent] = []
    frames = 0
    cancelled = False

    def _consume(batch: list[CleanedSample]) -> None:
        for sample in batch:
            samples.append(sample)
            events.extend(detector.feed(sample))

    for reading in readings:
        if cancel is not None and cancel.is_set():
            cancelled = True
            break
        frames += 1
        _consume(reconciler.feed(reading))

    # iter_readings stops quietly when cancelled, so check once more
    if cancel is not None and cancel.is_set():
        cancelled = True

    _consume(reconciler.flush())
    events.extend(detector.finish())

    stats = reconciler.stats
    logger.info(
        "Reconciled %d frames: %d trusted, %d corrected, %d unknown, %d resets, %d relocks",
        frames, stats.trusted, stats.corrected, stats.unrecoverable, stats.resets, stats.relocks,
    )
    logger.info("Detected %d splits%s", len(events), " (cancelled)" if cancelled else "")
    logger.debug("Reconciler stats: %s", stats.as_dict())

    return PipelineResult(
        events=events,
        samples=samples,
        stats=stats,
        transitions=detector.transitions,
        frames_processed=frames,
        cancelled=cancelled,
    )


def run_pipeline(
    frames: Iterable[Frame],
    config: RunConfig,
    engine: Optional[OcrEngine] = None,
    frame_size: Optional[tuple[int, int]] = None,
    cancel: Optional[threading.Event] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
    on_reading: Optional[Callable[[RawReading], None]] = None,
) -> PipelineResult:
    """Run the whole pass over *frames*.

    *on_reading* sees every RawReading before it is reconciled; the CLI uses it
    to collect readings for the cache.
    """
    readings = recognize_frames(
        frames,
        config,
        engine=engine,
        frame_size=frame_size,
        cancel=cancel,
        progress_callback=progress_callback,
    )
    if on_reading is not None:
        readings = _tap(readings, on_reading)
    return process_readings(readings, config, cancel=cancel)


def _tap(readings: Iterable[RawReading], callback: Callable[[RawReading], None]) -> Iterator[RawReading]:
    for reading in readings:
        callback(reading)
        yield reading
