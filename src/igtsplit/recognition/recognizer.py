"""Per-frame digit recognition and the concurrent recognition stage."""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from typing import Callable, Iterable, Iterator, Optional

import numpy as np

from igtsplit.errors import RecognitionFailure
from igtsplit.models import Frame, RawReading
from igtsplit.recognition.engine import OcrEngine
from igtsplit.recognition.region import RegionExtractor

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class DigitRecognizer:
    """Runs the OCR engine over a cropped timer image and wraps the result.

    Never raises for engine problems: a failed, crashed or timed-out call
    produces a ``RawReading`` with ``success=False`` so the pipeline can carry
    on past missed frames.
    """

    def __init__(self, engine: OcrEngine, charset: str) -> None:
        self.engine = engine
        self.charset = charset
        self._allowed = set(charset)

    def recognize(self, frame_index: int, timestamp_s: float, image: np.ndarray) -> RawReading:
        try:
            text, confidence = self.engine.recognize(image, self.charset)
        except RecognitionFailure as exc:
            logger.debug("frame %d: recognition failed: %s", frame_index, exc)
            return RawReading(frame_index, timestamp_s, "", -1.0, False)
        except Exception as exc:
            logger.warning("frame %d: OCR engine error (%s): %s", frame_index, type(exc).__name__, exc)
            return RawReading(frame_index, timestamp_s, "", -1.0, False)

        text = _WHITESPACE.sub(" ", text or "").strip()
        success = bool(text) and all(c in self._allowed for c in text.replace(" ", ""))
        if text and not success:
            logger.debug("frame %d: %r contains characters outside %r", frame_index, text, self.charset)
        return RawReading(frame_index, timestamp_s, text, float(confidence), success)

    def recognize_frame(self, frame: Frame, extractor: RegionExtractor) -> RawReading:
        """Crop *frame* with *extractor* and recognise the result."""
        return self.recognize(frame.index, frame.timestamp_s, extractor.extract(frame))


def iter_readings(
    frames: Iterable[Frame],
    extractor: RegionExtractor,
    recognizer: DigitRecognizer,
    workers: int = 1,
    batch_size: int = 32,
    cancel: Optional[threading.Event] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
) -> Iterator[RawReading]:
    """Recognise *frames* and yield readings in frame order.

    Extraction and recognition carry no cross-frame state, so with
    ``workers > 1`` each batch is spread over a thread pool.
    ``ThreadPoolExecutor.map`` returns results in submission order, which
    keeps the downstream stream strictly ordered.  Frames are pulled from the
    source one batch at a time, so at most *batch_size* decoded frames are held
    in memory.  *cancel* is checked before each batch is submitted and before
    each reading is yielded.

    *progress_callback* receives the number of frames recognised so far.
    """
    frame_iter = iter(frames)
    done = 0

    def _work(frame: Frame) -> RawReading:
        return recognizer.recognize_frame(frame, extractor)

    if workers <= 1:
        for frame in frame_iter:
            if cancel is not None and cancel.is_set():
                return
            reading = _work(frame)
            done += 1
            if progress_callback:
                progress_callback(done)
            yield reading
        return

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="igtsplit-ocr") as pool:
        while True:
            if cancel is not None and cancel.is_set():
                return
            batch = list(islice(frame_iter, batch_size))
            if not batch:
                return
            for reading in pool.map(_work, batch):
                if cancel is not None and cancel.is_set():
                    return
                done += 1
                if progress_callback:
                    progress_callback(done)
                yield reading
