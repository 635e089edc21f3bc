"""OCR engine seam.

The rest of the pipeline only sees the :class:`OcrEngine` protocol,
``recognize(image, charset) -> (text, confidence)``, so the engine can be
swapped without touching the reconciler or the split detector.
:class:`TesseractEngine` is the default implementation.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import numpy as np
import pytesseract

from igtsplit.errors import RecognitionFailure

logger = logging.getLogger(__name__)


class OcrEngine(Protocol):
    """Black-box recognizer over a preprocessed image region.

    Implementations raise :class:`RecognitionFailure` when the engine is
    unavailable, errors internally, or exceeds its time limit.
    """

    def recognize(self, image: np.ndarray, charset: str) -> tuple[str, float]:
        ...


class TesseractEngine:
    """Tesseract via pytesseract, restricted to a character allow-list.

    Parameters
    ----------
    psm:
        Tesseract page segmentation mode.  7 ("single text line") suits a
        cropped timer.
    timeout_s:
        Per-call time limit.  A call that exceeds it is killed by pytesseract and
        reported as :class:`RecognitionFailure`.
    tesseract_cmd:
        Explicit path to the tesseract binary; ``None`` uses ``PATH``.
    """

    def __init__(
        self,
        psm: int = 7,
        timeout_s: float = 2.0,
        tesseract_cmd: Optional[str] = None,
    ) -> None:
        self.psm = psm
        self.timeout_s = timeout_s
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def config_for(self, charset: str) -> str:
        return (
            f"--psm {self.psm} "
            f"-c tessedit_char_whitelist={charset} "
            f"-c tessedit_enable_dict_correction=0"
        )

    def recognize(self, image: np.ndarray, charset: str) -> tuple[str, float]:
        try:
            data = pytesseract.image_to_data(
                image,
                config=self.config_for(charset),
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout_s,
            )
        except pytesseract.TesseractNotFoundError as exc:
            raise RecognitionFailure(f"tesseract is not installed or not in PATH: {exc}") from exc
        except (pytesseract.TesseractError, RuntimeError, OSError) as exc:
            # pytesseract reports a timeout as RuntimeError("Tesseract process timeout")
            raise RecognitionFailure(str(exc)) from exc

        return _join_words(data.get("text", []), data.get("conf", []))


def _join_words(texts: list, confs: list) -> tuple[str, float]:
    """Join recognised words and average their confidences.

    Tesseract reports ``-1`` for layout rows that carry no text; those rows
    are skipped.  Returns ``("", -1.0)`` when nothing was recognised.
    """
    words: list[str] = []
    scores: list[float] = []
    for text, conf in zip(texts, confs):
        word = str(text).strip()
        try:
            score = float(conf)
        except (TypeError, ValueError):
            score = -1.0
        if not word or score < 0:
            continue
        words.append(word)
        scores.append(score)

    if not words:
        return "", -1.0
    return " ".join(words), sum(scores) / len(scores)
