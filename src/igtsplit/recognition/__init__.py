"""Timer recognition: region extraction, OCR engine seam, digit recognizer, readings cache."""
from igtsplit.recognition.engine import OcrEngine, TesseractEngine
from igtsplit.recognition.recognizer import DigitRecognizer, iter_readings
from igtsplit.recognition.region import RegionExtractor, TimerRegion

__all__ = [
    "OcrEngine",
    "TesseractEngine",
    "DigitRecognizer",
    "iter_readings",
    "RegionExtractor",
    "TimerRegion",
]
