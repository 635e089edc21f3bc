from pathlib import Path


class IgtSplitError(Exception):
    """Base class for all igtsplit errors."""


class ConfigurationError(IgtSplitError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(
            f"Cannot load configuration '{path.name}'.\n"
            f"  Cause: {detail}\n"
            f"  Check: Is the file valid JSON matching the RunConfig schema?\n"
            f"  Tip: Validate with: python -c \"from igtsplit.config.loader import load_config; load_config('{path}')\""
        )
        self.path = path
        self.detail = detail


class InvalidRegion(IgtSplitError):
    def __init__(self, region: tuple[int, int, int, int], frame_size: tuple[int, int]) -> None:
        x, y, w, h = region
        width, height = frame_size
        super().__init__(
            f"Timer region x={x} y={y} w={w} h={h} does not fit inside the {width}x{height} frame.\n"
            f"  Check: Are the region coordinates measured on a frame of the same resolution?\n"
            f"  Tip: Use units=\"relative\" to describe the region independently of resolution."
        )
        self.region = region
        self.frame_size = frame_size


class FrameSourceError(IgtSplitError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(
            f"Cannot read frames from '{path.name}'.\n"
            f"  Cause: {detail}\n"
            f"  Check: Is '{path.name}' a video file OpenCV can decode?\n"
            f"  Tip: Run `ffprobe '{path}' -v quiet -show_streams` to verify the file is readable."
        )
        self.path = path
        self.detail = detail


class SubtitleParseError(IgtSplitError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(
            f"Cannot parse split subtitle file '{path.name}'.\n"
            f"  Cause: {detail}\n"
            f"  Check: Was the file written by igtsplit (cues of the form '<label>: H:MM:SS.mmm')?\n"
            f"  Tip: Try re-saving the file as UTF-8 in a text editor."
        )
        self.path = path
        self.detail = detail


class RecognitionFailure(IgtSplitError):
    """A single OCR call failed or timed out. Recovered as ``success=False``."""


class ParseFailure(IgtSplitError):
    """OCR text did not match the timer grammar. Recovered as a provisional sample."""

    def __init__(self, text: str, detail: str) -> None:
        super().__init__(f"Cannot parse timer text {text!r}: {detail}")
        self.text = text
        self.detail = detail


class ReferenceRunError(IgtSplitError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(
            f"Cannot load reference run '{path.name}'.\n"
            f"  Cause: {detail}\n"
            f"  Check: Is it a split file written by igtsplit (.srt) or a reference file (.json)?\n"
            f"  Tip: Write one from a finished run with `igtsplit run ... --save-reference best.json`."
        )
        self.path = path
        self.detail = detail
