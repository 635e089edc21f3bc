"""Decoded frame source backed by OpenCV.

Frames are yielded once, in increasing index order.  Timestamps are derived
from the frame index and the container frame rate rather than from
``CAP_PROP_POS_MSEC``, which some backends report inconsistently; this keeps
the timestamps of a given file reproducible across runs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Optional

import cv2

from igtsplit.config.schema import SamplingConfig
from igtsplit.errors import FrameSourceError
from igtsplit.models import Frame

logger = logging.getLogger(__name__)


class VideoFrameSource:
    """Context manager yielding :class:`Frame` objects from a video file.

    Parameters
    ----------
    path:
        Video file readable by ``cv2.VideoCapture``.
    stride:
        Yield every *stride*-th frame.  Indices keep their position in the
        video, so the reconciler still sees true frame spacing.
    start_s, end_s:
        Restrict decoding to ``[start_s, end_s)`` of video time.
    """

    def __init__(
        self,
        path: Path,
        stride: int = 1,
        start_s: float = 0.0,
        end_s: Optional[float] = None,
    ) -> None:
        if stride < 1:
            raise ValueError("stride must be >= 1")
        self.path = Path(path)
        self.stride = stride
        self.start_s = start_s
        self.end_s = end_s
        self._cap: Optional[cv2.VideoCapture] = None

        if not self.path.exists():
            raise FrameSourceError(self.path, "file does not exist")

        cap = cv2.VideoCapture(str(self.path))
        if not cap.isOpened():
            raise FrameSourceError(self.path, "OpenCV could not open the file")
        self._cap = cap

        self.fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        if self.fps <= 0:
            cap.release()
            self._cap = None
            raise FrameSourceError(self.path, "container reports no frame rate")
        self.frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        self.width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    @classmethod
    def from_config(cls, path: Path, sampling: SamplingConfig) -> "VideoFrameSource":
        return cls(path, stride=sampling.stride, start_s=sampling.start_s, end_s=sampling.end_s)

    def __enter__(self) -> "VideoFrameSource":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    @property
    def frame_size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def expected_frames(self) -> int:
        """Upper bound on the number of frames :meth:`frames` will yield."""
        first = int(round(self.start_s * self.fps))
        last = self.frame_count
        if self.end_s is not None:
            last = min(last, int(round(self.end_s * self.fps)))
        return max(0, (last - first + self.stride - 1) // self.stride)

    def frames(self) -> Iterator[Frame]:
        """Yield sampled frames in increasing index order."""
        if self._cap is None:
            raise FrameSourceError(self.path, "source is closed")

        first = int(round(self.start_s * self.fps))
        if first > 0:
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, first)
        end_index = int(round(self.end_s * self.fps)) if self.end_s is not None else None

        index = first
        while end_index is None or index < end_index:
            if (index - first) % self.stride == 0:
                ok, image = self._cap.read()
                if not ok:
                    break
                yield Frame(index=index, timestamp_s=index / self.fps, image=image)
            else:
                # grab() advances without decoding into a numpy buffer
                if not self._cap.grab():
                    break
            index += 1

        logger.debug("%s: stopped at frame %d", self.path.name, index)

    def __repr__(self) -> str:
        return (f"VideoFrameSource({self.path.name}, "
                f"{self.width}x{self.height}, "
                f"{self.fps:.2f}fps, "
                f"{self.frame_count} frames)")
