"""Tests for igtsplit.ingestion.frames.VideoFrameSource.

A short MJPG clip is written with cv2.VideoWriter into ``tmp_path``.
"""

from pathlib import Path

import cv2
import numpy as np
import pytest

from igtsplit.config.schema import SamplingConfig
from igtsplit.errors import FrameSourceError
from igtsplit.ingestion.frames import VideoFrameSource

FPS = 10.0


@pytest.fixture()
def clip(tmp_path: Path) -> Path:
    path = tmp_path / "clip.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), FPS, (64, 48))
    if not writer.isOpened():
        pytest.skip("OpenCV build cannot write MJPG")
    for i in range(30):
        writer.write(np.full((48, 64, 3), i * 8, dtype=np.uint8))
    writer.release()
    return path


class TestVideoFrameSource:
    def test_properties(self, clip: Path) -> None:
        with VideoFrameSource(clip) as source:
            assert source.fps == pytest.approx(FPS)
            assert source.frame_size == (64, 48)
            assert source.expected_frames == 30

    def test_frames_in_order_with_index_timestamps(self, clip: Path) -> None:
        with VideoFrameSource(clip) as source:
            frames = list(source.frames())
        assert [f.index for f in frames] == list(range(30))
        assert frames[12].timestamp_s == pytest.approx(1.2)
        assert frames[0].image.shape == (48, 64, 3)

    def test_stride_and_window(self, clip: Path) -> None:
        sampling = SamplingConfig(stride=3, start_s=1.0, end_s=2.0)
        with VideoFrameSource.from_config(clip, sampling) as source:
            indices = [f.index for f in source.frames()]
            assert source.expected_frames == 4
        assert indices == [10, 13, 16, 19]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FrameSourceError) as exc_info:
            VideoFrameSource(tmp_path / "nope.mp4")
        assert "does not exist" in str(exc_info.value)

    def test_not_a_video(self, tmp_path: Path) -> None:
        bogus = tmp_path / "bogus.mp4"
        bogus.write_bytes(b"not a video")
        with pytest.raises(FrameSourceError):
            VideoFrameSource(bogus)

    def test_closed_source(self, clip: Path) -> None:
        source = VideoFrameSource(clip)
        source.close()
        with pytest.raises(FrameSourceError):
            next(source.frames())
