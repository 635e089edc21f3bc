"""Unit tests for igtsplit.recognition.cache: msgpack-based RawReading persistence.

All tests use tmp_path for file I/O.
"""

import os
from pathlib import Path

import pytest

from igtsplit.config.schema import RunConfig
from igtsplit.models import RawReading
from igtsplit.recognition.cache import load_readings, recognition_fingerprint, save_readings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_config(**overrides) -> RunConfig:
    data = {"region": {"x": 10, "y": 10, "width": 120, "height": 30}, "policy": {"interval_s": 60}}
    data.update(overrides)
    return RunConfig.model_validate(data)


def make_readings() -> list[RawReading]:
    return [
        RawReading(0, 0.0, "0:00:00.000", 91.5, True),
        RawReading(1, 1 / 30, "", -1.0, False),
        RawReading(2, 2 / 30, "0:00:00.067", 88.0, True),
    ]


def make_source_file(tmp_path: Path, name: str = "run.mp4") -> Path:
    src = tmp_path / name
    src.write_bytes(b"\x00" * 1024)
    return src


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    fingerprint = recognition_fingerprint(make_config())

    path = save_readings(make_readings(), src, tmp_path, fingerprint)
    loaded = load_readings(src, tmp_path, fingerprint)

    assert path.name == "run.readings.msgpack"
    assert loaded == make_readings()


def test_missing_cache_is_miss(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    assert load_readings(src, tmp_path, "abc") is None


def test_fingerprint_mismatch_is_miss(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    save_readings(make_readings(), src, tmp_path, recognition_fingerprint(make_config()))
    other = recognition_fingerprint(make_config(timer={"format": "H:MM:SS"}))
    assert load_readings(src, tmp_path, other) is None


def test_source_change_is_miss(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    fingerprint = recognition_fingerprint(make_config())
    save_readings(make_readings(), src, tmp_path, fingerprint)

    src.write_bytes(b"\x01" * 2048)
    assert load_readings(src, tmp_path, fingerprint) is None


def test_mtime_change_is_miss(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    fingerprint = recognition_fingerprint(make_config())
    save_readings(make_readings(), src, tmp_path, fingerprint)

    stat = src.stat()
    os.utime(src, (stat.st_atime, stat.st_mtime + 10))
    assert load_readings(src, tmp_path, fingerprint) is None


def test_corrupt_cache_is_miss(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    (tmp_path / "run.readings.msgpack").write_bytes(b"\xc1not msgpack")
    assert load_readings(src, tmp_path, "abc") is None


def test_no_temp_files_left_behind(tmp_path: Path) -> None:
    src = make_source_file(tmp_path)
    save_readings(make_readings(), src, tmp_path, "abc")
    assert list(tmp_path.glob("*.tmp")) == []


def test_failed_replace_keeps_original_error(tmp_path: Path, monkeypatch) -> None:
    src = make_source_file(tmp_path)

    def _disk_full(*_args) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _disk_full)
    with pytest.raises(OSError, match="disk full"):
        save_readings(make_readings(), src, tmp_path, "abc")
    assert list(tmp_path.glob("*.tmp")) == []
    assert not (tmp_path / "run.readings.msgpack").exists()


class TestFingerprint:
    def test_downstream_settings_do_not_change_fingerprint(self) -> None:
        base = recognition_fingerprint(make_config())
        tuned = make_config(
            reconciler={"tolerance": 0.3},
            detector={"pause_gap_s": 2.0},
            subtitles={"end_mode": "fixed"},
            ocr={"workers": 8, "batch_size": 64},
        )
        assert recognition_fingerprint(tuned) == base

    def test_recognition_settings_change_fingerprint(self) -> None:
        base = recognition_fingerprint(make_config())
        assert recognition_fingerprint(make_config(preprocess={"scale": 2.0})) != base
        assert recognition_fingerprint(make_config(region={"x": 11, "y": 10, "width": 120, "height": 30})) != base
        assert recognition_fingerprint(make_config(sampling={"stride": 2})) != base
