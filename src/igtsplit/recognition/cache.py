"""msgpack-based RawReading cache.

OCR is by far the slowest stage, while reconciler, detector and subtitle
settings are the ones users tune.  Caching the raw readings lets a re-run with
different downstream settings skip recognition entirely.

Cache file format
-----------------
A msgpack-encoded dict with two top-level keys:

    {
        "metadata": {
            "source_file": "/abs/path/to/run.mp4",
            "mtime": 1709123456.789,    # float, source file last-modified time
            "size": 12345678901,        # int, source file byte size
            "fingerprint": "3f1c..."    # sha256 of the recognition settings
        },
        "readings": [
            [frame_index, timestamp_s, text, confidence, success],
            ...
        ]
    }

Invalidation
------------
``load_readings`` returns None (cache miss) when the source file's
(mtime, size) differ from the stored metadata, when the fingerprint of the
recognition-relevant settings differs, or when the file is corrupt.

Writes are atomic (tempfile.mkstemp + os.replace) so the cache is either
fully written or absent.
"""

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Optional

import msgpack

from igtsplit.config.schema import RunConfig
from igtsplit.models import RawReading

__all__ = ["save_readings", "load_readings", "recognition_fingerprint"]


def recognition_fingerprint(config: RunConfig) -> str:
    """Hash of every setting that changes what OCR produces for a frame."""
    relevant = {
        "region": config.region.model_dump(mode="json"),
        "preprocess": config.preprocess.model_dump(mode="json"),
        "format": config.timer.format,
        "ocr": config.ocr.model_dump(mode="json", exclude={"workers", "batch_size"}),
        "sampling": config.sampling.model_dump(mode="json"),
    }
    blob = json.dumps(relevant, sort_keys=True).encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


def _cache_path(source_file: Path, work_dir: Path) -> Path:
    return work_dir / f"{source_file.stem}.readings.msgpack"


def save_readings(
    readings: list[RawReading],
    source_file: Path,
    work_dir: Path,
    fingerprint: str,
) -> Path:
    """Persist *readings* next to the other run artifacts. Returns the cache path."""
    stat = source_file.stat()

    payload: dict = {
        "metadata": {
            "source_file": str(source_file),
            "mtime": stat.st_mtime,
            "size": stat.st_size,
            "fingerprint": fingerprint,
        },
        "readings": [
            [r.frame_index, r.timestamp_s, r.text, r.confidence, r.success]
            for r in readings
        ],
    }

    data = msgpack.packb(payload, use_bin_type=True)

    dest = _cache_path(source_file, work_dir)
    fd, tmp_path = tempfile.mkstemp(dir=work_dir, suffix=".cache.tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, dest)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise

    return dest


def load_readings(
    source_file: Path,
    work_dir: Path,
    fingerprint: str,
) -> Optional[list[RawReading]]:
    """Load cached readings if they still match *source_file* and *fingerprint*, else None."""
    cache_file = _cache_path(source_file, work_dir)

    if not cache_file.exists():
        return None

    try:
        payload = msgpack.unpackb(cache_file.read_bytes(), raw=False, strict_map_key=False)

        meta = payload["metadata"]
        stat = source_file.stat()

        if meta["mtime"] != stat.st_mtime or meta["size"] != stat.st_size:
            return None
        if meta["fingerprint"] != fingerprint:
            return None

        return [
            RawReading(
                frame_index=int(index),
                timestamp_s=float(ts),
                text=str(text),
                confidence=float(conf),
                success=bool(ok),
            )
            for index, ts, text, conf, ok in payload["readings"]
        ]

    except Exception:
        # Corrupt file, missing keys, type errors: all treated as cache miss
        return None
