"""Comparison against a reference run.

A reference run records the IGT at which each split label was reached in an
earlier run, usually the personal best.  Cues rendered with a reference show
how far behind (``+``) or ahead (``-``) the current run is at every split the
two runs share::

    Forest: 0:01:37.750 (+0:02.250)

Reference files come in two forms:

* a split file written by ``igtsplit run`` (``.srt``);
* a JSON file written by :func:`save_reference`::

      {"schema_version": "1.0", "splits": [{"label": "Forest", "igt_s": 95.5}]}

When a label occurs more than once in a run (a run with resets) its first
occurrence is used.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from igtsplit.errors import ReferenceRunError, SubtitleParseError
from igtsplit.models import SplitEvent
from igtsplit.subtitles.reader import read_srt

logger = logging.getLogger(__name__)


class ReferenceSplit(BaseModel):
    label: str = Field(min_length=1)
    igt_s: float = Field(ge=0.0)


class ReferenceFile(BaseModel):
    schema_version: str = "1.0"
    splits: list[ReferenceSplit] = Field(min_length=1)

    @field_validator("splits")
    @classmethod
    def labels_unique(cls, v: list[ReferenceSplit]) -> list[ReferenceSplit]:
        labels = [s.label for s in v]
        if len(labels) != len(set(labels)):
            raise ValueError("splits contain duplicate labels")
        return v


def format_delta(delta_ms: int) -> str:
    """``+M:SS.mmm`` behind the reference, ``-M:SS.mmm`` ahead of it."""
    sign = "-" if delta_ms < 0 else "+"
    minutes, rest = divmod(abs(delta_ms), 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{sign}{minutes}:{seconds:02d}.{millis:03d}"


@dataclass(frozen=True)
class ReferenceRun:
    splits: tuple[tuple[str, int], ...]   # (label, igt_ms) in split order

    @classmethod
    def from_events(cls, events: Sequence[SplitEvent]) -> "ReferenceRun":
        first: dict[str, int] = {}
        for event in events:
            first.setdefault(event.display_label, event.igt.total_ms)
        return cls(tuple(first.items()))

    @property
    def final(self) -> Optional[tuple[str, int]]:
        return self.splits[-1] if self.splits else None

    def igt_ms(self, label: str) -> Optional[int]:
        for name, ms in self.splits:
            if name == label:
                return ms
        return None

    def delta_ms(self, event: SplitEvent) -> Optional[int]:
        reference_ms = self.igt_ms(event.display_label)
        if reference_ms is None:
            return None
        return event.igt.total_ms - reference_ms

    def delta_text(self, event: SplitEvent) -> Optional[str]:
        delta = self.delta_ms(event)
        return None if delta is None else format_delta(delta)

    def is_beaten_by(self, events: Sequence[SplitEvent]) -> bool:
        """True when *events* reach this run's final split in less IGT."""
        if self.final is None:
            return True
        label, final_ms = self.final
        for event in events:
            if event.display_label == label:
                return event.igt.total_ms < final_ms
        return False


def best_run(reference: Optional[ReferenceRun], events: Sequence[SplitEvent]) -> Optional[ReferenceRun]:
    """The run from *events* if it should replace *reference*, else None."""
    if not events:
        return None
    if reference is None or reference.is_beaten_by(events):
        return ReferenceRun.from_events(events)
    return None


def load_reference(path: Path) -> ReferenceRun:
    """Load a reference run from an igtsplit ``.srt`` file or a ``.json`` reference file.

    Raises
    ------
    ReferenceRunError
        If the file is missing, unreadable, of another format or holds no splits.
    """
    path = Path(path)
    if not path.exists():
        raise ReferenceRunError(path, "file does not exist")

    suffix = path.suffix.lower()
    if suffix == ".srt":
        try:
            run = ReferenceRun.from_events(read_srt(path))
        except SubtitleParseError as exc:
            raise ReferenceRunError(path, exc.detail) from exc
    elif suffix == ".json":
        run = _load_json(path)
    else:
        raise ReferenceRunError(path, f"unsupported format '{path.suffix}', expected .srt or .json")

    if not run.splits:
        raise ReferenceRunError(path, "no splits found")
    logger.info("Reference run '%s': %d splits", path.name, len(run.splits))
    return run


def _load_json(path: Path) -> ReferenceRun:
    try:
        data = ReferenceFile.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        field_errors = "; ".join(
            f"{' -> '.join(str(x) for x in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ReferenceRunError(path, f"Schema validation failed: {field_errors}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ReferenceRunError(path, str(e)) from e
    return ReferenceRun(tuple((s.label, int(round(s.igt_s * 1000))) for s in data.splits))


def save_reference(run: ReferenceRun, path: Path) -> Path:
    """Write *run* as a JSON reference file, atomically."""
    path = Path(path)
    document = ReferenceFile(
        splits=[ReferenceSplit(label=label, igt_s=ms / 1000.0) for label, ms in run.splits]
    )
    data = document.model_dump_json(indent=2).encode("utf-8")

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".json.tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    return path
