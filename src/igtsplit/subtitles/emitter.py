"""SplitEvent to SRT rendering.

Cue layout::

    <index>
    <start> --> <end>
    <label>: <igt as H:MM:SS.mmm>

Timestamps are ``HH:MM:SS,mmm``.  The cue starts at the split's video
timestamp.  End-time convention:

* ``end_mode="next"`` (default): a cue ends where the next split's cue starts;
  the last cue is shown for ``display_s`` seconds.
* ``end_mode="fixed"``: every cue is shown for ``display_s`` seconds.

With ``aggregation="cumulative"`` each cue lists every split so far, one per
line, the newest last.  With a reference run each line ends in the delta
against it, e.g. ``Forest: 0:01:37.750 (+0:02.250)``.

Rendering is a pure function of the event list: the same events always
produce byte-identical output.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

import pysubs2

from igtsplit.config.schema import SubtitleConfig
from igtsplit.models import SplitEvent, SubtitleCue

if TYPE_CHECKING:
    from igtsplit.splits.reference import ReferenceRun


@dataclass(frozen=True)
class SubtitleOptions:
    end_mode: str = "next"          # "next" | "fixed"
    display_s: float = 5.0
    aggregation: str = "per_split"  # "per_split" | "cumulative"
    reference: Optional[ReferenceRun] = None

    @classmethod
    def from_config(cls, config: SubtitleConfig, reference: Optional[ReferenceRun] = None) -> "SubtitleOptions":
        return cls(
            end_mode=config.end_mode,
            display_s=config.display_s,
            aggregation=config.aggregation,
            reference=reference,
        )


def cue_line(event: SplitEvent, reference: Optional[ReferenceRun] = None) -> str:
    """The text line for one split: ``<label>: H:MM:SS.mmm``, plus ``(+M:SS.mmm)`` against *reference*."""
    line = f"{event.display_label}: {event.igt.format()}"
    if reference is not None:
        delta = reference.delta_text(event)
        if delta is not None:
            line += f" ({delta})"
    return line


def render_cues(events: Sequence[SplitEvent], options: SubtitleOptions = SubtitleOptions()) -> list[SubtitleCue]:
    """Turn ordered split events into subtitle cues."""
    if options.end_mode not in ("next", "fixed"):
        raise ValueError(f"Unknown end_mode {options.end_mode!r}")
    if options.aggregation not in ("per_split", "cumulative"):
        raise ValueError(f"Unknown aggregation {options.aggregation!r}")

    display_ms = int(round(options.display_s * 1000))
    starts = [int(round(e.timestamp_s * 1000)) for e in events]

    cues: list[SubtitleCue] = []
    lines: list[str] = []
    for i, event in enumerate(events):
        start_ms = starts[i]
        if options.end_mode == "next" and i + 1 < len(events):
            end_ms = starts[i + 1]
        else:
            end_ms = start_ms + display_ms
        end_ms = max(end_ms, start_ms + 1)

        line = cue_line(event, options.reference)
        if options.aggregation == "cumulative":
            lines.append(line)
            text = "\n".join(lines)
        else:
            text = line

        cues.append(SubtitleCue(index=i + 1, start_ms=start_ms, end_ms=end_ms, text=text))
    return cues


def cues_to_srt(cues: Sequence[SubtitleCue]) -> str:
    subs = pysubs2.SSAFile()
    for cue in cues:
        subs.append(pysubs2.SSAEvent(start=cue.start_ms, end=cue.end_ms, text=cue.text.replace("\n", r"\N")))
    # Cue text is plain; braces in labels are literal, not SSA override blocks.
    return subs.to_string("srt", keep_ssa_tags=True)


def to_srt(events: Sequence[SplitEvent], options: SubtitleOptions = SubtitleOptions()) -> str:
    """Render *events* as SRT text."""
    return cues_to_srt(render_cues(events, options))


def write_srt(events: Sequence[SplitEvent], output_path: Path, options: SubtitleOptions = SubtitleOptions()) -> Path:
    """Render *events* and write them atomically to *output_path*."""
    data = to_srt(events, options).encode("utf-8")
    output_path = Path(output_path)
    fd, tmp_path = tempfile.mkstemp(dir=output_path.parent, suffix=".srt.tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, output_path)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    return output_path
