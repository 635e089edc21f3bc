"""Read a split subtitle file back into SplitEvents.

Lets an existing split file be re-rendered with different cue options, and
lets verifiers diff two runs at the event level rather than the text level.
Non-UTF-8 files are detected with charset-normalizer before a second parse
attempt.
"""

from __future__ import annotations

import re
from pathlib import Path

import pysubs2
from charset_normalizer import from_path

from igtsplit.errors import ParseFailure, SubtitleParseError
from igtsplit.models import SplitEvent
from igtsplit.timing.grammar import TimerFormat

_LINE_RE = re.compile(
    r"^(?P<label>.*):\s*(?P<igt>\d+:\d{2}:\d{2}\.\d{3})(?:\s+\([+-]\d+:\d{2}\.\d{3}\))?\s*$"
)
_IGT_FORMAT = TimerFormat("H:MM:SS.mmm")


def read_srt(subtitle_path: Path) -> list[SplitEvent]:
    """Parse a file written by :func:`igtsplit.subtitles.emitter.write_srt`.

    For cumulative cues the last line of each cue is the split it introduces.

    Raises
    ------
    SubtitleParseError
        If the file cannot be loaded or a cue does not carry a split line.
    """
    subs = _load_with_encoding_fallback(subtitle_path)

    events: list[SplitEvent] = []
    for event in subs:
        if event.is_comment:
            continue
        # event.plaintext would drop "{...}" from labels as SSA override blocks
        text = event.text.replace(r"\N", "\n").replace(r"\n", "\n")
        lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
        if not lines:
            continue
        match = _LINE_RE.match(lines[-1])
        if match is None:
            raise SubtitleParseError(subtitle_path, f"cue at {event.start} ms has no '<label>: H:MM:SS.mmm' line")
        try:
            igt = _IGT_FORMAT.parse(match.group("igt"))
        except ParseFailure as exc:
            raise SubtitleParseError(subtitle_path, str(exc)) from exc

        events.append(
            SplitEvent(
                sequence_number=len(events) + 1,
                timestamp_s=event.start / 1000.0,
                igt=igt,
                label=match.group("label").strip() or None,
            )
        )

    return events


def _load_with_encoding_fallback(subtitle_path: Path):  # type: ignore[return]
    try:
        return pysubs2.load(str(subtitle_path), encoding="utf-8", format_="srt")
    except UnicodeDecodeError:
        pass
    except Exception as exc:
        raise SubtitleParseError(subtitle_path, str(exc)) from exc

    best = from_path(subtitle_path).best()
    if best is None:
        raise SubtitleParseError(
            subtitle_path,
            "Could not determine file encoding. Re-save as UTF-8.",
        )
    try:
        return pysubs2.load(str(subtitle_path), encoding=best.encoding, format_="srt")
    except Exception as exc:
        raise SubtitleParseError(subtitle_path, str(exc)) from exc
