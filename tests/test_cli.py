"""Tests for the igtsplit CLI.

Input validation fires before any video is opened, so most tests use fake
files.  The render command is exercised end to end on a split file written by
igtsplit itself.
"""

import json
from pathlib import Path

from typer.testing import CliRunner

from igtsplit import __version__
from igtsplit.cli import _update_reference, app
from igtsplit.models import SplitEvent, TimerValue
from igtsplit.pipeline import PipelineResult
from igtsplit.splits import ReferenceRun, load_reference
from igtsplit.subtitles import read_srt, write_srt
from igtsplit.timing.reconciler import ReconcilerStats

runner = CliRunner()


def write_config(tmp_path: Path, data=None) -> Path:
    p = tmp_path / "run.json"
    p.write_text(json.dumps(data or {
        "region": {"x": 0, "y": 0, "width": 100, "height": 30},
        "policy": {"interval_s": 60},
    }), encoding="utf-8")
    return p


def write_splits(tmp_path: Path) -> Path:
    p = tmp_path / "splits.srt"
    write_srt(
        [
            SplitEvent(1, 60.0, TimerValue.from_ms(60_000)),
            SplitEvent(2, 120.5, TimerValue.from_ms(120_000)),
        ],
        p,
    )
    return p


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


# ---------------------------------------------------------------------------
# run: input validation
# ---------------------------------------------------------------------------

def test_invalid_video_extension(tmp_path):
    """Wrong extension: Rich 'Unsupported video format' panel, not a traceback."""
    result = runner.invoke(
        app,
        ["run", "speedrun.pdf", "--config", str(write_config(tmp_path)), "--output", "out.srt"],
    )
    assert result.exit_code == 1
    assert "Unsupported video format" in result.output


def test_missing_video(tmp_path):
    result = runner.invoke(
        app,
        ["run", str(tmp_path / "missing.mp4"), "--config", str(write_config(tmp_path)), "--output", "out.srt"],
    )
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_missing_config(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"fake mp4 content")
    result = runner.invoke(
        app,
        ["run", str(video), "--config", str(tmp_path / "absent.json"), "--output", "out.srt"],
    )
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_output_must_be_srt(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"fake mp4 content")
    result = runner.invoke(
        app,
        ["run", str(video), "--config", str(write_config(tmp_path)), "--output", str(tmp_path / "out.txt")],
    )
    assert result.exit_code == 1
    assert "Output must be an .srt file" in result.output


def test_invalid_config_shows_pipeline_error(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"fake mp4 content")
    config = write_config(tmp_path, {"region": {"x": 0, "y": 0, "width": 100, "height": 30}})
    result = runner.invoke(
        app,
        ["run", str(video), "--config", str(config), "--output", str(tmp_path / "out.srt")],
    )
    assert result.exit_code == 1
    assert "Pipeline Error" in result.output
    assert "Cannot load configuration" in result.output
    assert not (tmp_path / "out.srt").exists()


def test_undecodable_video_shows_pipeline_error(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"fake mp4 content")
    result = runner.invoke(
        app,
        ["run", str(video), "--config", str(write_config(tmp_path)), "--output", str(tmp_path / "out.srt"),
         "--work-dir", str(tmp_path / "work")],
    )
    assert result.exit_code == 1
    assert "Pipeline Error" in result.output
    assert "Cannot read frames" in result.output


# ---------------------------------------------------------------------------
# render
# ---------------------------------------------------------------------------

def test_render_fixed_cumulative(tmp_path):
    source = write_splits(tmp_path)
    out = tmp_path / "rendered.srt"
    result = runner.invoke(
        app,
        ["render", str(source), "--output", str(out), "--end-mode", "fixed", "--display-s", "2",
         "--aggregation", "cumulative"],
    )
    assert result.exit_code == 0, result.output
    text = out.read_text(encoding="utf-8")
    assert "00:01:00,000 --> 00:01:02,000" in text
    assert "Split 1: 0:01:00.000\nSplit 2: 0:02:00.000" in text
    assert [e.igt.total_ms for e in read_srt(out)] == [60_000, 120_000]


def test_render_rejects_unknown_end_mode(tmp_path):
    source = write_splits(tmp_path)
    result = runner.invoke(app, ["render", str(source), "--output", str(tmp_path / "o.srt"), "--end-mode", "later"])
    assert result.exit_code == 1
    assert "Unknown end mode" in result.output


def test_render_foreign_file(tmp_path):
    source = tmp_path / "movie.srt"
    source.write_text("1\n00:00:01,000 --> 00:00:03,000\nHello, world!\n\n", encoding="utf-8")
    result = runner.invoke(app, ["render", str(source), "--output", str(tmp_path / "o.srt")])
    assert result.exit_code == 1
    assert "Cannot parse split subtitle file" in result.output


def test_render_with_reference_shows_deltas(tmp_path):
    source = write_splits(tmp_path)
    reference = tmp_path / "best.json"
    reference.write_text(json.dumps({"splits": [
        {"label": "Split 1", "igt_s": 59.5},
        {"label": "Split 2", "igt_s": 121.25},
    ]}), encoding="utf-8")
    out = tmp_path / "rendered.srt"
    result = runner.invoke(app, ["render", str(source), "--output", str(out), "--reference", str(reference)])
    assert result.exit_code == 0, result.output
    text = out.read_text(encoding="utf-8")
    assert "Split 1: 0:01:00.000 (+0:00.500)" in text
    assert "Split 2: 0:02:00.000 (-0:01.250)" in text
    assert [e.igt.total_ms for e in read_srt(out)] == [60_000, 120_000]


def test_render_rejects_unknown_reference_format(tmp_path):
    source = write_splits(tmp_path)
    reference = tmp_path / "best.lss"
    reference.write_text("<Run/>", encoding="utf-8")
    result = runner.invoke(app, ["render", str(source), "--output", str(tmp_path / "o.srt"), "--reference", str(reference)])
    assert result.exit_code == 1
    assert "Unsupported reference format" in result.output


def test_render_broken_reference_shows_pipeline_error(tmp_path):
    source = write_splits(tmp_path)
    reference = tmp_path / "best.json"
    reference.write_text(json.dumps({"splits": []}), encoding="utf-8")
    out = tmp_path / "o.srt"
    result = runner.invoke(app, ["render", str(source), "--output", str(out), "--reference", str(reference)])
    assert result.exit_code == 1
    assert "Cannot load reference run" in result.output
    assert not out.exists()


def test_run_save_reference_must_be_json(tmp_path):
    video = tmp_path / "run.mp4"
    video.write_bytes(b"fake mp4 content")
    result = runner.invoke(
        app,
        ["run", str(video), "--config", str(write_config(tmp_path)), "--output", str(tmp_path / "out.srt"),
         "--save-reference", str(tmp_path / "best.srt")],
    )
    assert result.exit_code == 1
    assert "Reference output must be a .json file" in result.output


def test_faster_run_updates_saved_reference(tmp_path):
    path = tmp_path / "best.json"
    slow = ReferenceRun((("Split 1", 60_000), ("Split 2", 130_000)))
    events = [SplitEvent(1, 60.0, TimerValue.from_ms(59_000)), SplitEvent(2, 121.0, TimerValue.from_ms(120_000))]

    _update_reference(slow, PipelineResult(events, [], ReconcilerStats(), cancelled=True), path)
    assert not path.exists()

    _update_reference(slow, PipelineResult(events, [], ReconcilerStats()), path)
    assert load_reference(path).splits == (("Split 1", 59_000), ("Split 2", 120_000))
