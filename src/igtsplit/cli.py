"""igtsplit CLI entry point.

``igtsplit run`` reads the in-game timer out of a speedrun recording and
writes one subtitle cue per detected split.  ``igtsplit render`` re-renders
an existing split file with different cue options.

Raw OCR readings are cached in ``<video_stem>_igtsplit_work/`` next to the
video, so re-running with different reconciler, detector or subtitle settings
skips recognition.  Ctrl-C stops recognition early; the splits found so far
are still written.
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeElapsedColumn

from igtsplit import __version__
from igtsplit.config.loader import load_config
from igtsplit.errors import IgtSplitError
from igtsplit.ingestion.frames import VideoFrameSource
from igtsplit.models import RawReading, TimerValue
from igtsplit.pipeline import PipelineResult, process_readings, run_pipeline
from igtsplit.recognition.cache import load_readings, recognition_fingerprint, save_readings
from igtsplit.splits.reference import ReferenceRun, best_run, load_reference, save_reference
from igtsplit.subtitles import SubtitleOptions, read_srt, write_srt

app = typer.Typer(
    name="igtsplit",
    help="igtsplit: turn a speedrun video's in-game timer into split subtitles.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

_VALID_VIDEO_EXTS = {".mkv", ".avi", ".mp4", ".mov", ".webm", ".flv"}
_VALID_CONFIG_EXTS = {".json"}
_VALID_REFERENCE_EXTS = {".srt", ".json"}
_END_MODES = ("next", "fixed")
_AGGREGATIONS = ("per_split", "cumulative")


def _input_error(message: str) -> None:
    err_console.print(Panel(message, title="[red]Input Error[/red]", border_style="red"))
    raise typer.Exit(1)


def _setup_work_dir(source: Path, work_dir: Optional[Path]) -> Path:
    """Create the work directory (default ``<source_stem>_igtsplit_work/``). Idempotent."""
    if work_dir is None:
        work_dir = source.parent / f"{source.stem}_igtsplit_work"
    work_dir.mkdir(parents=True, exist_ok=True)
    return work_dir


def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"igtsplit {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show the version and exit."),
    ] = False,
) -> None:
    """Speedrun split detection from the in-game timer."""


@app.command()
def run(
    video: Annotated[
        Path,
        typer.Argument(
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Speedrun recording (MP4, MKV, AVI, MOV, WEBM or FLV).",
        ),
    ],
    config: Annotated[
        Path,
        typer.Option(
            "--config", "-c",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Run configuration (JSON).",
        ),
    ],
    output: Annotated[
        Path,
        typer.Option(
            "--output", "-o",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Subtitle file to write (.srt).",
        ),
    ],
    work_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--work-dir",
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Directory for cached readings (default: <video_stem>_igtsplit_work next to the video).",
        ),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Ignore and overwrite cached OCR readings."),
    ] = False,
    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-w", min=1, help="OCR worker threads (overrides ocr.workers)."),
    ] = None,
    reference: Annotated[
        Optional[Path],
        typer.Option(
            "--reference", "-r",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Reference run (.srt split file or .json) to show split deltas against.",
        ),
    ] = None,
    save_reference_to: Annotated[
        Optional[Path],
        typer.Option(
            "--save-reference",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Reference file (.json) to update when this run beats it. "
                 "Used as --reference when that is not given and the file exists.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log per-frame decisions."),
    ] = False,
) -> None:
    """Detect splits in VIDEO and write them as SRT subtitles."""
    _setup_logging(verbose)

    if video.suffix.lower() not in _VALID_VIDEO_EXTS:
        _input_error(
            f"Unsupported video format: [bold]{video.suffix}[/bold]\n"
            f"Supported formats: {', '.join(sorted(_VALID_VIDEO_EXTS))}"
        )
    if not video.exists():
        _input_error(
            f"File not found: [bold]{video}[/bold]\n"
            f"Check that the path is correct and the file is accessible."
        )
    if config.suffix.lower() not in _VALID_CONFIG_EXTS:
        _input_error(f"Unsupported configuration format: [bold]{config.suffix}[/bold]\nExpected a .json file.")
    if not config.exists():
        _input_error(
            f"File not found: [bold]{config}[/bold]\n"
            f"Check that the path is correct and the file is accessible."
        )
    if output.suffix.lower() != ".srt":
        _input_error(f"Output must be an .srt file, got [bold]{output.name}[/bold]")
    if reference is not None:
        _check_reference(reference)
    if save_reference_to is not None and save_reference_to.suffix.lower() != ".json":
        _input_error(f"Reference output must be a .json file, got [bold]{save_reference_to.name}[/bold]")
    if reference is None and save_reference_to is not None and save_reference_to.exists():
        reference = save_reference_to

    try:
        reference_run = load_reference(reference) if reference is not None else None
        run_config = load_config(config)
        if workers is not None:
            run_config = run_config.model_copy(
                update={"ocr": run_config.ocr.model_copy(update={"workers": workers})}
            )

        console.print(f"\n[bold cyan]igtsplit[/bold cyan]  [dim]{video.name}[/dim]  format=[bold]{run_config.timer.format}[/bold]\n")

        work = _setup_work_dir(video, work_dir)
        fingerprint = recognition_fingerprint(run_config)
        cached = None if no_cache else load_readings(video, work, fingerprint)

        if cached is not None:
            console.print(
                f"[yellow]Cache hit:[/] Loaded {len(cached)} readings from [dim]{work.name}[/dim], OCR skipped\n"
            )
            result = process_readings(cached, run_config)
        else:
            result = _recognize_and_process(video, run_config, work, fingerprint)

        options = SubtitleOptions.from_config(run_config.subtitles, reference=reference_run)
        write_srt(result.events, output, options)

    except IgtSplitError as e:
        err_console.print(Panel(
            str(e),
            title="[red]Pipeline Error[/red]",
            border_style="red",
        ))
        raise typer.Exit(1)

    _print_summary(result, output)
    if save_reference_to is not None:
        _update_reference(reference_run, result, save_reference_to)


def _check_reference(reference: Path) -> None:
    if reference.suffix.lower() not in _VALID_REFERENCE_EXTS:
        _input_error(
            f"Unsupported reference format: [bold]{reference.suffix}[/bold]\n"
            f"Expected one of: {', '.join(sorted(_VALID_REFERENCE_EXTS))}"
        )
    if not reference.exists():
        _input_error(
            f"File not found: [bold]{reference}[/bold]\n"
            f"Check that the path is correct and the file is accessible."
        )


def _update_reference(reference_run: Optional[ReferenceRun], result: PipelineResult, path: Path) -> None:
    if result.cancelled:
        console.print("[yellow]Reference not updated:[/] the run was interrupted\n")
        return
    best = best_run(reference_run, result.events)
    if best is None:
        console.print(f"[dim]Reference kept: {path.name}[/dim]\n")
        return
    save_reference(best, path)
    label, final_ms = best.final
    console.print(f"[bold green]New reference:[/] {label} at {TimerValue.from_ms(final_ms).format()}  [dim]{path}[/dim]\n")


def _recognize_and_process(video: Path, run_config, work: Path, fingerprint: str) -> PipelineResult:
    cancel = threading.Event()
    readings: list[RawReading] = []

    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        with VideoFrameSource.from_config(video, run_config.sampling) as source:
            console.print(f"[dim]{source!r}[/dim]")
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Reading timer...", total=source.expected_frames or None)
                result = run_pipeline(
                    source.frames(),
                    run_config,
                    frame_size=source.frame_size,
                    cancel=cancel,
                    progress_callback=lambda done: progress.update(task, completed=done),
                    on_reading=readings.append,
                )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if result.cancelled:
        console.print("[yellow]Interrupted:[/] writing the splits found so far; readings not cached\n")
    else:
        save_readings(readings, video, work, fingerprint)
    return result


def _print_summary(result: PipelineResult, output: Path) -> None:
    stats = result.stats
    console.print(
        f"[green]Frames:[/] {result.frames_processed}  "
        f"trusted={stats.trusted} corrected={stats.corrected} "
        f"unknown={stats.unrecoverable} resets={stats.resets} relocks={stats.relocks}"
    )
    console.print(f"[bold green]{len(result.events)} splits written:[/] [dim]{output}[/dim]\n")


@app.command()
def render(
    source: Annotated[
        Path,
        typer.Argument(
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Split subtitle file previously written by 'igtsplit run'.",
        ),
    ],
    output: Annotated[
        Path,
        typer.Option(
            "--output", "-o",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Subtitle file to write (.srt).",
        ),
    ],
    end_mode: Annotated[
        str,
        typer.Option("--end-mode", help="'next' ends a cue at the next split; 'fixed' shows each for --display-s."),
    ] = "next",
    display_s: Annotated[
        float,
        typer.Option("--display-s", min=0.001, help="Display time of the last (or every, with --end-mode fixed) cue."),
    ] = 5.0,
    aggregation: Annotated[
        str,
        typer.Option("--aggregation", help="'per_split' (one split per cue) or 'cumulative' (all splits so far)."),
    ] = "per_split",
    reference: Annotated[
        Optional[Path],
        typer.Option(
            "--reference", "-r",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
            help="Reference run (.srt split file or .json) to show split deltas against.",
        ),
    ] = None,
) -> None:
    """Re-render an existing split file with different cue options."""
    if source.suffix.lower() != ".srt":
        _input_error(f"Unsupported subtitle format: [bold]{source.suffix}[/bold]\nExpected an .srt file.")
    if not source.exists():
        _input_error(
            f"File not found: [bold]{source}[/bold]\n"
            f"Check that the path is correct and the file is accessible."
        )
    if output.suffix.lower() != ".srt":
        _input_error(f"Output must be an .srt file, got [bold]{output.name}[/bold]")
    if end_mode not in _END_MODES:
        _input_error(f"Unknown end mode: [bold]{end_mode}[/bold]\nValid modes: {', '.join(_END_MODES)}")
    if aggregation not in _AGGREGATIONS:
        _input_error(f"Unknown aggregation: [bold]{aggregation}[/bold]\nValid values: {', '.join(_AGGREGATIONS)}")
    if reference is not None:
        _check_reference(reference)

    try:
        reference_run = load_reference(reference) if reference is not None else None
        events = read_srt(source)
        options = SubtitleOptions(
            end_mode=end_mode,
            display_s=display_s,
            aggregation=aggregation,
            reference=reference_run,
        )
        write_srt(events, output, options)
    except IgtSplitError as e:
        err_console.print(Panel(
            str(e),
            title="[red]Pipeline Error[/red]",
            border_style="red",
        ))
        raise typer.Exit(1)

    console.print(f"[bold green]{len(events)} splits written:[/] [dim]{output}[/dim]")
