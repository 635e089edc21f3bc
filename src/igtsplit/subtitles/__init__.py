"""SRT rendering of split events, and reading them back."""
from igtsplit.subtitles.emitter import SubtitleOptions, render_cues, to_srt, write_srt
from igtsplit.subtitles.reader import read_srt

__all__ = ["SubtitleOptions", "render_cues", "to_srt", "write_srt", "read_srt"]
