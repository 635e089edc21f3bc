from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from igtsplit.timing.grammar import TimerFormat

# Named timer formats accepted in configuration. Custom patterns built from the
# same tokens are also accepted (see igtsplit.timing.grammar).
BUILTIN_TIMER_FORMATS: frozenset[str] = frozenset({
    "H:MM:SS.mmm",
    "H:MM:SS",
    "MM:SS.mmm",
    "MM:SS.mm",
    "MM:SS",
    "M:SS.mmm",
    "P H:MM:SS",
})


class RegionConfig(BaseModel):
    """Timer bounding box, in pixels or as fractions of the frame size."""
    x: float = Field(ge=0.0)
    y: float = Field(ge=0.0)
    width: float = Field(gt=0.0)
    height: float = Field(gt=0.0)
    units: Literal["px", "relative"] = "px"

    @model_validator(mode="after")
    def relative_within_unit_square(self) -> "RegionConfig":
        if self.units == "relative" and (self.x + self.width > 1.0 or self.y + self.height > 1.0):
            raise ValueError("relative region must lie within [0, 1] on both axes")
        return self


class PreprocessConfig(BaseModel):
    grayscale: bool = True
    contrast_stretch: bool = True
    scale: float = Field(default=3.0, gt=0.0, le=10.0)
    binarize: bool = False
    invert: bool = False


class TimerConfig(BaseModel):
    format: str = "H:MM:SS.mmm"
    min_confidence: float = 0.0   # readings below this are treated as provisional

    @field_validator("format")
    @classmethod
    def known_format(cls, v: str) -> str:
        try:
            TimerFormat(v)
        except ValueError as exc:
            raise ValueError(
                f"{exc}. Built-in formats: {sorted(BUILTIN_TIMER_FORMATS)}"
            ) from exc
        return v


class OcrConfig(BaseModel):
    psm: int = Field(default=7, ge=0, le=13)
    timeout_s: float = Field(default=2.0, gt=0.0)
    workers: int = Field(default=4, ge=1)
    batch_size: int = Field(default=32, ge=1)
    tesseract_cmd: Optional[str] = None


class SamplingConfig(BaseModel):
    stride: int = Field(default=1, ge=1)
    start_s: float = Field(default=0.0, ge=0.0)
    end_s: Optional[float] = Field(default=None, gt=0.0)

    @model_validator(mode="after")
    def end_after_start(self) -> "SamplingConfig":
        if self.end_s is not None and self.end_s <= self.start_s:
            raise ValueError(f"end_s ({self.end_s}) must be > start_s ({self.start_s})")
        return self


class ReconcilerConfig(BaseModel):
    nominal_rate: float = Field(default=1.0, gt=0.0)     # IGT seconds per video second
    tolerance: float = Field(default=0.5, ge=0.0, lt=1.0)
    window: int = Field(default=8, ge=1, le=600)         # lookback K, in frames
    allow_hold: bool = True
    reset_ceiling_s: float = Field(default=5.0, ge=0.0)
    reset_min_drop_s: float = Field(default=1.0, ge=0.0)
    min_reset_gap_s: float = Field(default=5.0, ge=0.0)
    reset_confirm_frames: int = Field(default=2, ge=1)
    relock_frames: int = Field(default=6, ge=2)
    rate_smoothing: float = Field(default=0.2, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def chains_fit_window(self) -> "ReconcilerConfig":
        for name in ("reset_confirm_frames", "relock_frames"):
            if getattr(self, name) > self.window:
                raise ValueError(f"{name} ({getattr(self, name)}) must be <= window ({self.window})")
        return self


class DetectorConfig(BaseModel):
    start_igt_s: float = Field(default=0.0, ge=0.0)
    pause_gap_s: float = Field(default=0.5, gt=0.0)
    resume_frames: int = Field(default=2, ge=1)
    end_igt_s: Optional[float] = Field(default=None, gt=0.0)
    end_label: str = "End"
    final_split: bool = False
    final_label: str = "Final"


class MarkerEntry(BaseModel):
    label: str
    igt_s: float = Field(ge=0.0)


class PolicyConfig(BaseModel):
    interval_s: Optional[float] = Field(default=None, gt=0.0)
    markers: list[MarkerEntry] = Field(default_factory=list)
    percent_labels: dict[int, str] = Field(default_factory=dict)
    split_on_percent: bool = False
    split_on_reset: bool = False

    @field_validator("markers")
    @classmethod
    def markers_unique(cls, v: list[MarkerEntry]) -> list[MarkerEntry]:
        times = [m.igt_s for m in v]
        if len(times) != len(set(times)):
            raise ValueError("markers contain duplicate igt_s values")
        return sorted(v, key=lambda m: m.igt_s)


class SubtitleConfig(BaseModel):
    end_mode: Literal["next", "fixed"] = "next"
    display_s: float = Field(default=5.0, gt=0.0)
    aggregation: Literal["per_split", "cumulative"] = "per_split"


class RunConfig(BaseModel):
    schema_version: str = "1.0"
    region: RegionConfig
    preprocess: PreprocessConfig = Field(default_factory=PreprocessConfig)
    timer: TimerConfig = Field(default_factory=TimerConfig)
    ocr: OcrConfig = Field(default_factory=OcrConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    subtitles: SubtitleConfig = Field(default_factory=SubtitleConfig)

    @model_validator(mode="after")
    def some_split_policy(self) -> "RunConfig":
        p = self.policy
        if (
            p.interval_s is None
            and not p.markers
            and not p.split_on_percent
            and not p.percent_labels
            and not p.split_on_reset
            and not self.detector.final_split
            and self.detector.end_igt_s is None
        ):
            raise ValueError(
                "no split source configured: set policy.interval_s, policy.markers, "
                "policy.split_on_percent, policy.split_on_reset, detector.end_igt_s or detector.final_split"
            )
        return self

    @model_validator(mode="after")
    def percent_policy_needs_percent_timer(self) -> "RunConfig":
        if (self.policy.split_on_percent or self.policy.percent_labels) and not TimerFormat(self.timer.format).has_percent:
            raise ValueError(
                f"policy.split_on_percent and policy.percent_labels need a timer format with a percent field "
                f"(e.g. 'P H:MM:SS'), got '{self.timer.format}'"
            )
        return self
