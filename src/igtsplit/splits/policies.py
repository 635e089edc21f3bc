"""Split boundary policies.

Where a run's segments begin and end is per-run configuration, not detector
logic, so boundaries are decided by small strategy objects.  A policy sees the
previous and current known samples and reports every boundary crossed between
them.  The detector owns ordering and debouncing; a policy only needs to return
a key that is stable for a given boundary within one timer epoch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Optional, Protocol, Sequence

from igtsplit.config.schema import PolicyConfig
from igtsplit.models import CleanedSample, TimerValue


@dataclass(frozen=True)
class SplitBoundary:
    key: Hashable
    label: Optional[str] = None
    igt: Optional[TimerValue] = None   # recorded value; defaults to the crossing sample's value


class SplitPolicy(Protocol):
    def crossings(
        self,
        previous: Optional[CleanedSample],
        current: CleanedSample,
    ) -> list[SplitBoundary]:
        ...


def _span_ms(previous: Optional[CleanedSample], current: CleanedSample) -> Optional[tuple[int, int]]:
    """Half-open IGT span ``(lo, hi]`` covered by moving from *previous* to *current*."""
    if current.reset:
        return 0, current.value.total_ms
    if previous is None or previous.value is None:
        return None
    return previous.value.total_ms, current.value.total_ms


class IntervalPolicy:
    """Synthetic split every ``every_s`` seconds of IGT."""

    def __init__(self, every_s: float, label_template: str = "Split {n}") -> None:
        self.every_ms = int(round(every_s * 1000))
        if self.every_ms <= 0:
            raise ValueError("every_s must be positive")
        self.label_template = label_template

    def crossings(self, previous, current):
        span = _span_ms(previous, current)
        if span is None:
            return []
        lo, hi = span
        first = lo // self.every_ms + 1
        last = hi // self.every_ms
        return [
            SplitBoundary(key=("interval", n), label=self.label_template.format(n=n))
            for n in range(first, last + 1)
        ]


class MarkerPolicy:
    """Splits at configured IGT values, e.g. taken from a previous run's splits."""

    def __init__(self, markers: Sequence[tuple[str, float]]) -> None:
        self.markers = sorted(
            ((label, int(round(igt_s * 1000))) for label, igt_s in markers),
            key=lambda m: m[1],
        )

    def crossings(self, previous, current):
        span = _span_ms(previous, current)
        if span is None:
            return []
        lo, hi = span
        return [
            SplitBoundary(key=("marker", i), label=label)
            for i, (label, at_ms) in enumerate(self.markers)
            if lo < at_ms <= hi
        ]


class PercentPolicy:
    """Split when the completion percentage shown beside the timer moves forward.

    With *labels*, only the listed percentages are splits and each split is
    named after its entry; otherwise every increase is a split named ``"<p>%"``.
    """

    def __init__(self, labels: Optional[dict[int, str]] = None) -> None:
        self.labels = dict(labels or {})

    def crossings(self, previous, current):
        now = current.value.percent
        if now is None or current.reset or previous is None or previous.value is None:
            return []
        before = previous.value.percent
        if before is None or now <= before:
            return []
        if not self.labels:
            return [SplitBoundary(key=("percent", now), label=f"{now}%")]
        return [
            SplitBoundary(key=("percent", p), label=self.labels[p])
            for p in sorted(self.labels)
            if before < p <= now
        ]


class ResetPolicy:
    """Split on a recognised timer reset, recording the final value before it."""

    def __init__(self, label: str = "Reset") -> None:
        self.label = label

    def crossings(self, previous, current):
        if not current.reset or previous is None or previous.value is None:
            return []
        return [SplitBoundary(key=("reset", current.frame_index), label=self.label, igt=previous.value)]


class CompositePolicy:
    """Runs several policies and concatenates their boundaries."""

    def __init__(self, policies: Sequence[SplitPolicy]) -> None:
        self.policies = list(policies)

    def crossings(self, previous, current):
        found: list[SplitBoundary] = []
        for policy in self.policies:
            found.extend(policy.crossings(previous, current))
        return found


def build_policy(config: PolicyConfig) -> CompositePolicy:
    """Assemble the policies enabled in *config*."""
    policies: list[SplitPolicy] = []
    if config.split_on_reset:
        policies.append(ResetPolicy())
    if config.markers:
        policies.append(MarkerPolicy([(m.label, m.igt_s) for m in config.markers]))
    if config.split_on_percent or config.percent_labels:
        policies.append(PercentPolicy(config.percent_labels))
    if config.interval_s is not None:
        policies.append(IntervalPolicy(config.interval_s))
    return CompositePolicy(policies)
