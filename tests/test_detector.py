"""Unit tests for igtsplit.splits: boundary policies and the SplitDetector state machine."""

import random

import pytest

from igtsplit.config.schema import DetectorConfig, MarkerEntry, PolicyConfig
from igtsplit.models import CleanedSample, RawReading, TimerValue
from igtsplit.splits.detector import DetectorState, SplitDetector
from igtsplit.splits.policies import (
    CompositePolicy,
    IntervalPolicy,
    MarkerPolicy,
    PercentPolicy,
    ResetPolicy,
    build_policy,
)
from igtsplit.timing.grammar import TimerFormat
from igtsplit.timing.reconciler import TemporalReconciler

FPS = 30.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def sample(index: int, ms, reset: bool = False, percent=None) -> CleanedSample:
    value = None if ms is None else TimerValue.from_ms(ms, percent=percent)
    return CleanedSample(frame_index=index, timestamp_s=index / FPS, value=value, reset=reset)


def stream(values_ms) -> list[CleanedSample]:
    return [sample(i, ms) for i, ms in enumerate(values_ms)]


def realtime(frames: int, offset_ms: int = 0) -> list[int]:
    return [offset_ms + int(round(i * 1000 / FPS)) for i in range(frames)]


def detect(samples, policy, **kwargs) -> tuple[list, SplitDetector]:
    detector = SplitDetector(policy, **kwargs)
    return list(detector.run(samples)), detector


def transitions_of(detector: SplitDetector) -> list[tuple[DetectorState, DetectorState]]:
    return [(a, b) for a, b, _ in detector.transitions]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class TestPolicies:
    def test_interval_reports_every_crossed_boundary(self) -> None:
        found = IntervalPolicy(10).crossings(sample(0, 9_000), sample(1, 31_000))
        assert [b.key for b in found] == [("interval", 1), ("interval", 2), ("interval", 3)]

    def test_interval_span_is_half_open(self) -> None:
        policy = IntervalPolicy(10)
        assert policy.crossings(sample(0, 9_999), sample(1, 10_000))
        assert not policy.crossings(sample(0, 10_000), sample(1, 10_001))

    def test_marker_labels(self) -> None:
        policy = MarkerPolicy([("Boss", 95.5), ("Door", 12.0)])
        found = policy.crossings(sample(0, 12_000), sample(1, 96_000))
        assert [b.label for b in found] == ["Boss"]

    def test_no_previous_sample_no_crossing(self) -> None:
        assert IntervalPolicy(1).crossings(None, sample(0, 5_000)) == []

    def test_reset_records_value_before_reset(self) -> None:
        found = ResetPolicy().crossings(sample(0, 42_000), sample(1, 0, reset=True))
        assert len(found) == 1
        assert found[0].igt.total_ms == 42_000

    def test_percent_any_increase(self) -> None:
        found = PercentPolicy().crossings(sample(0, 1_000, percent=10), sample(1, 1_033, percent=11))
        assert [b.label for b in found] == ["11%"]

    def test_percent_labelled_thresholds(self) -> None:
        policy = PercentPolicy({50: "Half", 100: "Any%"})
        assert policy.crossings(sample(0, 0, percent=48), sample(1, 33, percent=49)) == []
        found = policy.crossings(sample(0, 0, percent=49), sample(1, 33, percent=51))
        assert [b.label for b in found] == ["Half"]

    def test_build_policy_from_config(self) -> None:
        config = PolicyConfig(
            interval_s=60,
            markers=[MarkerEntry(label="B", igt_s=30), MarkerEntry(label="A", igt_s=10)],
            split_on_reset=True,
        )
        policy = build_policy(config)
        assert isinstance(policy, CompositePolicy)
        kinds = [type(p) for p in policy.policies]
        assert kinds == [ResetPolicy, MarkerPolicy, IntervalPolicy]
        assert [m[0] for m in policy.policies[1].markers] == ["A", "B"]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestStateMachine:
    def test_starts_on_first_nonzero_value(self) -> None:
        detector = SplitDetector(IntervalPolicy(60))
        detector.feed(sample(0, 0))
        detector.feed(sample(1, None))
        assert detector.state is DetectorState.IDLE
        detector.feed(sample(2, 33))
        assert detector.state is DetectorState.RUNNING

    def test_configured_start_value(self) -> None:
        detector = SplitDetector(IntervalPolicy(60), start_igt_s=5.0)
        detector.feed(sample(0, 4_999))
        assert detector.state is DetectorState.IDLE
        detector.feed(sample(1, 5_000))
        assert detector.state is DetectorState.RUNNING

    def test_interval_splits_once_per_minute(self) -> None:
        events, _ = detect(stream(realtime(int(185 * FPS))), IntervalPolicy(60))

        assert [e.sequence_number for e in events] == [1, 2, 3]
        assert [e.label for e in events] == ["Split 1", "Split 2", "Split 3"]
        for n, event in enumerate(events, start=1):
            assert event.timestamp_s == pytest.approx(60.0 * n, abs=1 / FPS)
            assert event.igt.total_ms == 60_000 * n

    def test_occlusion_pauses_and_resumes_without_split(self) -> None:
        values = realtime(int(40 * FPS))
        samples = stream(values)
        # two seconds of unknown samples from 20 s
        for i in range(int(20 * FPS), int(22 * FPS)):
            samples[i] = sample(i, None)

        events, detector = detect(samples, IntervalPolicy(60))

        assert events == []
        assert transitions_of(detector).count((DetectorState.RUNNING, DetectorState.PAUSED)) == 1
        assert transitions_of(detector).count((DetectorState.PAUSED, DetectorState.RUNNING)) == 1

    def test_short_dropout_does_not_pause(self) -> None:
        samples = stream(realtime(60))
        for i in range(20, 25):
            samples[i] = sample(i, None)
        _, detector = detect(samples, IntervalPolicy(60))
        assert (DetectorState.RUNNING, DetectorState.PAUSED) not in transitions_of(detector)

    def test_resume_needs_consecutive_known_samples(self) -> None:
        detector = SplitDetector(IntervalPolicy(60), pause_gap_s=0.5, resume_frames=3)
        for s in stream(realtime(10)):
            detector.feed(s)
        for i in range(10, 40):
            detector.feed(sample(i, None))
        assert detector.state is DetectorState.PAUSED

        detector.feed(sample(40, 1_333))
        detector.feed(sample(41, 1_367))
        detector.feed(sample(42, None))         # breaks the run
        detector.feed(sample(43, 1_433))
        detector.feed(sample(44, 1_467))
        assert detector.state is DetectorState.PAUSED
        detector.feed(sample(45, 1_500))
        assert detector.state is DetectorState.RUNNING

    def test_split_inside_resume_buffer_is_emitted(self) -> None:
        detector = SplitDetector(IntervalPolicy(1), pause_gap_s=0.5, resume_frames=2)
        for s in stream(realtime(20)):
            detector.feed(s)
        for i in range(20, 40):
            detector.feed(sample(i, None))
        events = detector.feed(sample(40, 1_333)) + detector.feed(sample(41, 1_367))
        assert [e.igt.total_ms for e in events] == [1_333]
        assert events[0].timestamp_s == pytest.approx(40 / FPS)

    def test_end_marker_finishes(self) -> None:
        events, detector = detect(stream(realtime(int(40 * FPS))), IntervalPolicy(60), end_igt_s=30.0)
        assert [e.label for e in events] == ["End"]
        assert events[0].igt.total_ms == 30_000
        assert detector.state is DetectorState.FINISHED
        assert transitions_of(detector)[-1] == (DetectorState.RUNNING, DetectorState.FINISHED)

    def test_final_split_on_finish(self) -> None:
        events, detector = detect(stream(realtime(100)), IntervalPolicy(60), final_split=True)
        assert [e.label for e in events] == ["Final"]
        assert events[0].igt.total_ms == realtime(100)[-1]
        assert detector.state is DetectorState.FINISHED

    def test_final_split_skipped_when_last_sample_already_split(self) -> None:
        events, _ = detect(stream(realtime(31)), IntervalPolicy(1), final_split=True)
        assert [e.label for e in events] == ["Split 1"]

    def test_finish_from_idle_emits_nothing(self) -> None:
        events, detector = detect(stream([0] * 10), IntervalPolicy(60), final_split=True)
        assert events == []
        assert detector.state is DetectorState.FINISHED

    def test_samples_after_finish_ignored(self) -> None:
        detector = SplitDetector(IntervalPolicy(1), end_igt_s=1.0)
        list(detector.run(stream(realtime(40))))
        assert detector.feed(sample(100, 9_000)) == []

    def test_from_config(self) -> None:
        detector = SplitDetector.from_config(DetectorConfig(pause_gap_s=1.5, final_split=True), IntervalPolicy(60))
        assert detector.pause_gap_s == 1.5
        assert detector.final_split


# ---------------------------------------------------------------------------
# Ordering and debounce
# ---------------------------------------------------------------------------

class TestOrderingAndDebounce:
    def test_boundary_emitted_once_per_epoch(self) -> None:
        samples = stream([59_000, 61_000, 59_000, 61_000])
        events, _ = detect(samples, IntervalPolicy(60))
        assert len(events) == 1

    def test_boundary_repeats_after_reset(self) -> None:
        samples = stream([59_000, 61_000, 62_000])
        samples.append(sample(3, 0, reset=True))
        samples += [sample(4, 59_000), sample(5, 61_000)]
        events, _ = detect(samples, CompositePolicy([ResetPolicy(), IntervalPolicy(60)]))
        assert [e.label for e in events] == ["Split 1", "Reset", "Split 1"]
        assert events[1].igt.total_ms == 62_000

    def test_multiple_crossings_collapse_to_last(self) -> None:
        policy = MarkerPolicy([("A", 10.0), ("B", 11.0)])
        events, _ = detect(stream([9_000, 12_000, 13_000]), policy)
        assert [e.label for e in events] == ["B"]

    def test_events_strictly_increasing(self) -> None:
        rng = random.Random(11)
        values, ms = [], 0
        for _ in range(5_000):
            ms += rng.choice([0, 33, 34, 500, 4_000])
            values.append(ms)
        samples = stream(values)
        for i in rng.sample(range(len(samples)), 300):
            samples[i] = sample(i, None)

        events, _ = detect(samples, CompositePolicy([IntervalPolicy(5), MarkerPolicy([("M", 100.0)])]))
        assert len(events) > 10
        assert [e.sequence_number for e in events] == list(range(1, len(events) + 1))
        assert all(a.timestamp_s < b.timestamp_s for a, b in zip(events, events[1:]))


# ---------------------------------------------------------------------------
# Reconciler and detector together
# ---------------------------------------------------------------------------

def test_corrupted_stream_splits_at_each_minute() -> None:
    """30 fps, 5 % corrupted readings, a synthetic split every 60 s of IGT."""
    rng = random.Random(2024)
    readings = []
    for i in range(int(301 * FPS)):
        text = TimerValue.from_ms(int(round(i * 1000 / FPS))).format()
        if rng.random() < 0.05:
            readings.append(RawReading(i, i / FPS, rng.choice(["", "8:88:88.888", "0:0:00"]), -1.0, False))
        else:
            readings.append(RawReading(i, i / FPS, text, 90.0, True))

    reconciler = TemporalReconciler(TimerFormat("H:MM:SS.mmm"))
    events, _ = detect(reconciler.reconcile(readings), IntervalPolicy(60))

    assert len(events) == 5
    for n, event in enumerate(events, start=1):
        assert abs(event.timestamp_s - 60.0 * n) <= 1 / FPS + 1e-9


def test_single_plausible_misread_does_not_pause() -> None:
    """A one-frame +1 s misread on a seconds-only timer must not open a gap."""
    readings = []
    for i in range(int(63 * FPS)):
        text = TimerValue.from_ms(int(round(i * 1000 / FPS))).format()[:-4]
        readings.append(RawReading(i, i / FPS, text, 90.0, True))
    readings[903] = RawReading(903, 903 / FPS, "0:00:31", 90.0, True)

    reconciler = TemporalReconciler(TimerFormat("H:MM:SS"))
    events, detector = detect(reconciler.reconcile(readings), IntervalPolicy(60))

    assert DetectorState.PAUSED not in [b for _, b in transitions_of(detector)]
    assert [e.igt.total_ms for e in events] == [60_000]
