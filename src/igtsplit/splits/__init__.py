"""Split detection: state machine and pluggable boundary policies."""
from igtsplit.splits.detector import DetectorState, SplitDetector
from igtsplit.splits.policies import (
    CompositePolicy,
    IntervalPolicy,
    MarkerPolicy,
    PercentPolicy,
    ResetPolicy,
    SplitBoundary,
    SplitPolicy,
    build_policy,
)
from igtsplit.splits.reference import ReferenceRun, best_run, load_reference, save_reference

__all__ = [
    "DetectorState",
    "SplitDetector",
    "CompositePolicy",
    "IntervalPolicy",
    "MarkerPolicy",
    "PercentPolicy",
    "ResetPolicy",
    "SplitBoundary",
    "SplitPolicy",
    "build_policy",
    "ReferenceRun",
    "best_run",
    "load_reference",
    "save_reference",
]
