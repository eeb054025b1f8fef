"""Total Blocking Time for Perfetto traces."""

from perfetto_tbt.blocking import (
    BLOCKING_TIME_THRESHOLD_MS,
    TaskInterval,
    Window,
    aggregate,
    resolve_window
)
from perfetto_tbt.computed import ComputationCache, ComputedArtifact, ComputedContext
from perfetto_tbt.config import GatherContext, Settings
from perfetto_tbt.metrics import (
    MetricComputationInput,
    MetricMode,
    MetricResult,
    TotalBlockingTime
)

__all__ = [
    "BLOCKING_TIME_THRESHOLD_MS",
    "ComputationCache",
    "ComputedArtifact",
    "ComputedContext",
    "GatherContext",
    "MetricComputationInput",
    "MetricMode",
    "MetricResult",
    "Settings",
    "TaskInterval",
    "TotalBlockingTime",
    "Window",
    "aggregate",
    "resolve_window"
]
