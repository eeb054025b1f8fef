"""
Total Blocking Time.

Blocking time is any part of a main-thread task beyond its first 50ms: a 110ms
task blocks for 60ms. Total Blocking Time sums it between first contentful
paint and time to interactive for a page load, or over the whole recording
when there was no navigation.

The metric is available observed (from the recorded timeline) or simulated
(delegated to a simulation engine). The caller picks the mode, either
explicitly or through ``Settings.throttling_method``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from perfetto_tbt.blocking import (
    BLOCKING_TIME_THRESHOLD_MS,
    TaskContribution,
    Window,
    blocking_contributions,
    resolve_window,
    total_blocking_time,
)
from perfetto_tbt.computed import ARTIFACT_KEY, ComputedArtifact, ComputedContext, pick_dependencies
from perfetto_tbt.config import GatherContext, Settings
from perfetto_tbt.errors import MissingDependencyError, UnsupportedModeError
from perfetto_tbt.trace import (
    ProcessedNavigationArtifact,
    ProcessedTraceArtifact,
    get_main_thread_top_level_events,
)

logger = logging.getLogger(__name__)

METRIC_DEPENDENCIES = ("devtools_log", "gather_context", "settings", "simulator", "trace", "url")


class MetricMode(str, enum.Enum):
    OBSERVED = "observed"
    SIMULATED = "simulated"

    @classmethod
    def from_settings(cls, settings: Settings) -> "MetricMode":
        if settings.throttling_method == "simulate":
            return cls.SIMULATED
        return cls.OBSERVED


@dataclass(frozen=True)
class MetricResult:
    """
    Metric timing in ms.

    Observed results also carry the window they were measured over and the
    tasks that contributed to it.
    """

    timing: float
    window: Window | None = None
    contributions: tuple[TaskContribution, ...] = ()


@dataclass(frozen=True, eq=False)
class MetricComputationInput:
    """The inputs a page-load metric depends on."""

    devtools_log: Any = None
    gather_context: GatherContext | None = None
    settings: Settings | None = None
    simulator: Any = None
    trace: Any = None
    url: Any = None


class InteractiveTimeProvider(Protocol):
    async def request(self, data: MetricComputationInput, context: ComputedContext) -> Any:
        ...


class SimulationProvider(Protocol):
    async def request(self, data: MetricComputationInput, context: ComputedContext) -> Any:
        ...


class FixedInteractiveTime(ComputedArtifact):
    """Interactive-time provider returning a timing measured elsewhere."""

    name = "FixedInteractiveTime"
    dependency_keys = METRIC_DEPENDENCIES

    def __init__(self, timing: float):
        self.timing = timing

    def configuration(self) -> dict[str, Any]:
        return {"timing": self.timing}

    async def compute(self, data: Any, context: ComputedContext) -> MetricResult:
        return MetricResult(timing=self.timing)


class TotalBlockingTime(ComputedArtifact):
    """Memoized Total Blocking Time in either observed or simulated mode."""

    name = "TotalBlockingTime"
    dependency_keys = METRIC_DEPENDENCIES
    threshold = BLOCKING_TIME_THRESHOLD_MS

    def __init__(
        self,
        interactive: InteractiveTimeProvider | None = None,
        simulation: SimulationProvider | None = None,
        processed_trace: ComputedArtifact | None = None,
        processed_navigation: ComputedArtifact | None = None
    ):
        self.interactive = interactive
        self.simulation = simulation
        self.processed_trace = processed_trace or ProcessedTraceArtifact()
        self.processed_navigation = processed_navigation or ProcessedNavigationArtifact()

    def configuration(self) -> dict[str, Any]:
        return {
            "interactive": self.interactive,
            "simulation": self.simulation,
            "processed_trace": self.processed_trace,
            "processed_navigation": self.processed_navigation,
            "threshold": self.threshold
        }

    def prepare(self, dependencies: dict[str, Any]) -> MetricComputationInput:
        return MetricComputationInput(**dependencies)

    def resolve_mode(self, data: MetricComputationInput, mode: MetricMode | str | None) -> MetricMode:
        if mode is not None:
            return MetricMode(mode)
        if data.settings is None:
            raise MissingDependencyError("settings", self.name)
        return MetricMode.from_settings(data.settings)

    def _check_inputs(self, data: MetricComputationInput, mode: MetricMode) -> None:
        if data.trace is None:
            raise MissingDependencyError("trace", self.name)
        if data.gather_context is None:
            raise MissingDependencyError("gather_context", self.name)
        if mode is MetricMode.SIMULATED and self.simulation is None:
            raise MissingDependencyError("simulation provider", self.name)
        if (
            mode is MetricMode.OBSERVED
            and data.gather_context.is_navigation
            and self.interactive is None
        ):
            raise MissingDependencyError("interactive time provider", self.name)

    async def request(
        self,
        data: Any,
        context: ComputedContext,
        mode: MetricMode | str | None = None
    ) -> Any:
        """
        Compute the metric, reusing any earlier result for the same inputs.

        Args:
            data: MetricComputationInput, or any mapping/object with its fields
            context: Per-request context holding the computation cache
            mode: Observed or simulated; defaults to the mode ``settings`` implies

        Raises:
            MissingDependencyError: before computing, if a required input is absent
        """
        dependencies = pick_dependencies(data, self.dependency_keys)
        metric_input = self.prepare(dependencies)
        resolved_mode = self.resolve_mode(metric_input, mode)
        self._check_inputs(metric_input, resolved_mode)

        key = self.cache_key(resolved_mode.value, dependencies)
        return await context.computed_cache.request(
            key,
            lambda: self.compute_metric(metric_input, context, resolved_mode),
            retain={**dependencies, ARTIFACT_KEY: self}
        )

    async def compute(self, data: MetricComputationInput, context: ComputedContext) -> Any:
        return await self.compute_metric(data, context, self.resolve_mode(data, None))

    async def compute_metric(
        self,
        data: MetricComputationInput,
        context: ComputedContext,
        mode: MetricMode
    ) -> Any:
        if mode is MetricMode.SIMULATED:
            if not data.gather_context.is_navigation:
                raise UnsupportedModeError(
                    f"{self.name} can not be simulated in {data.gather_context.gather_mode} mode"
                )
            return await self.compute_simulated(data, context)
        return await self.compute_observed(data, context)

    async def compute_simulated(self, data: MetricComputationInput, context: ComputedContext) -> Any:
        return await self.simulation.request(data, context)

    async def compute_observed(self, data: MetricComputationInput, context: ComputedContext) -> MetricResult:
        processed_trace = await self.processed_trace.request(data.trace, context)
        events = get_main_thread_top_level_events(processed_trace)

        first_contentful_paint = None
        interactive_time = None
        if data.gather_context.is_navigation:
            navigation = await self.processed_navigation.request(processed_trace, context)
            first_contentful_paint = navigation.first_contentful_paint
            interactive_time = (await self.interactive.request(data, context)).timing

        window = resolve_window(
            first_contentful_paint,
            interactive_time,
            processed_trace.timestamps.trace_end
        )
        contributions = blocking_contributions(events, self.threshold, window)
        timing = total_blocking_time(contributions)
        logger.debug(
            "%s: %.2fms over %d tasks (%d blocking)",
            self.name,
            timing,
            len(events),
            len(contributions)
        )
        return MetricResult(timing=timing, window=window, contributions=tuple(contributions))
