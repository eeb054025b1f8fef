import asyncio
import unittest

from perfetto_tbt.blocking import TaskInterval, Window
from perfetto_tbt.computed import ComputedArtifact, ComputedContext
from perfetto_tbt.config import GatherContext, Settings
from perfetto_tbt.errors import (
    MissingDependencyError,
    NoFirstContentfulPaintError,
    UnsupportedModeError
)
from perfetto_tbt.metrics import (
    METRIC_DEPENDENCIES,
    FixedInteractiveTime,
    MetricComputationInput,
    MetricMode,
    MetricResult,
    TotalBlockingTime
)
from perfetto_tbt.trace import ProcessedTrace, TraceTimestamps


class InteractiveUnavailable(Exception):
    pass


class CountingInteractive(ComputedArtifact):
    name = "Interactive"
    dependency_keys = METRIC_DEPENDENCIES

    def __init__(self, timing=1000.0, error=None):
        self.timing = timing
        self.error = error
        self.calls = 0

    async def compute(self, data, context):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return MetricResult(timing=self.timing)


class PlainInteractive:
    """Interactive-time provider that is not itself a cached artifact."""

    def __init__(self, timing):
        self.timing = timing
        self.calls = 0

    async def request(self, data, context):
        self.calls += 1
        return MetricResult(timing=self.timing)


class CountingSimulation(ComputedArtifact):
    name = "LanternTotalBlockingTime"
    dependency_keys = METRIC_DEPENDENCIES

    def __init__(self, timing=321.0):
        self.calls = 0
        self.received = None
        self.result = MetricResult(timing=timing)

    def configuration(self):
        return {"timing": self.result.timing}

    def prepare(self, dependencies):
        return MetricComputationInput(**dependencies)

    async def compute(self, data, context):
        self.calls += 1
        self.received = data
        return self.result


def _processed_trace(first_contentful_paint=100.0, trace_end=1500.0):
    return ProcessedTrace(
        main_thread_tasks=(
            TaskInterval(0, 200),
            TaskInterval(210, 80),
            TaskInterval(500, 300),
            TaskInterval(1200, 400)
        ),
        timestamps=TraceTimestamps(trace_start=0.0, trace_end=trace_end),
        first_contentful_paint=first_contentful_paint
    )


def _input(gather_mode="navigation", throttling_method="provided", trace=None):
    return MetricComputationInput(
        devtools_log=[],
        gather_context=GatherContext(gather_mode),
        settings=Settings(throttling_method),
        simulator=object(),
        trace=trace if trace is not None else _processed_trace(),
        url="https://example.com/"
    )


class TestObservedTotalBlockingTime(unittest.IsolatedAsyncioTestCase):
    async def test_navigation_window_runs_from_fcp_to_interactive(self):
        interactive = CountingInteractive(timing=1000.0)
        metric = TotalBlockingTime(interactive=interactive)

        result = await metric.request(_input(), ComputedContext(), mode=MetricMode.OBSERVED)

        self.assertEqual(result.timing, 380)
        self.assertEqual(result.window, Window(100.0, 1000.0))
        self.assertEqual([item.blocking_ms for item in result.contributions], [100, 30, 250])
        self.assertEqual(interactive.calls, 1)

    async def test_timespan_window_covers_whole_trace(self):
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive)

        result = await metric.request(_input(gather_mode="timespan"), ComputedContext())

        self.assertEqual(result.timing, 730)
        self.assertEqual(result.window, Window(0.0, 1500.0))
        self.assertEqual(interactive.calls, 0)

    async def test_timespan_does_not_need_interactive_provider(self):
        metric = TotalBlockingTime()
        result = await metric.request(_input(gather_mode="timespan"), ComputedContext())
        self.assertEqual(result.timing, 730)

    async def test_repeat_request_is_memoized(self):
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive)
        context = ComputedContext()
        data = _input()

        first = await metric.request(data, context)
        second = await metric.request(data, context)

        self.assertIs(first, second)
        self.assertEqual(interactive.calls, 1)

    async def test_interactive_time_shared_with_other_consumers(self):
        interactive = CountingInteractive(timing=800.0)
        metric = TotalBlockingTime(interactive=interactive)
        context = ComputedContext()
        data = _input()

        tbt, tti = await asyncio.gather(
            metric.request(data, context),
            interactive.request(data, context)
        )

        self.assertEqual(tti.timing, 800.0)
        self.assertEqual(tbt.window.end, 800.0)
        self.assertEqual(interactive.calls, 1)

    async def test_concurrent_requests_compute_once(self):
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive)
        context = ComputedContext()
        data = _input()

        results = await asyncio.gather(*[metric.request(data, context) for _ in range(5)])

        self.assertTrue(all(result is results[0] for result in results))
        self.assertEqual(interactive.calls, 1)

    async def test_interactive_failure_propagates_and_is_cached(self):
        error = InteractiveUnavailable("Not enough quiet time in the trace")
        interactive = CountingInteractive(error=error)
        metric = TotalBlockingTime(interactive=interactive)
        context = ComputedContext()
        data = _input()

        with self.assertRaises(InteractiveUnavailable) as first:
            await metric.request(data, context)
        with self.assertRaises(InteractiveUnavailable) as second:
            await metric.request(data, context)

        self.assertIs(first.exception, error)
        self.assertIs(second.exception, error)
        self.assertEqual(interactive.calls, 1)

    async def test_navigation_without_fcp(self):
        metric = TotalBlockingTime(interactive=CountingInteractive())
        data = _input(trace=_processed_trace(first_contentful_paint=None))

        with self.assertRaises(NoFirstContentfulPaintError):
            await metric.request(data, ComputedContext())

    async def test_empty_trace(self):
        trace = ProcessedTrace(main_thread_tasks=(), timestamps=TraceTimestamps(0.0, 0.0))
        metric = TotalBlockingTime()

        result = await metric.request(_input(gather_mode="timespan", trace=trace), ComputedContext())

        self.assertEqual(result.timing, 0)

    async def test_fixed_interactive_time(self):
        metric = TotalBlockingTime(interactive=FixedInteractiveTime(1000.0))
        result = await metric.request(_input(), ComputedContext())
        self.assertEqual(result.timing, 380)


class TestConfiguredArtifacts(unittest.IsolatedAsyncioTestCase):
    async def test_interactive_timings_cached_separately(self):
        context = ComputedContext()
        data = _input()

        early = await TotalBlockingTime(interactive=FixedInteractiveTime(300.0)).request(data, context)
        late = await TotalBlockingTime(interactive=FixedInteractiveTime(1000.0)).request(data, context)

        self.assertEqual(early.timing, 130)
        self.assertEqual(early.window, Window(100.0, 300.0))
        self.assertEqual(late.timing, 380)
        self.assertEqual(late.window, Window(100.0, 1000.0))

    async def test_equally_configured_instances_share_result(self):
        context = ComputedContext()
        data = _input()

        first = await TotalBlockingTime(interactive=FixedInteractiveTime(1000.0)).request(data, context)
        second = await TotalBlockingTime(interactive=FixedInteractiveTime(1000.0)).request(data, context)

        self.assertIs(first, second)

    async def test_plain_providers_keyed_by_instance(self):
        context = ComputedContext()
        data = _input()
        early_provider = PlainInteractive(300.0)
        late_provider = PlainInteractive(1000.0)

        early = await TotalBlockingTime(interactive=early_provider).request(data, context)
        late = await TotalBlockingTime(interactive=late_provider).request(data, context)
        again = await TotalBlockingTime(interactive=early_provider).request(data, context)

        self.assertEqual(early.timing, 130)
        self.assertEqual(late.timing, 380)
        self.assertIs(again, early)
        self.assertEqual(early_provider.calls, 1)
        self.assertEqual(late_provider.calls, 1)

    async def test_simulation_providers_cached_separately(self):
        context = ComputedContext()
        data = _input()
        first_simulation = CountingSimulation()
        second_simulation = CountingSimulation(timing=99.0)

        first = await TotalBlockingTime(simulation=first_simulation).request(data, context, mode=MetricMode.SIMULATED)
        second = await TotalBlockingTime(simulation=second_simulation).request(data, context, mode=MetricMode.SIMULATED)

        self.assertEqual(first.timing, 321.0)
        self.assertEqual(second.timing, 99.0)


class TestSimulatedTotalBlockingTime(unittest.IsolatedAsyncioTestCase):
    async def test_result_is_passed_through(self):
        simulation = CountingSimulation()
        metric = TotalBlockingTime(simulation=simulation)
        data = _input()

        result = await metric.request(data, ComputedContext(), mode=MetricMode.SIMULATED)

        self.assertIs(result, simulation.result)
        self.assertEqual(simulation.calls, 1)
        self.assertIs(simulation.received.trace, data.trace)
        self.assertIs(simulation.received.simulator, data.simulator)

    async def test_mode_from_settings(self):
        simulation = CountingSimulation()
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive, simulation=simulation)

        result = await metric.request(_input(throttling_method="simulate"), ComputedContext())

        self.assertEqual(result.timing, 321.0)
        self.assertEqual(interactive.calls, 0)

    async def test_modes_are_cached_separately(self):
        simulation = CountingSimulation()
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive, simulation=simulation)
        context = ComputedContext()
        data = _input()

        observed = await metric.request(data, context, mode="observed")
        simulated = await metric.request(data, context, mode="simulated")

        self.assertEqual(observed.timing, 380)
        self.assertEqual(simulated.timing, 321.0)
        self.assertEqual(simulation.calls, 1)
        self.assertEqual(interactive.calls, 1)

    async def test_timespan_cannot_be_simulated(self):
        metric = TotalBlockingTime(simulation=CountingSimulation())

        with self.assertRaises(UnsupportedModeError):
            await metric.request(_input(gather_mode="timespan"), ComputedContext(), mode=MetricMode.SIMULATED)


class TestMissingInputs(unittest.IsolatedAsyncioTestCase):
    async def test_missing_trace_fails_before_computing(self):
        interactive = CountingInteractive()
        metric = TotalBlockingTime(interactive=interactive)
        context = ComputedContext()
        data = MetricComputationInput(gather_context=GatherContext(), settings=Settings())

        with self.assertRaises(MissingDependencyError):
            await metric.request(data, context)

        self.assertEqual(len(context.computed_cache), 0)
        self.assertEqual(interactive.calls, 0)

    async def test_mapping_missing_declared_key(self):
        metric = TotalBlockingTime(interactive=CountingInteractive())
        data = {
            "devtools_log": [],
            "gather_context": GatherContext(),
            "settings": Settings(),
            "trace": _processed_trace(),
            "url": "https://example.com/"
        }

        with self.assertRaises(MissingDependencyError):
            await metric.request(data, ComputedContext())

    async def test_simulated_without_provider(self):
        metric = TotalBlockingTime()

        with self.assertRaises(MissingDependencyError):
            await metric.request(_input(), ComputedContext(), mode=MetricMode.SIMULATED)

    async def test_mode_requires_settings(self):
        metric = TotalBlockingTime()
        data = MetricComputationInput(gather_context=GatherContext("timespan"), trace=_processed_trace())

        with self.assertRaises(MissingDependencyError):
            await metric.request(data, ComputedContext())


if __name__ == "__main__":
    unittest.main()
