"""Main-thread task extraction from Perfetto traces."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from perfetto.trace_processor import TraceProcessor

from perfetto_tbt.blocking import TaskInterval
from perfetto_tbt.computed import ComputedArtifact, ComputedContext
from perfetto_tbt.errors import NoFirstContentfulPaintError

logger = logging.getLogger(__name__)

NAVIGATION_START_MARK = "navigationStart"
FIRST_CONTENTFUL_PAINT_MARK = "firstContentfulPaint"


@dataclass(frozen=True)
class TraceTimestamps:
    """Trace bounds in ms relative to the time origin."""

    trace_start: float
    trace_end: float


@dataclass(frozen=True)
class ProcessedTrace:
    main_thread_tasks: tuple[TaskInterval, ...]
    timestamps: TraceTimestamps
    main_thread: dict | None = None
    first_contentful_paint: float | None = None
    assumptions: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProcessedNavigation:
    first_contentful_paint: float


def get_main_thread_top_level_events(processed_trace: ProcessedTrace) -> list[TaskInterval]:
    """Return main-thread top-level tasks sorted by start time."""
    return sorted(processed_trace.main_thread_tasks, key=lambda task: task.start)


def _q(tp: TraceProcessor, sql: str) -> list[dict]:
    """Execute a SQL query and return results as a list of dictionaries."""
    result = tp.query(sql)
    rows = []
    for row in result:
        row_dict = {col: getattr(row, col) for col in result.column_names}
        rows.append(row_dict)
    return rows


def _safe_q(tp: TraceProcessor, sql: str, assumption_key: str, assumptions: dict | None) -> list[dict]:
    """Execute a SQL query, returning [] on failure and recording the reason."""
    try:
        return _q(tp, sql)
    except Exception as exc:
        logger.warning("Query for %s failed: %s", assumption_key, exc)
        if assumptions is not None and assumption_key not in assumptions:
            assumptions[assumption_key] = f"Query failed for {assumption_key}: {str(exc)}"
        return []


def _set_assumption(assumptions: dict, key: str, note: str) -> None:
    if key not in assumptions:
        assumptions[key] = note


class PerfettoTraceLoader:
    """Reads the main-thread timeline of one process out of a Perfetto trace."""

    def __init__(self, trace_path: str):
        self.trace_path = trace_path
        self.tp = TraceProcessor(trace=trace_path)

    def close(self):
        self.tp.close()

    def get_trace_bounds_ns(self, assumptions: dict) -> tuple[int, int] | None:
        rows = _safe_q(
            self.tp,
            "SELECT start_ts, end_ts FROM trace_bounds",
            "trace_bounds",
            assumptions
        )
        if not rows or rows[0].get("end_ts") is None:
            return None
        return rows[0]["start_ts"], rows[0]["end_ts"]

    def get_mark_ns(self, name: str, assumptions: dict) -> int | None:
        """Timestamp of the first slice named ``name``, if any."""
        escaped = name.replace("'", "''")
        rows = _safe_q(
            self.tp,
            f"SELECT MIN(ts) AS ts FROM slice WHERE name = '{escaped}'",
            name,
            assumptions
        )
        if not rows:
            return None
        return rows[0].get("ts")

    def resolve_focus_pid(self, focus_process: str | None, assumptions: dict) -> int | None:
        """
        Resolve the process whose main thread is measured.

        With ``focus_process`` the busiest process of that name wins; without
        it, the process owning the first contentful paint mark, else the
        process with the most slices.
        """
        if focus_process:
            escaped = focus_process.replace("'", "''")
            name_filter = f"WHERE p.name = '{escaped}'"
        else:
            name_filter = ""

        ranked = _safe_q(
            self.tp,
            f"""
            SELECT
                p.pid AS pid,
                COUNT(s.id) AS slice_count,
                SUM(s.name = '{FIRST_CONTENTFUL_PAINT_MARK}') AS fcp_marks,
                MAX(s.ts) AS max_ts
            FROM process p
            JOIN thread t ON t.upid = p.upid
            JOIN thread_track tt ON tt.utid = t.utid
            JOIN slice s ON s.track_id = tt.id
            {name_filter}
            GROUP BY p.pid
            ORDER BY fcp_marks DESC, slice_count DESC, max_ts DESC
            LIMIT 1
            """,
            "focus_process",
            assumptions
        )

        if ranked:
            return ranked[0].get("pid")
        return None

    def resolve_main_thread(self, focus_pid: int | None, assumptions: dict) -> dict | None:
        """
        Resolve the main thread for a focus PID using best-effort heuristics.
        """
        if focus_pid is None:
            return None

        for condition in ("t.name IN ('main', 'CrRendererMain')", "t.tid = p.pid"):
            rows = _safe_q(
                self.tp,
                f"""
                SELECT
                    t.utid AS utid,
                    t.tid AS tid,
                    t.name AS name,
                    p.pid AS pid,
                    p.name AS process_name
                FROM thread t
                JOIN process p ON t.upid = p.upid
                WHERE p.pid = {focus_pid} AND {condition}
                LIMIT 1
                """,
                "main_thread",
                assumptions
            )
            if rows:
                return dict(rows[0])

        return None

    def get_top_level_tasks_ns(self, main_thread: dict, assumptions: dict) -> list[tuple[int, int]]:
        """Depth-0 slices on the main thread as ``(ts, dur)`` pairs."""
        rows = _safe_q(
            self.tp,
            f"""
            SELECT s.ts AS ts, s.dur AS dur
            FROM slice s
            JOIN thread_track tt ON s.track_id = tt.id
            WHERE tt.utid = {main_thread["utid"]} AND s.depth = 0 AND s.dur >= 0
            ORDER BY s.ts
            """,
            "main_thread_tasks",
            assumptions
        )
        return [(row["ts"], row["dur"]) for row in rows if row.get("ts") is not None]


def _ns_to_ms(value: int | float) -> float:
    return value / 1e6


def load_perfetto_trace(
    trace_path: str | Path,
    focus_process: str | None = None,
    navigation_origin: bool = True
) -> ProcessedTrace:
    """
    Load a Perfetto trace and extract the main-thread timeline.

    Times are converted to milliseconds relative to ``navigationStart`` when
    the trace carries one and ``navigation_origin`` is set, otherwise relative
    to the trace start. Tasks that end before the origin are dropped and tasks
    straddling it are clipped to start at the origin.

    Args:
        trace_path: Path to the Perfetto trace file
        focus_process: Optional process name whose main thread is measured
        navigation_origin: Measure from navigationStart when the trace has one

    Returns:
        ProcessedTrace with tasks, bounds and the first contentful paint mark
    """
    logger.info("Loading trace %s", trace_path)
    loader = PerfettoTraceLoader(str(trace_path))

    try:
        assumptions: dict = {}

        bounds = loader.get_trace_bounds_ns(assumptions)
        if bounds is None:
            _set_assumption(assumptions, "trace_bounds", "Trace bounds unavailable; treating trace as empty")
            bounds = (0, 0)
        start_ns, end_ns = bounds

        navigation_start_ns = loader.get_mark_ns(NAVIGATION_START_MARK, assumptions)
        if navigation_origin and navigation_start_ns is not None:
            origin_ns = navigation_start_ns
            _set_assumption(assumptions, "time_origin", "Times relative to navigationStart")
        else:
            origin_ns = start_ns
            _set_assumption(assumptions, "time_origin", "Times relative to trace start")

        focus_pid = loader.resolve_focus_pid(focus_process, assumptions)
        main_thread = loader.resolve_main_thread(focus_pid, assumptions)

        tasks: list[TaskInterval] = []
        if main_thread is None:
            _set_assumption(
                assumptions,
                "main_thread",
                f"Main thread not found (focus_process={focus_process}); timeline is empty"
            )
        else:
            for ts, dur in loader.get_top_level_tasks_ns(main_thread, assumptions):
                task_end_ns = ts + dur
                if task_end_ns <= origin_ns:
                    continue
                # Tasks straddling the origin keep only the part after it.
                clipped_ns = max(ts, origin_ns)
                tasks.append(
                    TaskInterval(start=_ns_to_ms(clipped_ns - origin_ns), duration=_ns_to_ms(task_end_ns - clipped_ns))
                )
            _set_assumption(
                assumptions,
                "main_thread",
                f"Depth-0 slices on tid={main_thread.get('tid')} ({main_thread.get('name')})"
            )

        fcp_ns = loader.get_mark_ns(FIRST_CONTENTFUL_PAINT_MARK, assumptions)
        first_contentful_paint = None
        if fcp_ns is not None and fcp_ns >= origin_ns:
            first_contentful_paint = _ns_to_ms(fcp_ns - origin_ns)

        logger.info("Extracted %d main-thread tasks", len(tasks))
        return ProcessedTrace(
            main_thread_tasks=tuple(tasks),
            timestamps=TraceTimestamps(
                trace_start=_ns_to_ms(start_ns - origin_ns),
                trace_end=_ns_to_ms(end_ns - origin_ns)
            ),
            main_thread=main_thread,
            first_contentful_paint=first_contentful_paint,
            assumptions=assumptions
        )
    finally:
        loader.close()


class ProcessedTraceArtifact(ComputedArtifact):
    """Processed trace for a raw trace input; keyed on the input itself."""

    name = "ProcessedTrace"

    def __init__(self, focus_process: str | None = None, navigation_origin: bool = True):
        self.focus_process = focus_process
        self.navigation_origin = navigation_origin

    def configuration(self) -> dict[str, Any]:
        return {"focus_process": self.focus_process, "navigation_origin": self.navigation_origin}

    async def compute(self, data: Any, context: ComputedContext) -> ProcessedTrace:
        if isinstance(data, ProcessedTrace):
            return data
        return load_perfetto_trace(data, self.focus_process, self.navigation_origin)


class ProcessedNavigationArtifact(ComputedArtifact):
    """Navigation timings of a processed trace."""

    name = "ProcessedNavigation"

    async def compute(self, data: ProcessedTrace, context: ComputedContext) -> ProcessedNavigation:
        if data.first_contentful_paint is None:
            raise NoFirstContentfulPaintError(
                "The trace did not paint any content; no first contentful paint mark found"
            )
        return ProcessedNavigation(first_contentful_paint=data.first_contentful_paint)
