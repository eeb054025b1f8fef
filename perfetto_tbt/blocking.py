"""Blocking-time aggregation over main-thread task timelines."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from perfetto_tbt.errors import MalformedTimelineError, MissingDependencyError

logger = logging.getLogger(__name__)

BLOCKING_TIME_THRESHOLD_MS = 50.0


def _check_timing(value: float, label: str) -> None:
    if value is None or math.isnan(value) or math.isinf(value):
        raise MalformedTimelineError(f"{label} must be a finite number, got {value!r}")


@dataclass(frozen=True)
class TaskInterval:
    """One uninterrupted main-thread task, in milliseconds."""

    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True)
class Window:
    """Half-open range ``[begin, end)`` over which blocking time counts."""

    begin: float
    end: float

    def __post_init__(self):
        _check_timing(self.begin, "Window begin")
        _check_timing(self.end, "Window end")
        if self.begin > self.end:
            raise MalformedTimelineError(
                f"Window begin ({self.begin}) is after its end ({self.end})"
            )

    @property
    def length(self) -> float:
        return self.end - self.begin


@dataclass(frozen=True)
class TaskContribution:
    task: TaskInterval
    blocking_ms: float


def _validate_task(task: TaskInterval) -> None:
    _check_timing(task.start, "Task start")
    _check_timing(task.duration, "Task duration")
    if task.start < 0:
        raise MalformedTimelineError(f"Task start must be non-negative, got {task.start}")
    if task.duration < 0:
        raise MalformedTimelineError(f"Task duration must be non-negative, got {task.duration}")


def _contribution(task: TaskInterval, threshold: float, window: Window) -> float:
    overlap_start = max(task.start, window.begin)
    overlap_end = min(task.end, window.end)
    if overlap_end <= overlap_start:
        return 0.0

    # Threshold applies to the whole task; only the result is clipped to the window.
    blocking = max(0.0, task.duration - threshold)
    return min(blocking, overlap_end - overlap_start)


def blocking_contributions(
    timeline: Iterable[TaskInterval],
    threshold: float,
    window: Window
) -> list[TaskContribution]:
    """
    Return the non-zero blocking contribution of each task within ``window``.

    Raises:
        MalformedTimelineError: if a task has negative or non-finite timing
    """
    contributions = []
    for task in timeline:
        _validate_task(task)
        if window.length == 0 or task.duration <= threshold:
            continue
        amount = _contribution(task, threshold, window)
        if amount > 0:
            contributions.append(TaskContribution(task=task, blocking_ms=amount))
    return contributions


def aggregate(timeline: Iterable[TaskInterval], threshold: float, window: Window) -> float:
    """
    Sum the blocking time of every task that overlaps ``window``.

    Blocking time of a task is the part of its duration beyond ``threshold``.
    That amount is capped at the length of the task's overlap with the window,
    so a long task straddling the window start only counts what falls inside.

    Args:
        timeline: Task intervals ordered by start time
        threshold: Duration in ms a task may run before it starts blocking
        window: Range over which blocking time counts

    Returns:
        Total blocking time in milliseconds, never negative
    """
    return total_blocking_time(blocking_contributions(timeline, threshold, window))


def total_blocking_time(contributions: Iterable[TaskContribution]) -> float:
    return sum((item.blocking_ms for item in contributions), 0.0)


def resolve_window(
    first_contentful_paint: float | None,
    interactive_time: float | None,
    trace_end: float | None
) -> Window:
    """
    Pick the blocking-time window for a recorded trace.

    A page load counts from first contentful paint to interactive; any other
    recording counts from its start to ``trace_end``.
    """
    if first_contentful_paint is not None:
        if interactive_time is None:
            raise MissingDependencyError("interactive_time")
        window = Window(begin=first_contentful_paint, end=interactive_time)
    else:
        if trace_end is None:
            raise MissingDependencyError("trace_end")
        window = Window(begin=0.0, end=trace_end)

    logger.debug("Resolved blocking window [%.2f, %.2f)", window.begin, window.end)
    return window


def top_blocking_tasks(contributions: Sequence[TaskContribution], top_n: int) -> list[TaskContribution]:
    return sorted(contributions, key=lambda item: item.blocking_ms, reverse=True)[:top_n]
