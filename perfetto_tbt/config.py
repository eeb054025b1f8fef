"""Settings and gather context passed alongside a trace."""

from __future__ import annotations

import os
from dataclasses import dataclass


THROTTLING_METHODS = ("simulate", "devtools", "provided")
GATHER_MODES = ("navigation", "timespan", "snapshot")

DEFAULT_THROTTLING_METHOD = "provided"
THROTTLING_METHOD_ENV = "PERFETTO_TBT_THROTTLING_METHOD"


@dataclass(frozen=True)
class Settings:
    """
    Run settings that influence metric computation.

    ``throttling_method`` picks the default metric mode: ``simulate`` maps to the
    simulated metric, ``devtools`` and ``provided`` to the observed one.
    """

    throttling_method: str = DEFAULT_THROTTLING_METHOD

    def __post_init__(self):
        if self.throttling_method not in THROTTLING_METHODS:
            raise ValueError(
                f"Unknown throttling method {self.throttling_method!r}; "
                f"expected one of {', '.join(THROTTLING_METHODS)}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        method = os.getenv(THROTTLING_METHOD_ENV, DEFAULT_THROTTLING_METHOD)
        return cls(throttling_method=method.strip().lower())


@dataclass(frozen=True)
class GatherContext:
    """How the trace was recorded: a full page load or a bare span of activity."""

    gather_mode: str = "navigation"

    def __post_init__(self):
        if self.gather_mode not in GATHER_MODES:
            raise ValueError(
                f"Unknown gather mode {self.gather_mode!r}; "
                f"expected one of {', '.join(GATHER_MODES)}"
            )

    @property
    def is_navigation(self) -> bool:
        return self.gather_mode == "navigation"
