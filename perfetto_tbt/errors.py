"""Error types raised by the blocking-time core."""


class TbtError(Exception):
    """Base class for errors raised by perfetto_tbt itself."""


class MissingDependencyError(TbtError):
    """A declared input dependency is absent."""

    def __init__(self, name: str, artifact: str | None = None):
        self.name = name
        self.artifact = artifact
        if artifact:
            message = f"{artifact} requires '{name}' but it was not provided"
        else:
            message = f"Required input '{name}' was not provided"
        super().__init__(message)


class MalformedTimelineError(TbtError, ValueError):
    """A task interval or window carries negative, NaN or infinite timing."""


class UnsupportedModeError(TbtError):
    """The requested metric mode cannot be computed for this gather."""


class NoFirstContentfulPaintError(TbtError):
    """A navigation trace has no first-contentful-paint mark."""
