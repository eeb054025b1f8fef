"""
Memoized computation of derived artifacts.

Every derived artifact (processed trace, time to interactive, total blocking
time, ...) is a pure function of a declared set of inputs. ``ComputationCache``
guarantees each one is computed at most once per distinct set of inputs and
that concurrent requests for the same inputs share a single computation.

Keys are built from input identity rather than deep equality: two requests
map to the same key when they pass the same objects for every declared
dependency. Immutable scalars (strings, numbers, paths) are keyed by value.
The configuration of the artifact instance (its settings and collaborators)
is part of the key as well.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Awaitable, Callable

from perfetto_tbt.errors import MissingDependencyError

logger = logging.getLogger(__name__)

_VALUE_KEYED_TYPES = (str, bytes, int, float, bool, type(None), PurePath)

# Declared dependency name used when an artifact is keyed on its whole input.
INPUT_KEY = "input"

# Retained alongside the inputs so ids in the key's configuration stay unique.
ARTIFACT_KEY = "__artifact__"


def _identity(value: Any) -> Any:
    if isinstance(value, ComputedArtifact):
        return ("artifact", value.cache_identity())
    if isinstance(value, _VALUE_KEYED_TYPES):
        return (type(value).__name__, value)
    return ("id", id(value))


@dataclass(frozen=True)
class ComputationKey:
    artifact: str
    kind: str | None
    dependencies: tuple[tuple[str, Any], ...]
    configuration: tuple[tuple[str, Any], ...] = ()


def _identities(values: Mapping[str, Any]) -> tuple[tuple[str, Any], ...]:
    return tuple((name, _identity(value)) for name, value in values.items())


def derive_key(
    artifact: str,
    kind: str | None,
    dependencies: Mapping[str, Any],
    configuration: Mapping[str, Any] | None = None
) -> ComputationKey:
    """
    Build the cache key for ``artifact``.

    ``configuration`` holds the settings and collaborators of the artifact
    instance; artifacts configured differently never share an entry.
    """
    return ComputationKey(
        artifact=artifact,
        kind=kind,
        dependencies=_identities(dependencies),
        configuration=_identities(configuration or {})
    )


def pick_dependencies(data: Any, keys: tuple[str, ...] | None) -> dict[str, Any]:
    """
    Select the declared dependencies from ``data``.

    ``data`` may be a mapping or any object exposing the keys as attributes.
    Fields that are not declared are dropped so they cannot influence the key.

    Raises:
        MissingDependencyError: if a declared key is absent
    """
    if keys is None:
        return {INPUT_KEY: data}

    picked = {}
    for key in keys:
        if isinstance(data, Mapping):
            if key not in data:
                raise MissingDependencyError(key)
            picked[key] = data[key]
        else:
            if not hasattr(data, key):
                raise MissingDependencyError(key)
            picked[key] = getattr(data, key)
    return picked


class EntryState(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class CacheEntry:
    """A single memoized computation and the inputs it was keyed on."""

    key: ComputationKey
    task: asyncio.Future
    retained: dict[str, Any]
    state: EntryState = EntryState.PENDING
    waiters: int = 0

    def settle(self, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is not None:
            self.state = EntryState.FAILED
        else:
            self.state = EntryState.RESOLVED

    @property
    def result(self) -> Any:
        if self.state is not EntryState.RESOLVED:
            return None
        return self.task.result()

    @property
    def error(self) -> BaseException | None:
        if self.state is not EntryState.FAILED or self.task.cancelled():
            return None
        return self.task.exception()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    joins: int = 0


class ComputationCache:
    """Never-evicting map from ``ComputationKey`` to its single computation."""

    def __init__(self):
        self._entries: dict[ComputationKey, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, key: ComputationKey) -> CacheEntry | None:
        return self._entries.get(key)

    async def request(
        self,
        key: ComputationKey,
        compute: Callable[[], Awaitable[Any]],
        retain: dict[str, Any] | None = None
    ) -> Any:
        """
        Return the result for ``key``, running ``compute`` only on the first miss.

        Callers arriving while the computation is pending wait for the same
        outcome. A failure is stored like a result and re-raised to every caller.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                logger.debug("Cache miss for %s (%s)", key.artifact, key.kind)
                task = asyncio.ensure_future(compute())
                entry = CacheEntry(key=key, task=task, retained=dict(retain or {}))
                task.add_done_callback(entry.settle)
                self._entries[key] = entry
            elif entry.state is EntryState.PENDING:
                self.stats.joins += 1
                entry.waiters += 1
                logger.debug("Joining pending computation of %s (%s)", key.artifact, key.kind)
            else:
                self.stats.hits += 1
                logger.debug("Cache hit for %s (%s)", key.artifact, key.kind)

        # A cancelled caller must not cancel the computation other callers share.
        return await asyncio.shield(entry.task)


@dataclass
class ComputedContext:
    """Per-request context threaded through every artifact request."""

    computed_cache: ComputationCache = field(default_factory=ComputationCache)


class ComputedArtifact:
    """
    Base class for a memoized derived artifact.

    Subclasses set ``name`` and ``dependency_keys`` and implement ``compute``.
    ``dependency_keys`` of ``None`` keys the artifact on its whole input.
    Subclasses holding settings or collaborators list them in ``configuration``.
    """

    name: str = ""
    dependency_keys: tuple[str, ...] | None = None

    async def compute(self, data: Any, context: ComputedContext) -> Any:
        raise NotImplementedError

    def configuration(self) -> dict[str, Any]:
        """Instance settings and collaborators that change what ``compute`` returns."""
        return {}

    def cache_identity(self) -> tuple:
        return (self.name or type(self).__name__, _identities(self.configuration()))

    def cache_key(self, kind: str | None, dependencies: Mapping[str, Any]) -> ComputationKey:
        return derive_key(self.name or type(self).__name__, kind, dependencies, self.configuration())

    def prepare(self, dependencies: dict[str, Any]) -> Any:
        """Turn picked dependencies into the value handed to ``compute``."""
        if self.dependency_keys is None:
            return dependencies[INPUT_KEY]
        return dependencies

    async def request(self, data: Any, context: ComputedContext, kind: str | None = None) -> Any:
        dependencies = pick_dependencies(data, self.dependency_keys)
        key = self.cache_key(kind, dependencies)
        prepared = self.prepare(dependencies)
        return await context.computed_cache.request(
            key,
            lambda: self.compute(prepared, context),
            retain={**dependencies, ARTIFACT_KEY: self}
        )
