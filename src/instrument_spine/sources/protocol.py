"""
Source store protocol and registry.

Upstream source stores only promise a readable stream of
CandidateRecord-shaped rows keyed at minimum by ``isin``. Everything a
migration run needs from a source is therefore:

- ``name``: unique identifier (also the default ``source_id`` of its rows)
- ``source_type``: classification for listing and logging
- ``read()``: iterator of row mappings

Design Principles:
- Protocol over Inheritance: any object with these members is a source
- Registry-Driven: runs select sources by name or glob pattern

Usage:
    from instrument_spine.sources import FileSource, SourceRegistry

    registry = SourceRegistry()
    registry.register(FileSource(name="vendor_a", path="/data/vendor_a.csv"))
    sources = registry.select(["vendor_*"])
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable, Iterator
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Protocol, runtime_checkable

from instrument_spine.errors import SourceError, SourceNotFound


class SourceType(str, Enum):
    """Standard source types."""

    MEMORY = "memory"
    FILE = "file"
    DATABASE = "database"
    CUSTOM = "custom"


@runtime_checkable
class SourceStore(Protocol):
    """Protocol for upstream instrument source stores."""

    @property
    def name(self) -> str:
        """Unique source name."""
        ...

    @property
    def source_type(self) -> SourceType:
        ...

    def read(self) -> Iterator[dict[str, Any]]:
        """Yield raw rows. May block on I/O."""
        ...


class BaseSource:
    """
    Base class for source implementations.

    Provides name/type properties and error wrapping.
    """

    def __init__(self, name: str, source_type: SourceType) -> None:
        self._name = name
        self._source_type = source_type

    @property
    def name(self) -> str:
        return self._name

    @property
    def source_type(self) -> SourceType:
        return self._source_type

    def _wrap_error(self, error: Exception, message: str | None = None) -> SourceError:
        """Wrap an exception in SourceError with context."""
        if isinstance(error, SourceError):
            return error
        return SourceError(message or str(error), cause=error).with_context(
            source_name=self._name, source_type=self._source_type.value
        )

    @abstractmethod
    def read(self) -> Iterator[dict[str, Any]]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r})"


class SourceRegistry:
    """
    Registry of named source stores.

    Usage:
        registry = SourceRegistry()
        registry.register(InMemorySource("vendor_a", rows))
        registry.select(["*"])         # every source, sorted by name
        registry.select(["vendor_a"])  # exact name
    """

    def __init__(self, sources: Iterable[SourceStore] = ()) -> None:
        self._sources: dict[str, SourceStore] = {}
        for source in sources:
            self.register(source)

    def register(self, source: SourceStore) -> None:
        """Register a source; a later registration under the same name wins."""
        self._sources[source.name] = source

    def unregister(self, name: str) -> None:
        self._sources.pop(name, None)

    def get(self, name: str) -> SourceStore:
        """
        Get a registered source by name.

        Raises:
            SourceNotFound: If no source has that name
        """
        try:
            return self._sources[name]
        except KeyError:
            raise SourceNotFound(f"Source not found: {name}").with_context(source_name=name) from None

    def select(self, selector: Iterable[str]) -> list[SourceStore]:
        """
        Resolve a source selector (names and glob patterns) to sources.

        Result is de-duplicated and sorted by name.

        Raises:
            SourceNotFound: If any selector entry matches nothing, or the
                selector is empty
        """
        patterns = list(selector)
        if not patterns:
            raise SourceNotFound("Empty source selector")
        chosen: dict[str, SourceStore] = {}
        for pattern in patterns:
            matches = [name for name in self._sources if fnmatchcase(name, pattern)]
            if not matches:
                raise SourceNotFound(f"No source matches {pattern!r}").with_context(
                    source_name=pattern, registered=self.list_sources()
                )
            for name in matches:
                chosen[name] = self._sources[name]
        return [chosen[name] for name in sorted(chosen)]

    def list_sources(self) -> list[str]:
        return sorted(self._sources)

    def __contains__(self, name: object) -> bool:
        return name in self._sources

    def __len__(self) -> int:
        return len(self._sources)
