"""In-memory source store (fixtures, tests, programmatic callers)."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from instrument_spine.sources.protocol import BaseSource, SourceType


class InMemorySource(BaseSource):
    """Serve a fixed list of rows. Rows are copied on every ``read()``."""

    def __init__(self, name: str, rows: Iterable[Mapping[str, Any]] = ()) -> None:
        super().__init__(name, SourceType.MEMORY)
        self._rows = [dict(r) for r in rows]

    def add(self, row: Mapping[str, Any]) -> None:
        self._rows.append(dict(row))

    def read(self) -> Iterator[dict[str, Any]]:
        for row in self._rows:
            yield dict(row)

    def __len__(self) -> int:
        return len(self._rows)
