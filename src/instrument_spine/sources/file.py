"""
File source adapter for exported source stores.

Supports:
- CSV (comma-separated, header row; ``symbol.<provider>`` columns carry
  vendor symbols)
- JSON (array of objects, or an object with a ``records``/``data`` array)
- JSONL (one object per line)

Usage:
    from instrument_spine.sources.file import FileSource

    # Auto-detect format from extension, name defaults to the file stem
    source = FileSource(path="/exports/vendor_a.csv")
    rows = list(source.read())
"""

from __future__ import annotations

import csv
import json
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import Any

from instrument_spine.errors import (
    InvalidConfigError,
    RecordParseError,
    SourceNotFound,
    StorageUnavailable,
)
from instrument_spine.sources.protocol import BaseSource, SourceType


class FileFormat(str, Enum):
    """Supported file formats."""

    CSV = "csv"
    JSON = "json"
    JSONL = "jsonl"


_EXTENSIONS = {
    ".csv": FileFormat.CSV,
    ".json": FileFormat.JSON,
    ".jsonl": FileFormat.JSONL,
    ".ndjson": FileFormat.JSONL,
}


class FileSource(BaseSource):
    """Read candidate rows from a local file."""

    def __init__(
        self,
        path: str | Path,
        *,
        name: str | None = None,
        format: FileFormat | str | None = None,
        encoding: str = "utf-8",
    ) -> None:
        self._path = Path(path)
        super().__init__(name or self._path.stem, SourceType.FILE)
        self._format = FileFormat(format) if format else self._detect_format()
        self._encoding = encoding

    @property
    def path(self) -> Path:
        return self._path

    @property
    def format(self) -> FileFormat:
        return self._format

    def _detect_format(self) -> FileFormat:
        try:
            return _EXTENSIONS[self._path.suffix.lower()]
        except KeyError:
            raise InvalidConfigError(
                f"Cannot detect file format from extension {self._path.suffix!r}"
            ).with_context(source_name=self.name, path=str(self._path)) from None

    def read(self) -> Iterator[dict[str, Any]]:
        if not self._path.exists():
            raise SourceNotFound(f"Source file not found: {self._path}").with_context(
                source_name=self.name, path=str(self._path)
            )
        try:
            match self._format:
                case FileFormat.CSV:
                    yield from self._read_csv()
                case FileFormat.JSON:
                    yield from self._read_json()
                case FileFormat.JSONL:
                    yield from self._read_jsonl()
        except UnicodeDecodeError as e:
            raise RecordParseError(
                f"Cannot decode {self._path} as {self._encoding}: {e.reason} at byte {e.start}", cause=e
            ).with_context(source_name=self.name, path=str(self._path)) from e
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {self._path}: {e}", cause=e).with_context(
                source_name=self.name, path=str(self._path)
            ) from e

    # -------------------------------------------------------------------------
    # FORMAT-SPECIFIC READERS
    # -------------------------------------------------------------------------

    def _read_csv(self) -> Iterator[dict[str, Any]]:
        with open(self._path, encoding=self._encoding, newline="") as f:
            for row in csv.DictReader(f):
                yield {k: v for k, v in row.items() if k is not None and v not in (None, "")}

    def _read_json(self) -> Iterator[dict[str, Any]]:
        with open(self._path, encoding=self._encoding) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise RecordParseError(f"Invalid JSON: {e}", cause=e).with_context(
                    source_name=self.name, path=str(self._path)
                ) from e

        if isinstance(data, dict):
            for key in ("records", "data", "items", "rows"):
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
            else:
                data = [data]
        if not isinstance(data, list):
            raise RecordParseError(
                f"Expected JSON array or object, got: {type(data).__name__}"
            ).with_context(source_name=self.name, path=str(self._path))
        for item in data:
            yield self._require_object(item)

    def _read_jsonl(self) -> Iterator[dict[str, Any]]:
        with open(self._path, encoding=self._encoding) as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except json.JSONDecodeError as e:
                    raise RecordParseError(f"Invalid JSON at line {line_num}: {e}", cause=e).with_context(
                        source_name=self.name, path=str(self._path), line_number=line_num
                    ) from e
                yield self._require_object(item, line_num)

    def _require_object(self, item: Any, line_num: int | None = None) -> dict[str, Any]:
        if not isinstance(item, dict):
            raise RecordParseError(
                f"Expected an object per record, got {type(item).__name__}"
            ).with_context(source_name=self.name, path=str(self._path), line_number=line_num)
        return item
