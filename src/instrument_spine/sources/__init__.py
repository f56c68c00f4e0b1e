"""Upstream source stores feeding migration runs."""

from instrument_spine.sources.file import FileFormat, FileSource
from instrument_spine.sources.memory import InMemorySource
from instrument_spine.sources.protocol import BaseSource, SourceRegistry, SourceStore, SourceType
from instrument_spine.sources.sql import SqlSource

__all__ = [
    "BaseSource",
    "FileFormat",
    "FileSource",
    "InMemorySource",
    "SourceRegistry",
    "SourceStore",
    "SourceType",
    "SqlSource",
]
