"""
SQL source adapter: read candidate rows from another database.

Usage:
    from instrument_spine.sources.sql import SqlSource

    source = SqlSource(
        "legacy_portfolio",
        "sqlite:///legacy.db",
        "SELECT isin, symbol AS ticker, country AS country_code, "
        "mic AS exchange_code, updated_at FROM securities",
    )
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from instrument_spine.errors import SourceError, StorageUnavailable
from instrument_spine.sources.protocol import BaseSource, SourceType


class SqlSource(BaseSource):
    """Stream the rows of one SQL query as mappings."""

    def __init__(
        self,
        name: str,
        url_or_engine: str | Engine,
        query: str,
        params: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(name, SourceType.DATABASE)
        if isinstance(url_or_engine, Engine):
            self._engine = url_or_engine
        else:
            self._engine = create_engine(url_or_engine)
        self._query = query
        self._params = dict(params or {})

    def read(self) -> Iterator[dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(text(self._query), self._params)
                for row in result:
                    yield dict(row._mapping)
        except OperationalError as e:
            raise StorageUnavailable(f"Source database unavailable: {e.orig}", cause=e).with_context(
                source_name=self.name
            ) from e
        except SQLAlchemyError as e:
            raise SourceError(f"Source query failed: {e}", cause=e).with_context(
                source_name=self.name
            ) from e
