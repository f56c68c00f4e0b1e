"""
Candidate instrument records as read from upstream source stores.

A ``CandidateRecord`` is one observation of one instrument by one source.
It is ephemeral: produced by a source store, consumed once by a migration
run, never persisted as-is.

Row shape:
    Upstream stores only guarantee a ``CandidateRecord``-shaped mapping
    keyed at minimum by ``isin``. ``from_row`` accepts camelCase and
    snake_case keys, ISO-8601 timestamps (``Z`` suffix allowed), and vendor
    symbols either as a nested mapping or as flat ``symbol.<provider>``
    columns (the CSV shape).

STDLIB ONLY - NO PYDANTIC.

Tags:
    candidate-record, dataclass, parsing, instrument-spine
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from instrument_spine.errors import RecordParseError
from instrument_spine.timestamps import ensure_utc, from_iso8601

_ALIASES: dict[str, tuple[str, ...]] = {
    "isin": ("isin",),
    "ticker": ("ticker",),
    "country_code": ("country_code", "countryCode"),
    "exchange_code": ("exchange_code", "exchangeCode"),
    "source_id": ("source_id", "sourceId"),
    "updated_at": ("updated_at", "updatedAt"),
    "provider_symbols": ("provider_symbols", "providerSymbols"),
}

_SYMBOL_COLUMN_PREFIX = "symbol."


def _pick(row: Mapping[str, Any], name: str) -> Any:
    for key in _ALIASES[name]:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass(frozen=True)
class CandidateRecord:
    """
    A raw instrument observation from one source.

    Attributes:
        isin: 12-char ISIN as delivered (not normalized)
        ticker: Free-text ticker as delivered
        country_code: ISO 3166-1 alpha-2
        exchange_code: ISO 10383 MIC
        source_id: Identifier of the delivering source
        updated_at: Source update timestamp (aware, UTC)
        provider_symbols: Sorted ``(provider, symbol)`` pairs
    """

    isin: str
    ticker: str
    country_code: str
    exchange_code: str
    source_id: str
    updated_at: datetime
    provider_symbols: tuple[tuple[str, str], ...] = field(default=())

    @property
    def record_ref(self) -> str:
        """Stable reference used in audit entries."""
        return f"{self.source_id}:{self.isin}"

    @property
    def vendor_symbols(self) -> dict[str, str]:
        return dict(self.provider_symbols)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isin": self.isin,
            "ticker": self.ticker,
            "country_code": self.country_code,
            "exchange_code": self.exchange_code,
            "source_id": self.source_id,
            "updated_at": self.updated_at.isoformat(),
            "provider_symbols": self.vendor_symbols,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, default_source: str | None = None) -> CandidateRecord:
        """Build a record from a source row.

        Raises:
            RecordParseError: if ``isin`` is missing, no source id can be
                determined, or ``updated_at`` is missing/unparseable.
        """
        isin = _text(_pick(row, "isin"))
        if not isin:
            raise RecordParseError("Row has no isin").with_context(
                source_name=default_source, row=dict(row)
            )

        source_id = _text(_pick(row, "source_id")) or (default_source or "")
        if not source_id:
            raise RecordParseError("Row has no source id").with_context(isin=isin)

        raw_ts = _pick(row, "updated_at")
        try:
            if isinstance(raw_ts, datetime):
                updated_at = ensure_utc(raw_ts)
            elif raw_ts is None or _text(raw_ts) == "":
                raise ValueError("missing updated_at")
            else:
                updated_at = from_iso8601(_text(raw_ts))
        except ValueError as e:
            raise RecordParseError(
                f"Unparseable updated_at {raw_ts!r}", cause=e
            ).with_context(isin=isin, source_name=source_id) from e

        symbols: dict[str, str] = {}
        nested = _pick(row, "provider_symbols")
        if isinstance(nested, Mapping):
            symbols.update({_text(k): _text(v) for k, v in nested.items()})
        for key, value in row.items():
            if isinstance(key, str) and key.startswith(_SYMBOL_COLUMN_PREFIX):
                symbols[key[len(_SYMBOL_COLUMN_PREFIX):].strip()] = _text(value)

        return cls(
            isin=isin,
            ticker=_text(_pick(row, "ticker")),
            country_code=_text(_pick(row, "country_code")),
            exchange_code=_text(_pick(row, "exchange_code")),
            source_id=source_id,
            updated_at=updated_at,
            provider_symbols=tuple(sorted((k, v) for k, v in symbols.items() if k and v)),
        )
