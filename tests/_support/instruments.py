"""
Well-known instruments with valid ISIN check digits, and row builders.

Usage::

    from tests._support.instruments import AAPL, row

    rows = [row(AAPL), row(AAPL, "2025-09-02T00:00:00Z", sourceId="vendor_b")]
"""

from __future__ import annotations

from typing import Any

# isin, ticker, country, exchange
AAPL = ("US0378331005", "AAPL", "US", "XNAS")
MSFT = ("US5949181045", "MSFT", "US", "XNAS")
BAE = ("GB0002634946", "BA", "GB", "XLON")
SAP = ("DE0007164600", "SAP", "DE", "XETR")
TSLA = ("US88160R1014", "TSLA", "US", "XNAS")

INVALID_ISIN = "INVALID12345"  # well-formed, wrong check digit


def row(
    instrument: tuple[str, str, str, str],
    updated_at: str = "2025-09-01T00:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    """Source row in the camelCase shape upstream stores deliver."""
    isin, ticker, country, exchange = instrument
    data: dict[str, Any] = {
        "isin": isin,
        "ticker": ticker,
        "countryCode": country,
        "exchangeCode": exchange,
        "updatedAt": updated_at,
    }
    data.update(extra)
    return data


def relisted(
    instrument: tuple[str, str, str, str],
    *,
    ticker: str | None = None,
    country: str | None = None,
    exchange: str | None = None,
) -> tuple[str, str, str, str]:
    """Same ISIN with a changed ticker, country or exchange."""
    isin, old_ticker, old_country, old_exchange = instrument
    return (isin, ticker or old_ticker, country or old_country, exchange or old_exchange)
