"""
Canonical identifier (``psw_id``) construction.

Wire format (stable, bit-exact)::

    {ISIN}_{TICKER}_{COUNTRY_CODE}_{EXCHANGE_CODE}
    ^[A-Z0-9]{12}_[A-Z0-9]+_[A-Z]{2}_[A-Z0-9]{4}$

    US0378331005_AAPL_US_XNAS

Both functions are pure. ``generate`` is idempotent, which is what makes a
halted or rolled-back migration safe to replay: the same inputs always
produce the same identifier.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from instrument_spine.errors import FormatViolation

PSW_ID_PATTERN = re.compile(r"^[A-Z0-9]{12}_[A-Z0-9]+_[A-Z]{2}_[A-Z0-9]{4}$")

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


class PswIdParts(NamedTuple):
    isin: str
    ticker: str
    country_code: str
    exchange_code: str


def normalize_ticker(ticker: str) -> str:
    """Upper-case and drop every non-alphanumeric character (``brk.b`` -> ``BRKB``)."""
    return _NON_ALNUM.sub("", ticker.upper())


def assemble(isin: str, ticker: str, country_code: str, exchange_code: str) -> str:
    """Join the four parts without checking the grammar."""
    return "_".join((isin, normalize_ticker(ticker), country_code, exchange_code))


def generate(isin: str, ticker: str, country_code: str, exchange_code: str) -> str:
    """Build the canonical identifier for already-validated fields.

    Raises:
        FormatViolation: if the assembled identifier breaks the grammar.
    """
    psw_id = assemble(isin, ticker, country_code, exchange_code)
    if not PSW_ID_PATTERN.match(psw_id):
        raise FormatViolation(
            f"Assembled psw_id {psw_id!r} does not match the canonical grammar",
            violations=("psw_id_format",),
        ).with_context(isin=isin, psw_id=psw_id)
    return psw_id


def parse_psw_id(psw_id: str) -> PswIdParts:
    """Split a canonical identifier back into its four components."""
    if not PSW_ID_PATTERN.match(psw_id):
        raise FormatViolation(
            f"{psw_id!r} is not a canonical identifier",
            violations=("psw_id_format",),
        ).with_context(psw_id=psw_id)
    isin, ticker, country_code, exchange_code = psw_id.split("_")
    return PswIdParts(isin, ticker, country_code, exchange_code)
