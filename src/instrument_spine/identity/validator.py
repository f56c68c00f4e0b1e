"""
Format validation for candidate instrument identities.

Decides structural and ISO-compliance validity of the four fields that make
up a canonical identifier. Validation is pure: it returns every violated
rule and writes nothing. The orchestrator owns the audit write.

Rules (stable names, used as audit reasons and gate statistics):

    isin_format             ^[A-Z0-9]{12}$
    isin_check_digit        ISIN mod-10 check digit (only if isin_format holds)
    ticker_required         non-empty
    ticker_printable_ascii  every character in 0x20..0x7E
    ticker_length           1..15 characters
    country_code_iso3166    ISO 3166-1 alpha-2 member
    exchange_code_iso10383  ISO 10383 MIC member
    psw_id_format           assembled identifier matches the canonical grammar

Examples:
    >>> validate("US0378331005", "aapl", "US", "XNAS").valid
    True
    >>> [v.rule for v in validate("INVALID12345", "X", "US", "XNAS").violations]
    ['isin_check_digit']

Tags:
    validation, isin, iso-3166, iso-10383, pure-function, instrument-spine
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from instrument_spine.identity.generator import PSW_ID_PATTERN, assemble
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.reference import is_country_code, is_mic

ISIN_PATTERN = re.compile(r"^[A-Z0-9]{12}$")
TICKER_MAX_LENGTH = 15


@dataclass(frozen=True)
class Violation:
    """Single violated rule."""

    rule: str
    message: str = ""


@dataclass(frozen=True)
class ValidationResult:
    """Aggregate validation result."""

    violations: tuple[Violation, ...] = field(default=())

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def rules(self) -> list[str]:
        return [v.rule for v in self.violations]

    def reason(self) -> str:
        """Audit reason naming every violated rule."""
        return "violations:" + ",".join(self.rules)


def isin_check_digit_ok(isin: str) -> bool:
    """Verify the ISIN check digit.

    Letters expand to two digits (A=10 .. Z=35), then the Luhn mod-10 sum
    over the expanded string, check digit included, must be 0.
    """
    if len(isin) != 12 or not isin[-1].isdigit():
        return False
    digits = "".join(str(int(ch, 36)) for ch in isin)
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def validate(
    isin: str,
    ticker: str,
    country_code: str,
    exchange_code: str,
    *,
    extra_mics: Iterable[str] = (),
) -> ValidationResult:
    """Check all format rules; every violated rule is reported."""
    violations: list[Violation] = []

    if not ISIN_PATTERN.match(isin):
        violations.append(Violation("isin_format", f"ISIN {isin!r} is not 12 upper-case alphanumerics"))
    elif not isin_check_digit_ok(isin):
        violations.append(Violation("isin_check_digit", f"ISIN {isin!r} fails the check digit"))

    if not ticker:
        violations.append(Violation("ticker_required", "Ticker is empty"))
    else:
        if not all(0x20 <= ord(ch) <= 0x7E for ch in ticker):
            violations.append(Violation("ticker_printable_ascii", f"Ticker {ticker!r} has non-printable characters"))
        if len(ticker) > TICKER_MAX_LENGTH:
            violations.append(Violation("ticker_length", f"Ticker {ticker!r} exceeds {TICKER_MAX_LENGTH} characters"))

    if not is_country_code(country_code):
        violations.append(Violation("country_code_iso3166", f"{country_code!r} is not an ISO 3166-1 alpha-2 code"))

    if not is_mic(exchange_code, extra_mics):
        violations.append(Violation("exchange_code_iso10383", f"{exchange_code!r} is not an ISO 10383 MIC"))

    psw_id = assemble(isin, ticker, country_code, exchange_code)
    if not PSW_ID_PATTERN.match(psw_id):
        violations.append(Violation("psw_id_format", f"Assembled psw_id {psw_id!r} breaks the canonical grammar"))

    return ValidationResult(tuple(violations))


def validate_record(record: CandidateRecord, *, extra_mics: Iterable[str] = ()) -> ValidationResult:
    return validate(
        record.isin,
        record.ticker,
        record.country_code,
        record.exchange_code,
        extra_mics=extra_mics,
    )
