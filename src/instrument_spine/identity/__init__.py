"""Pure identity primitives: candidate records, validation, generation, dedup."""

from instrument_spine.identity.dedup import (
    DedupGroup,
    DedupOutcome,
    DuplicateConflict,
    deduplicate,
    resolve_group,
)
from instrument_spine.identity.generator import (
    PSW_ID_PATTERN,
    PswIdParts,
    generate,
    normalize_ticker,
    parse_psw_id,
)
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.identity.validator import (
    ValidationResult,
    Violation,
    isin_check_digit_ok,
    validate,
    validate_record,
)

__all__ = [
    "CandidateRecord",
    "DedupGroup",
    "DedupOutcome",
    "DuplicateConflict",
    "PSW_ID_PATTERN",
    "PswIdParts",
    "ValidationResult",
    "Violation",
    "deduplicate",
    "generate",
    "isin_check_digit_ok",
    "normalize_ticker",
    "parse_psw_id",
    "resolve_group",
    "validate",
    "validate_record",
]
