"""
Structured error types for instrument-spine.

Every failure the migration engine can observe is a typed error carrying
enough metadata to decide whether the run may retry, must halt, or can
recover locally.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode of a migration run
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry run/batch/source metadata for logging
    - **Error Chaining:** Preserve original driver exceptions as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                    InstrumentSpineError                          │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError        SourceError         ValidationError      │
        │  (retryable=True)      (SOURCE)            (VALIDATION)         │
        │       │                    │                    │                │
        │  StorageUnavailable    SourceNotFound      FormatViolation      │
        │  LockUnavailable       RecordParseError                         │
        │   └ LockLost (not retryable)                                    │
        │                                                                  │
        │  DatabaseError         AuthError           OrchestrationError   │
        │  (DATABASE)            (AUTH)              (ORCHESTRATION)      │
        │       │                    │                    │                │
        │  ConstraintViolation   ReadOnlyViolation   ThroughputBreach     │
        │                                            QualityGateError     │
        │  ConfigError                               RunNotFound          │
        │  InvalidConfigError                                             │
        └─────────────────────────────────────────────────────────────────┘

Propagation policy:
    FormatViolation is recovered locally by the orchestrator (logged,
    excluded, counted against the quality gate). ConstraintViolation,
    ThroughputBreach and an exhausted StorageUnavailable retry budget are
    fatal to the run and surface as a terminal run state.

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    instrument-spine, migration

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    DATABASE = "DATABASE"         # Integrity, query failures
    STORAGE = "STORAGE"           # Connection loss, locked database

    # Source/data errors
    SOURCE = "SOURCE"             # Upstream store missing or unreadable
    PARSE = "PARSE"               # Row shape errors
    VALIDATION = "VALIDATION"     # Format rule violations

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"
    AUTH = "AUTH"                 # Capability violations (read-only handle)

    # Application errors
    ORCHESTRATION = "ORCHESTRATION"  # Gate breaches, run lifecycle

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields for the identifiers every migration error can relate to;
    anything else goes into ``metadata``. ``to_dict()`` drops unset fields
    so the result can be passed straight to a structured logger.

    Attributes:
        run_id: Migration run identifier
        batch_no: 1-based batch number within the run
        state: Run state when the error occurred
        source_name: Source store name
        isin: Instrument the error relates to
        psw_id: Canonical identifier the error relates to
        metadata: Additional key-value pairs
    """

    run_id: str | None = None
    batch_no: int | None = None
    state: str | None = None
    source_name: str | None = None
    isin: str | None = None
    psw_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "batch_no", "state", "source_name", "isin", "psw_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class InstrumentSpineError(Exception):
    """
    Base exception for all instrument-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely pass them explicitly.

    Examples:
        >>> error = InstrumentSpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(run_id="run-1").context.run_id
        'run-1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> InstrumentSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageUnavailable("Write failed").with_context(
                run_id=run_id, batch_no=3
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(InstrumentSpineError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


class StorageUnavailable(TransientError):
    """Transient infrastructure failure during a store read or write."""


class LockUnavailable(TransientError):
    """The exclusive commit lock is held by another migration run."""


class LockLost(LockUnavailable):
    """This run's lock row expired and another run took it over.

    Raised on the commit path and never retried.
    """

    default_retryable = False


# =============================================================================
# SOURCE ERRORS
# =============================================================================


class SourceError(InstrumentSpineError):
    """Error reading an upstream source store."""

    default_category = ErrorCategory.SOURCE


class SourceNotFound(SourceError):
    """A source selector matched no registered source store."""


class RecordParseError(SourceError):
    """A source row does not have the CandidateRecord shape."""

    default_category = ErrorCategory.PARSE


# =============================================================================
# VALIDATION ERRORS (Never Retryable)
# =============================================================================


class ValidationError(InstrumentSpineError):
    """Data validation error; retrying the same input cannot succeed."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class FormatViolation(ValidationError):
    """
    Candidate fields break one or more identifier format rules.

    ``violations`` holds the rule names in the order they were evaluated.
    """

    def __init__(self, message: str, *, violations: Sequence[str] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.violations = tuple(violations)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["violations"] = list(self.violations)
        return result


# =============================================================================
# CONFIGURATION / AUTH ERRORS
# =============================================================================


class ConfigError(InstrumentSpineError):
    """Configuration error."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is out of range or malformed."""


class AuthError(InstrumentSpineError):
    default_category = ErrorCategory.AUTH
    default_retryable = False


class ReadOnlyViolation(AuthError):
    """A write was attempted through the read-only view handle."""


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseError(InstrumentSpineError):
    default_category = ErrorCategory.DATABASE


class ConstraintViolation(DatabaseError):
    """Commit-time integrity failure reported by the store itself."""

    default_retryable = False


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(InstrumentSpineError):
    default_category = ErrorCategory.ORCHESTRATION


class ThroughputBreach(OrchestrationError):
    """Observed commit rate fell below the configured minimum."""


class QualityGateError(OrchestrationError):
    """One or more quality gate checks failed."""

    def __init__(self, message: str, *, failures: Sequence[str] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.failures = tuple(failures)


class RunNotFound(OrchestrationError):
    """No migration run exists with the given id."""


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check whether an exception should be retried."""
    if isinstance(error, InstrumentSpineError):
        return error.retryable
    return False


def categorize_error(error: Exception) -> ErrorCategory:
    """Map any exception onto an ErrorCategory."""
    if isinstance(error, InstrumentSpineError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.STORAGE
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN
