"""Tests for instrument_spine.errors."""

import pytest

from instrument_spine.errors import (
    ConstraintViolation,
    ErrorCategory,
    ErrorContext,
    FormatViolation,
    InstrumentSpineError,
    LockLost,
    LockUnavailable,
    QualityGateError,
    ReadOnlyViolation,
    RecordParseError,
    SourceError,
    SourceNotFound,
    StorageUnavailable,
    ThroughputBreach,
    categorize_error,
    is_retryable,
)


class TestErrorContext:
    def test_empty_context(self):
        """Unset fields are dropped from to_dict()."""
        assert ErrorContext().to_dict() == {}

    def test_typed_fields_and_metadata(self):
        ctx = ErrorContext(run_id="run-1", batch_no=3, metadata={"holder": "run-0"})
        assert ctx.to_dict() == {"run_id": "run-1", "batch_no": 3, "holder": "run-0"}


class TestInstrumentSpineError:
    def test_defaults(self):
        error = InstrumentSpineError("boom")
        assert str(error) == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert error.cause is None

    def test_with_context_routes_known_keys(self):
        error = StorageUnavailable("locked").with_context(run_id="run-1", batch_no=2, attempt=4)
        assert error.context.run_id == "run-1"
        assert error.context.batch_no == 2
        assert error.context.metadata == {"attempt": 4}

    def test_cause_is_chained(self):
        cause = OSError("disk gone")
        error = StorageUnavailable("write failed", cause=cause)
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "disk gone"

    def test_to_dict(self):
        error = ConstraintViolation("duplicate psw_id").with_context(batch_no=3)
        assert error.to_dict() == {
            "error_type": "ConstraintViolation",
            "message": "duplicate psw_id",
            "category": "DATABASE",
            "retryable": False,
            "context": {"batch_no": 3},
        }

    def test_repr(self):
        assert repr(SourceNotFound("missing")) == "SourceNotFound('missing', category=SOURCE)"


class TestHierarchy:
    @pytest.mark.parametrize(
        "error,retryable",
        [
            (StorageUnavailable("x"), True),
            (LockUnavailable("x"), True),
            (LockLost("x"), False),
            (ConstraintViolation("x"), False),
            (ThroughputBreach("x"), False),
            (FormatViolation("x"), False),
            (SourceNotFound("x"), False),
            (ReadOnlyViolation("x"), False),
            (ValueError("x"), False),
        ],
    )
    def test_is_retryable(self, error, retryable):
        assert is_retryable(error) is retryable

    def test_retryable_override(self):
        assert is_retryable(StorageUnavailable("x", retryable=False)) is False

    def test_source_errors(self):
        assert isinstance(RecordParseError("x"), SourceError)
        assert RecordParseError("x").category == ErrorCategory.PARSE
        assert SourceNotFound("x").category == ErrorCategory.SOURCE

    def test_format_violation_lists_rules(self):
        error = FormatViolation("bad", violations=["isin_format", "ticker_length"])
        assert error.violations == ("isin_format", "ticker_length")
        assert error.to_dict()["violations"] == ["isin_format", "ticker_length"]

    def test_quality_gate_failures(self):
        error = QualityGateError("breach", failures=["accept_rate"])
        assert error.failures == ("accept_rate",)
        assert error.category == ErrorCategory.ORCHESTRATION


class TestCategorizeError:
    @pytest.mark.parametrize(
        "error,category",
        [
            (ReadOnlyViolation("x"), ErrorCategory.AUTH),
            (ConnectionError("x"), ErrorCategory.STORAGE),
            (ValueError("x"), ErrorCategory.VALIDATION),
            (KeyError("x"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, error, category):
        assert categorize_error(error) == category
