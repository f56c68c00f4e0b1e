"""Tests for ExponentialBackoff and RetryContext."""

import pytest

from instrument_spine.errors import ConstraintViolation, LockLost, StorageUnavailable
from instrument_spine.migration.retry import ExponentialBackoff, RetryContext


class Flaky:
    """Fails ``failures`` times with ``error``, then returns ``"ok"``."""

    def __init__(self, failures, error=None):
        self.remaining = failures
        self.error = error or StorageUnavailable("database is locked")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise self.error
        return "ok"


class TestExponentialBackoff:
    def test_delays_grow_and_cap(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [backoff.next_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        backoff = ExponentialBackoff(base_delay=1.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 0.75 <= backoff.next_delay(0) <= 1.25

    def test_should_retry_budget(self):
        backoff = ExponentialBackoff(max_retries=2)
        error = StorageUnavailable("x")
        assert backoff.should_retry(1, error)
        assert backoff.should_retry(2, error)
        assert not backoff.should_retry(3, error)

    def test_non_retryable_errors(self):
        backoff = ExponentialBackoff(max_retries=5)
        assert not backoff.should_retry(1, ConstraintViolation("unique"))
        assert not backoff.should_retry(1, ValueError("x"))


class TestRetryContext:
    def test_recovers_within_budget(self):
        sleeps = []
        ctx = RetryContext(ExponentialBackoff(max_retries=3, jitter=False, base_delay=0.1), sleep=sleeps.append)
        flaky = Flaky(2)
        assert ctx.run(flaky) == "ok"
        assert flaky.calls == 3
        assert ctx.retries == 2
        assert sleeps == [0.1, 0.2]

    def test_exhaustion_reraises_last_error(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=2), sleep=lambda _s: None)
        flaky = Flaky(10)
        with pytest.raises(StorageUnavailable):
            ctx.run(flaky)
        assert flaky.calls == 3
        assert ctx.retries == 2
        assert len(ctx.errors) == 3

    def test_non_retryable_raises_immediately(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=5), sleep=lambda _s: None)
        flaky = Flaky(1, ConstraintViolation("unique"))
        with pytest.raises(ConstraintViolation):
            ctx.run(flaky)
        assert flaky.calls == 1
        assert ctx.retries == 0

    def test_lost_lock_is_not_retried(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=5), sleep=lambda _s: None)
        flaky = Flaky(1, LockLost("taken over"))
        with pytest.raises(LockLost):
            ctx.run(flaky)
        assert flaky.calls == 1

    def test_errors_record_attempt_and_time(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=3), sleep=lambda _s: None)
        ctx.run(Flaky(2))
        assert [attempt for attempt, _error, _at in ctx.errors] == [1, 2]
        assert all(at.tzinfo is not None for _attempt, _error, at in ctx.errors)

    def test_on_retry_callback(self):
        seen = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=1, jitter=False, base_delay=0.0),
            on_retry=lambda attempt, error, delay: seen.append((attempt, type(error).__name__, delay)),
            sleep=lambda _s: None,
        )
        assert ctx.run(Flaky(1)) == "ok"
        assert seen == [(1, "StorageUnavailable", 0.0)]

    def test_passes_arguments(self):
        ctx = RetryContext(ExponentialBackoff())
        assert ctx.run(lambda a, b=0: a + b, 2, b=3) == 5
