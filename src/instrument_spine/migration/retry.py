"""Bounded exponential backoff for transient storage failures.

Only errors that declare themselves retryable (``is_retryable``) are
retried; everything else propagates on the first failure.

Example:
    >>> from instrument_spine.migration.retry import ExponentialBackoff, RetryContext
    >>>
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=0.5, max_delay=10.0)
    >>> ctx = RetryContext(strategy, on_retry=lambda n, err, delay: print(n, delay))
    >>> journal = ctx.run(writer.commit_batch, 1, plans)
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from instrument_spine.errors import is_retryable
from instrument_spine.timestamps import utc_now

T = TypeVar("T")


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter

    Attributes:
        max_retries: Retries after the first attempt (0 = never retry)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent synchronized retries
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, failures: int, error: Exception | None = None) -> bool:
        """``failures`` counts failed attempts so far, including the current one."""
        if failures > self.max_retries:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True


@dataclass
class RetryContext:
    """Tracks retry state for one operation.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=2))
        >>> ctx.run(lambda: flaky_write())
        >>> ctx.retries
        1
    """

    strategy: ExponentialBackoff
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    failures: int = field(default=0, init=False)
    retries: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it succeeds or the retry budget is spent.

        Raises:
            The last exception once retries are exhausted, or the first
            non-retryable exception.
        """
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.failures += 1
                self.last_error = e
                self.errors.append((self.failures, e, utc_now()))

                if not self.strategy.should_retry(self.failures, e):
                    raise

                delay = self.strategy.next_delay(self.failures - 1)
                self.retries += 1
                if self.on_retry:
                    self.on_retry(self.failures, e, delay)
                self.sleep(delay)
