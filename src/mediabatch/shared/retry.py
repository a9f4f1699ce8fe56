"""Retry remote calls that fail transiently."""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


def is_transient(error: Exception) -> bool:
    """Default retry predicate: honour an `is_transient` flag when the error has one."""
    return bool(getattr(error, 'is_transient', False))


class RetryStrategy:
    """
    Runs a callable up to max_attempts times, backing off between attempts.

    Only errors accepted by `retry_on` (transient service errors by default)
    are retried. Anything else, expired authorization included, surfaces on
    the first failure.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
        max_backoff: float = 60.0,
        retry_on: Optional[Callable[[Exception], bool]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter
        self.max_backoff = max_backoff
        self.retry_on = retry_on or is_transient
        self._sleep = sleep

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call func(*args, **kwargs), re-raising the last error once attempts run out."""
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if attempt >= self.max_attempts or not self.retry_on(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}; retrying in {delay:.1f}s"
                )
                (self._sleep or time.sleep)(delay)
                attempt += 1

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        factor = 2 ** (attempt - 1) if self.exponential else attempt
        delay = min(self.backoff_seconds * factor, self.max_backoff)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay
