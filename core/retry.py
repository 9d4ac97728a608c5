#!/usr/bin/env python3
"""
Retry with exponential backoff.

    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    rows = execute_with_retry(lambda: db.fetch_window(table, cols, 0, 1000), policy)

An operation that fails k times (k < max_attempts) and then succeeds sleeps
k times: base_delay, base_delay * multiplier, ... The last failure is
re-raised once attempts are exhausted or the policy says it is not retryable.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from core.errors import StatementError

logger = logging.getLogger(__name__)

T = TypeVar('T')

@dataclass
class RetryPolicy:
    """Bounded exponential backoff settings"""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    retryable: Optional[Callable[[Exception], bool]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def should_retry(self, error: Exception) -> bool:
        if self.retryable is None:
            return True
        return self.retryable(error)


def is_transient(error: Exception) -> bool:
    """Retry predicate for the live copy: skip retries on deterministic data errors"""
    if isinstance(error, StatementError):
        return error.transient
    return True


def execute_with_retry(operation: Callable[[], T], policy: Optional[RetryPolicy] = None,
                       sleep: Callable[[float], None] = time.sleep, description: str = "operation") -> T:
    policy = policy or RetryPolicy()
    delay = policy.base_delay
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.should_retry(e):
                raise
            logger.warning(f"{description} failed (attempt {attempt}/{policy.max_attempts}), "
                           f"retrying in {delay:.1f}s: {e}")
            sleep(delay)
            delay *= policy.multiplier
            attempt += 1
