"""Retry policy with exponential backoff and jitter.

Backoff strategy:
  delay = min(base * 2^attempt + jitter, max_delay)
  jitter = random(0, base * 0.5)

Only transient failures (network, timeout) are retried. The default policy
has ``max_retries=0``, i.e. every provider call is attempted once.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from chaingate.gateway.types import RETRYABLE_ERROR_KINDS, ProviderResult


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 10.0

    def should_retry(self, result: ProviderResult, attempt: int) -> bool:
        """Whether a failed result from 0-based ``attempt`` may be retried."""
        if result.ok or attempt >= self.max_retries:
            return False
        return result.error_kind in RETRYABLE_ERROR_KINDS

    def backoff(self, attempt: int) -> float:
        return calculate_backoff(attempt, self.base_delay, self.max_delay)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
) -> float:
    """Calculate exponential backoff with jitter.

    Formula: min(base * 2^attempt + jitter, max_delay)
    Jitter: random(0, base * 0.5)
    """
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.5)
    return min(exponential + jitter, max_delay)
