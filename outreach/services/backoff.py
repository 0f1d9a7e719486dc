import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from outreach.errors import ErrorCategory


class BackoffShape(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIBONACCI = "fibonacci"


def fibonacci(n: int) -> int:
    if n <= 1:
        return 1
    prev, curr = 1, 1
    for _ in range(2, n + 1):
        prev, curr = curr, prev + curr
    return curr


def growth(shape: BackoffShape, attempt: int) -> float:
    """Multiplier for the 0-based retry attempt."""
    if shape == BackoffShape.EXPONENTIAL:
        return 2 ** attempt
    if shape == BackoffShape.LINEAR:
        return attempt + 1
    if shape == BackoffShape.FIBONACCI:
        return fibonacci(attempt)
    return 1


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    shape: BackoffShape = BackoffShape.EXPONENTIAL
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: bool = False

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        delay = min(self.base_delay * growth(self.shape, attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + 0.5 * rand()
        return delay


NO_RETRY = RetryPolicy(max_retries=0, shape=BackoffShape.NONE, base_delay=0.0, max_delay=0.0)

DEFAULT_RETRY_POLICIES = {
    ErrorCategory.RETRYABLE: RetryPolicy(
        max_retries=3, shape=BackoffShape.EXPONENTIAL, base_delay=1.0, max_delay=8.0, jitter=True
    ),
    ErrorCategory.TRANSIENT: RetryPolicy(
        max_retries=2, shape=BackoffShape.LINEAR, base_delay=5.0, max_delay=15.0, jitter=False
    ),
    ErrorCategory.PERMANENT: NO_RETRY,
    ErrorCategory.SECURITY: NO_RETRY,
}

DEFAULT_BREAKER_RETRY_POLICY = DEFAULT_RETRY_POLICIES[ErrorCategory.RETRYABLE]
