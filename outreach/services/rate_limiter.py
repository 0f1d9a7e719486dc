import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from outreach import metrics
from outreach.config import SERVICES
from outreach.errors import RateLimitedError, UnknownServiceError
from outreach.logging_config import get_logger
from outreach.services.backoff import BackoffShape, RetryPolicy
from outreach.services.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

LIMIT_BACKOFF_BASE_S = 1.0
LIMIT_BACKOFF_MAX_S = 30.0


class TokenBucket:
    """Bursts up to capacity, refilled continuously at refill_rate tokens/s."""

    def __init__(self, capacity: int, refill_rate: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.refill_rate)
        self._updated = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    @property
    def usage(self) -> float:
        self._refill()
        return self.capacity - self._tokens

    def seconds_until_reset(self) -> float:
        """Seconds until the bucket is full again."""
        return self.usage / self.refill_rate if self.refill_rate else 0.0


class LeakyBucket:
    """Queue-shaped limiter: level drains at leak_rate units/s, overflow is refused."""

    def __init__(self, capacity: int, leak_rate: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.leak_rate = leak_rate
        self._clock = clock
        self._level = 0.0
        self._updated = clock()

    def _leak(self) -> None:
        now = self._clock()
        self._level = max(0.0, self._level - (now - self._updated) * self.leak_rate)
        self._updated = now

    def try_acquire(self) -> bool:
        self._leak()
        if self._level + 1 <= self.capacity:
            self._level += 1
            return True
        return False

    @property
    def usage(self) -> float:
        self._leak()
        return self._level

    def seconds_until_reset(self) -> float:
        return self.usage / self.leak_rate if self.leak_rate else 0.0


@dataclass
class LimitMetrics:
    total_requests: int = 0
    limit_exceeded: int = 0
    last_exceeded: Optional[float] = None
    current_usage: float = 0.0
    reset_time: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "limit_exceeded": self.limit_exceeded,
            "last_exceeded": self.last_exceeded,
            "current_usage": round(self.current_usage, 3),
            "reset_time": self.reset_time,
        }


class RateLimiter:
    def __init__(self, breakers: CircuitBreaker, clock: Callable[[], float] = time.monotonic):
        self.breakers = breakers
        self._clock = clock
        self._buckets: Dict[str, object] = {}
        self._backoff: Dict[str, RetryPolicy] = {}
        self._metrics: Dict[str, LimitMetrics] = {}
        self._consecutive: Dict[str, int] = {}

    @classmethod
    def from_config(cls, breakers: CircuitBreaker, services: Optional[dict] = None, clock=time.monotonic):
        limiter = cls(breakers, clock=clock)
        for name, conf in (services or SERVICES).items():
            limiter.register(
                name,
                capacity=conf["rate_limit"],
                per_seconds=conf["rate_window_s"],
                kind=conf.get("limiter", "token_bucket"),
                backoff=conf.get("backoff", "exponential"),
            )
        return limiter

    def register(
        self,
        service: str,
        capacity: int,
        per_seconds: float = 60.0,
        kind: str = "token_bucket",
        backoff: str = "exponential",
    ) -> None:
        rate = capacity / per_seconds
        if kind == "leaky_bucket":
            bucket = LeakyBucket(capacity, rate, clock=self._clock)
        elif kind == "token_bucket":
            bucket = TokenBucket(capacity, rate, clock=self._clock)
        else:
            raise ValueError(f"Unknown limiter kind {kind}")

        self._buckets[service] = bucket
        self._backoff[service] = RetryPolicy(
            max_retries=0,
            shape=BackoffShape(backoff),
            base_delay=LIMIT_BACKOFF_BASE_S,
            max_delay=LIMIT_BACKOFF_MAX_S,
        )
        self._metrics[service] = LimitMetrics()
        self._consecutive[service] = 0

    def _bucket(self, service: str):
        try:
            return self._buckets[service]
        except KeyError:
            raise UnknownServiceError(f"Service {service} has no rate limit configured") from None

    def check_limit(self, service: str) -> bool:
        bucket = self._bucket(service)
        stats = self._metrics[service]

        if self.breakers.is_registered(service) and self.breakers.is_open(service):
            logger.warning("Rate limit check refused, circuit open", service=service)
            return False

        stats.total_requests += 1
        metrics.rate_limit_requests_total.labels(service).inc()
        allowed = bucket.try_acquire()
        stats.current_usage = bucket.usage
        stats.reset_time = time.time() + bucket.seconds_until_reset()

        if allowed:
            self._consecutive[service] = 0
            return True

        self._consecutive[service] += 1
        stats.limit_exceeded += 1
        stats.last_exceeded = time.time()
        metrics.rate_limit_exceeded_total.labels(service).inc()

        delay = self.retry_after(service)
        logger.warning(
            "Rate limit exceeded",
            service=service,
            usage=round(stats.current_usage, 3),
            retry_after_s=round(delay, 3),
        )
        if self.breakers.is_registered(service):
            self.breakers.record_failure(service, RateLimitedError(service, delay))
        return False

    def acquire(self, service: str) -> None:
        """check_limit that raises instead of returning False."""
        if not self.check_limit(service):
            raise RateLimitedError(service, self.retry_after(service))

    def retry_after(self, service: str) -> float:
        self._bucket(service)
        attempt = max(self._consecutive[service] - 1, 0)
        return self._backoff[service].delay(attempt)

    def get_metrics(self, service: str) -> LimitMetrics:
        self._bucket(service)
        return self._metrics[service]

    def snapshot(self) -> Dict[str, dict]:
        return {service: stats.as_dict() for service, stats in self._metrics.items()}

    def reset(self, service: str) -> None:
        bucket = self._bucket(service)
        if isinstance(bucket, TokenBucket):
            self._buckets[service] = TokenBucket(bucket.capacity, bucket.refill_rate, clock=self._clock)
        else:
            self._buckets[service] = LeakyBucket(bucket.capacity, bucket.leak_rate, clock=self._clock)
        self._metrics[service] = LimitMetrics()
        self._consecutive[service] = 0
