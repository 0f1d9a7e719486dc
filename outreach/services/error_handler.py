import asyncio
import logging
import os
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from outreach import metrics
from outreach.config import is_production
from outreach.errors import (
    FATAL_ERROR_CODES,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    category_for,
    error_code_for,
    severity_for,
)
from outreach.logging_config import get_logger, redact
from outreach.services.backoff import DEFAULT_RETRY_POLICIES, RetryPolicy
from outreach.services.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

DEFAULT_SENSITIVE_FIELDS = ("phone_number", "api_key", "password", "token", "authorization")


def terminate_process(code: int) -> None:
    """Flush logs and end the whole process, whichever thread calls it."""
    logging.shutdown()
    os._exit(code)


@dataclass(frozen=True)
class ErrorContext:
    component: str
    operation: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class HandledError:
    correlation_id: str
    code: ErrorCode
    category: ErrorCategory
    severity: ErrorSeverity
    recovered: bool
    attempts: int = 0
    result: Any = None
    error: Optional[BaseException] = None


class ErrorHandler:
    """
    Classifies failures and runs the category's retry policy.

    RETRYABLE and TRANSIENT errors are retried through the ``retry`` callable
    when one is given. Each attempt first checks the circuit for
    ``context.component`` and stops as soon as it is open. PERMANENT and
    SECURITY errors are never retried; codes in FATAL_ERROR_CODES terminate
    the process when ``terminate_on_fatal`` is set (production default).
    """

    def __init__(
        self,
        breakers: Optional[CircuitBreaker] = None,
        policies: Optional[Dict[ErrorCategory, RetryPolicy]] = None,
        terminate_on_fatal: Optional[bool] = None,
        terminate: Optional[Callable[[int], Any]] = None,
    ):
        self.breakers = breakers
        self.policies = {**DEFAULT_RETRY_POLICIES, **(policies or {})}
        self.terminate_on_fatal = is_production() if terminate_on_fatal is None else terminate_on_fatal
        self._terminate = terminate or terminate_process
        self._counts: Counter = Counter()
        self._cancel_events: Dict[str, asyncio.Event] = {}

    async def handle(
        self,
        error: BaseException,
        context: ErrorContext,
        retry: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> HandledError:
        correlation_id = context.correlation_id or str(uuid.uuid4())
        code = error_code_for(error)
        category = category_for(code)
        severity = severity_for(code)

        self._counts[code] += 1
        metrics.errors_total.labels(code.value, category.value).inc()

        log = logger.bind(
            correlation_id=correlation_id,
            component=context.component,
            operation=context.operation,
            error_code=code.value,
            category=category.value,
            severity=severity.value,
        )
        safe_metadata = redact(context.metadata, context.sensitive_fields)

        if not category.retryable:
            log.critical("Unrecoverable error", error=str(error), metadata=safe_metadata)
            if code in FATAL_ERROR_CODES and self.terminate_on_fatal:
                log.critical("Fatal error code, terminating process")
                self._terminate(1)
            return HandledError(correlation_id, code, category, severity, recovered=False, error=error)

        log.error("Error handled", error=str(error), metadata=safe_metadata)
        if retry is None:
            return HandledError(correlation_id, code, category, severity, recovered=False, error=error)

        return await self._retry(error, context, retry, correlation_id, code, category, severity, log)

    async def _retry(self, error, context, retry, correlation_id, code, category, severity, log) -> HandledError:
        policy = self.policies[category]
        cancelled = asyncio.Event()
        self._cancel_events[correlation_id] = cancelled
        last_error = error
        attempts = 0

        try:
            for attempt in range(policy.max_retries):
                if self._circuit_open(context.component):
                    log.warning("Retry aborted, circuit open", attempts=attempts)
                    break

                delay = policy.delay(attempt)
                if await self._wait(cancelled, delay):
                    log.warning("Retry cancelled", attempts=attempts)
                    break
                if self._circuit_open(context.component):
                    log.warning("Retry aborted, circuit open", attempts=attempts)
                    break

                attempts += 1
                try:
                    result = await retry()
                except Exception as exc:
                    last_error = exc
                    log.warning("Retry attempt failed", attempt=attempts, error=str(exc))
                    if not category_for(error_code_for(exc)).retryable:
                        break
                    continue

                log.info("Recovered after retry", attempts=attempts)
                return HandledError(
                    correlation_id, code, category, severity, recovered=True, attempts=attempts, result=result
                )
        finally:
            self._cancel_events.pop(correlation_id, None)

        log.error("Retries exhausted", attempts=attempts, error=str(last_error))
        return HandledError(
            correlation_id, code, category, severity, recovered=False, attempts=attempts, error=last_error
        )

    @staticmethod
    async def _wait(cancelled: asyncio.Event, delay: float) -> bool:
        """Sleep for delay; True when woken by cancel_retries instead."""
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _circuit_open(self, component: str) -> bool:
        if self.breakers is None or not self.breakers.is_registered(component):
            return False
        return self.breakers.is_open(component)

    def cancel_retries(self, correlation_id: Optional[str] = None) -> int:
        if correlation_id is not None:
            targets = [self._cancel_events[correlation_id]] if correlation_id in self._cancel_events else []
        else:
            targets = list(self._cancel_events.values())
        for event in targets:
            event.set()
        if targets:
            logger.info("Cancelled pending retries", count=len(targets), correlation_id=correlation_id)
        return len(targets)

    @property
    def pending_retries(self) -> int:
        return len(self._cancel_events)

    def error_metrics(self) -> Dict[str, int]:
        return {code.value: count for code, count in self._counts.items()}

    def reset_error_metrics(self) -> None:
        self._counts.clear()
