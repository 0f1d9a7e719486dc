import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional, TypeVar

from outreach import metrics
from outreach.errors import CircuitOpenError, UnknownServiceError, category_for, error_code_for
from outreach.logging_config import get_logger
from outreach.models.enums import CircuitState
from outreach.services.backoff import DEFAULT_BREAKER_RETRY_POLICY, NO_RETRY, RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class _Circuit:
    failure_threshold: int
    reset_timeout_s: float
    retry_policy: RetryPolicy
    mode: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure_at: Optional[float] = None
    last_failure_wall: Optional[float] = None
    probe_in_flight: bool = False


@dataclass(frozen=True)
class CircuitStatus:
    service: str
    state: CircuitState
    failures: int
    failure_threshold: int
    reset_timeout_s: float
    last_failure_at: Optional[float]


@dataclass(frozen=True)
class CircuitTransition:
    service: str
    old_state: CircuitState
    new_state: CircuitState
    timestamp: float


class CircuitBreaker:
    """
    Registry of per-service circuits.

    One instance is shared by every component of a worker process. All
    bookkeeping happens synchronously between awaits, so interleaved calls on
    the worker's event loop never observe a half-updated circuit.
    """

    def __init__(
        self,
        services: Iterable[str] = (),
        *,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        retry_policy: RetryPolicy = DEFAULT_BREAKER_RETRY_POLICY,
        on_transition: Optional[Callable[[CircuitTransition], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._defaults = (failure_threshold, reset_timeout_s, retry_policy)
        self._circuits: Dict[str, _Circuit] = {}
        self._on_transition = on_transition
        self._clock = clock
        self._sleep = sleep
        for service in services:
            self.register(service)

    def register(
        self,
        service: str,
        failure_threshold: Optional[int] = None,
        reset_timeout_s: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        threshold, timeout, policy = self._defaults
        threshold = failure_threshold if failure_threshold is not None else threshold
        if threshold < 1:
            raise ValueError(f"failure_threshold for {service} must be at least 1, got {threshold}")
        self._circuits[service] = _Circuit(
            failure_threshold=threshold,
            reset_timeout_s=reset_timeout_s if reset_timeout_s is not None else timeout,
            retry_policy=retry_policy if retry_policy is not None else policy,
        )
        metrics.circuit_state.labels(service).set(metrics.CIRCUIT_STATE_VALUES[CircuitState.CLOSED.value])

    @property
    def services(self) -> list:
        return list(self._circuits)

    def is_registered(self, service: str) -> bool:
        return service in self._circuits

    def _circuit(self, service: str) -> _Circuit:
        try:
            return self._circuits[service]
        except KeyError:
            raise UnknownServiceError(f"Service {service} is not monitored by circuit breaker") from None

    async def execute(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        retry_policy: Optional[RetryPolicy] = None,
    ) -> T:
        circuit = self._circuit(service)
        trial = self._admit(service, circuit)
        if trial:
            retry_policy = NO_RETRY

        try:
            result = await self._run_with_retry(service, operation, retry_policy or circuit.retry_policy)
        except asyncio.CancelledError:
            circuit.probe_in_flight = False
            raise
        except Exception as exc:
            self._record_failure(service, circuit, exc)
            raise

        self._record_success(service, circuit)
        return result

    def _admit(self, service: str, circuit: _Circuit) -> bool:
        """Raise while the circuit is open; True when this call is the half-open trial."""
        if circuit.mode == CircuitState.OPEN:
            elapsed = (
                self._clock() - circuit.last_failure_at
                if circuit.last_failure_at is not None
                else circuit.reset_timeout_s
            )
            if elapsed < circuit.reset_timeout_s:
                raise CircuitOpenError(service, circuit.reset_timeout_s - elapsed)
            self._transition(service, circuit, CircuitState.HALF_OPEN)

        if circuit.mode == CircuitState.HALF_OPEN:
            # exactly one trial invocation while half-open, with no internal retries
            if circuit.probe_in_flight:
                raise CircuitOpenError(service, 0.0)
            circuit.probe_in_flight = True
            return True
        return False

    async def _run_with_retry(self, service: str, operation, policy: RetryPolicy):
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= policy.max_retries or not category_for(error_code_for(exc)).retryable:
                    raise
                delay = policy.delay(attempt)
                attempt += 1
                metrics.service_retry_attempts_total.labels(service).inc()
                logger.info(
                    "Retrying service call",
                    service=service,
                    attempt=attempt,
                    max_retries=policy.max_retries,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
                await self._sleep(delay)

    def _record_failure(self, service: str, circuit: _Circuit, error: Optional[BaseException] = None) -> None:
        was_probe = circuit.mode == CircuitState.HALF_OPEN
        circuit.probe_in_flight = False
        circuit.failures += 1
        circuit.last_failure_at = self._clock()
        circuit.last_failure_wall = time.time()

        if was_probe or circuit.failures >= circuit.failure_threshold:
            self._transition(service, circuit, CircuitState.OPEN)

        logger.error(
            "Circuit breaker recorded failure",
            service=service,
            failures=circuit.failures,
            threshold=circuit.failure_threshold,
            state=circuit.mode.value,
            error=str(error) if error is not None else None,
        )

    def _record_success(self, service: str, circuit: _Circuit) -> None:
        if circuit.mode == CircuitState.HALF_OPEN:
            self._transition(service, circuit, CircuitState.CLOSED)
        circuit.probe_in_flight = False
        circuit.failures = 0

    def record_failure(self, service: str, error: Optional[BaseException] = None) -> None:
        circuit = self._circuit(service)
        if circuit.mode == CircuitState.OPEN:
            return
        self._record_failure(service, circuit, error)

    def record_success(self, service: str) -> None:
        self._record_success(service, self._circuit(service))

    def _transition(self, service: str, circuit: _Circuit, new_state: CircuitState) -> None:
        old_state = circuit.mode
        if old_state == new_state:
            return
        circuit.mode = new_state
        event = CircuitTransition(service, old_state, new_state, time.time())

        metrics.circuit_state.labels(service).set(metrics.CIRCUIT_STATE_VALUES[new_state.value])
        metrics.circuit_transitions_total.labels(service, new_state.value).inc()
        logger.info(
            "Circuit breaker state transition",
            service=service,
            old_state=old_state.value,
            new_state=new_state.value,
            failures=circuit.failures,
        )
        if self._on_transition is not None:
            self._on_transition(event)

    def get_state(self, service: str) -> CircuitState:
        return self._circuit(service).mode

    def is_open(self, service: str) -> bool:
        return self.get_state(service) == CircuitState.OPEN

    def status(self, service: str) -> CircuitStatus:
        circuit = self._circuit(service)
        return CircuitStatus(
            service=service,
            state=circuit.mode,
            failures=circuit.failures,
            failure_threshold=circuit.failure_threshold,
            reset_timeout_s=circuit.reset_timeout_s,
            last_failure_at=circuit.last_failure_wall,
        )

    def snapshot(self) -> Dict[str, CircuitStatus]:
        return {service: self.status(service) for service in self._circuits}

    def reset(self, service: str) -> None:
        circuit = self._circuit(service)
        self._transition(service, circuit, CircuitState.CLOSED)
        circuit.failures = 0
        circuit.last_failure_at = None
        circuit.last_failure_wall = None
        circuit.probe_in_flight = False
        logger.info("Circuit breaker reset", service=service)
