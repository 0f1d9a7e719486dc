import asyncio
import signal
import threading
import time
from typing import Callable, Iterable, Mapping, Optional, Set

import psutil

from outreach import metrics
from outreach.config import (
    DRAIN_TIMEOUT_S,
    HEALTH_CHECK_INTERVAL_S,
    JOB_TIMEOUT_S,
    MAX_CONCURRENT_CALLS,
    MAX_MEMORY_MB,
    STATE_TIMEOUT_S,
    VISIBILITY_TIMEOUT_S,
    VOICE_AGENT_SERVICE,
    WORKER_ID,
    ConfigurationError,
    validate_environment,
    validate_timeouts,
)
from outreach.errors import DuplicateJobError, WorkerUnavailableError
from outreach.logging_config import get_logger
from outreach.models.enums import WorkerState
from outreach.schemas.health import CircuitStatusModel, HealthStatus
from outreach.schemas.jobs import CallJob, JobResult
from outreach.services.call_consumer import JobQueueConsumer, ProgressCallback
from outreach.services.circuit_breaker import CircuitBreaker
from outreach.services.error_handler import ErrorHandler
from outreach.services.queue_gateway import QueueGateway
from outreach.services.rate_limiter import RateLimiter
from outreach.services.voice_agent_client import VoiceAgent

logger = get_logger(__name__)


def current_memory_mb() -> float:
    # resident set size right now, not the peak
    return psutil.Process().memory_info().rss / (1024 * 1024)


class WorkerService:
    """
    Owns one worker's lifecycle: STARTING -> RUNNING -> SHUTTING_DOWN -> STOPPED.

    At most ``max_concurrent_calls`` jobs reach the consumer at a time; the
    rest wait on the call slot. ``stop()`` drains the in-flight call for up
    to ``drain_timeout_s`` and then proceeds regardless.
    """

    def __init__(
        self,
        consumer: JobQueueConsumer,
        queue: QueueGateway,
        voice_agent: VoiceAgent,
        breakers: CircuitBreaker,
        limiter: RateLimiter,
        errors: ErrorHandler,
        *,
        worker_id: str = WORKER_ID,
        max_concurrent_calls: int = MAX_CONCURRENT_CALLS,
        state_timeout_s: float = STATE_TIMEOUT_S,
        job_timeout_s: float = JOB_TIMEOUT_S,
        drain_timeout_s: float = DRAIN_TIMEOUT_S,
        visibility_timeout_s: float = VISIBILITY_TIMEOUT_S,
        health_interval_s: float = HEALTH_CHECK_INTERVAL_S,
        max_memory_mb: float = MAX_MEMORY_MB,
        memory_probe: Callable[[], float] = current_memory_mb,
        on_health: Optional[Callable[[HealthStatus], None]] = None,
        environ: Optional[Mapping[str, str]] = None,
        install_signal_handlers: bool = True,
        resources: Iterable = (),
    ):
        self.consumer = consumer
        self.queue = queue
        self.voice_agent = voice_agent
        self.breakers = breakers
        self.limiter = limiter
        self.errors = errors
        self.worker_id = worker_id
        self.max_concurrent_calls = max_concurrent_calls
        self.state_timeout_s = state_timeout_s
        self.job_timeout_s = job_timeout_s
        self.drain_timeout_s = drain_timeout_s
        self.visibility_timeout_s = visibility_timeout_s
        self.health_interval_s = health_interval_s
        self.max_memory_mb = max_memory_mb
        self._memory_probe = memory_probe
        self._on_health = on_health
        self._environ = environ
        self._install_signals = install_signal_handlers
        self._resources = list(resources)

        self._state = WorkerState.STARTING
        self._slot: Optional[asyncio.Semaphore] = None
        self._idle: Optional[asyncio.Event] = None
        self._in_flight: Set[str] = set()
        self._active = 0
        self._health_task: Optional[asyncio.Task] = None
        self._signals: list = []
        self._shutdown_task: Optional[asyncio.Future] = None
        self.log = logger.bind(worker_id=worker_id)

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def active_calls(self) -> int:
        return self._active

    def _set_state(self, state: WorkerState) -> None:
        if state != self._state:
            self.log.info("Worker state change", old_state=self._state.value, new_state=state.value)
            self._state = state

    async def start(self) -> None:
        if self._state != WorkerState.STARTING:
            raise RuntimeError(f"Cannot start worker in state {self._state.value}")

        try:
            validate_environment(self._environ)
            validate_timeouts(
                self.state_timeout_s, self.job_timeout_s, self.drain_timeout_s, self.visibility_timeout_s
            )
        except ConfigurationError as e:
            self.log.critical("Worker configuration invalid", error=str(e))
            self._set_state(WorkerState.ERROR)
            raise

        self._slot = asyncio.Semaphore(self.max_concurrent_calls)
        self._idle = asyncio.Event()
        self._idle.set()

        try:
            await self.queue.resume()
        except Exception as e:
            self.log.critical("Could not start queue intake", error=str(e))
            self._set_state(WorkerState.ERROR)
            raise

        self._health_task = asyncio.create_task(self._health_loop())
        self._install_signal_handlers()
        self._set_state(WorkerState.RUNNING)
        self.log.info("Worker started", max_concurrent_calls=self.max_concurrent_calls)

    async def handle(self, job: CallJob, progress: Optional[ProgressCallback] = None) -> JobResult:
        if self._state != WorkerState.RUNNING:
            raise WorkerUnavailableError(f"Worker is {self._state.value}, not accepting jobs")

        job_id = job.job_id
        if job_id in self._in_flight:
            raise DuplicateJobError(f"Job {job_id} is already being processed")

        self._in_flight.add(job_id)
        self._idle.clear()
        try:
            async with self._slot:
                if self._state != WorkerState.RUNNING:
                    raise WorkerUnavailableError(f"Worker is {self._state.value}, not accepting jobs")
                self._active += 1
                metrics.active_calls.set(self._active)
                try:
                    return await self.consumer.process_job(job, progress)
                finally:
                    self._active -= 1
                    metrics.active_calls.set(self._active)
        finally:
            self._in_flight.discard(job_id)
            if not self._in_flight:
                self._idle.set()

    async def stop(self) -> None:
        if self._state in (WorkerState.SHUTTING_DOWN, WorkerState.STOPPED):
            return
        self._set_state(WorkerState.SHUTTING_DOWN)

        try:
            await self.queue.pause()
        except Exception as e:
            self.log.warning("Could not pause queue intake", error=str(e))

        self.errors.cancel_retries()

        if self._idle is not None and not self._idle.is_set():
            self.log.info("Draining in-flight calls", active_calls=self._active, timeout_s=self.drain_timeout_s)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=self.drain_timeout_s)
            except asyncio.TimeoutError:
                self.log.warning("Drain timeout reached, stopping with calls in flight", active_calls=self._active)

        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        self._remove_signal_handlers()
        await self._close_resources()
        self._set_state(WorkerState.STOPPED)
        self.log.info("Worker stopped")

    async def _close_resources(self) -> None:
        try:
            await self.queue.close()
        except Exception as e:
            self.log.warning("Closing queue connection failed", error=str(e))
        for res in self._resources:
            try:
                res.close()
            except Exception as e:
                self.log.warning("Closing resource failed", resource=type(res).__name__, error=str(e))

    def fail(self, error: BaseException) -> None:
        self.log.critical("Unrecoverable worker failure", error=str(error))
        self._set_state(WorkerState.ERROR)

    async def _probe(self, name: str, check) -> bool:
        try:
            return bool(await check())
        except Exception as e:
            self.log.warning("Health probe failed", check=name, error=str(e))
            return False

    async def health_check(self) -> HealthStatus:
        memory_mb = self._memory_probe()
        voice_circuit_closed = (
            not self.breakers.is_open(VOICE_AGENT_SERVICE)
            if self.breakers.is_registered(VOICE_AGENT_SERVICE)
            else True
        )
        checks = {
            "queue": await self._probe("queue", self.queue.ping),
            "voice_agent": await self._probe("voice_agent", self.voice_agent.health_check),
            "memory": memory_mb < self.max_memory_mb,
            "circuit": voice_circuit_closed,
        }
        healthy = all(checks.values())

        circuits = {
            name: CircuitStatusModel(
                state=status.state,
                failures=status.failures,
                failure_threshold=status.failure_threshold,
                reset_timeout_s=status.reset_timeout_s,
                last_failure_at=status.last_failure_at,
            )
            for name, status in self.breakers.snapshot().items()
        }

        metrics.worker_healthy.set(1 if healthy else 0)
        metrics.worker_memory_mb.set(memory_mb)

        return HealthStatus(
            worker_id=self.worker_id,
            state=self._state,
            healthy=healthy,
            checks=checks,
            memory_mb=round(memory_mb, 2),
            active_calls=self._active,
            circuits=circuits,
            rate_limits=self.limiter.snapshot() if self.limiter is not None else {},
            error_counts=self.errors.error_metrics(),
            timestamp=time.time(),
        )

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval_s)
            status = await self.health_check()
            if not status.healthy:
                failing = [name for name, ok in status.checks.items() if not ok]
                self.log.warning("Worker unhealthy", failing_checks=failing, memory_mb=status.memory_mb)
            if self._on_health is not None:
                try:
                    self._on_health(status)
                except Exception as e:
                    self.log.warning("Publishing health snapshot failed", error=str(e))

    def _install_signal_handlers(self) -> None:
        if not self._install_signals:
            return
        if threading.current_thread() is not threading.main_thread():
            self.log.info("Event loop not on main thread, leaving signal handling to the host process")
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    def _on_signal(self, sig: signal.Signals) -> None:
        self.log.info("Shutdown signal received", signal=sig.name)
        self._shutdown_task = asyncio.ensure_future(self.stop())
