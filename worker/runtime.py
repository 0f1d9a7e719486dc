import asyncio
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from outreach.config import DRAIN_TIMEOUT_S
from outreach.errors import WorkerUnavailableError
from outreach.logging_config import get_logger
from outreach.services.worker_service import WorkerService

logger = get_logger(__name__)


class WorkerRuntime:
    """
    Hosts the asyncio side of a Celery worker.

    The WorkerService lives on an event loop running in a background thread.
    Celery tasks run on the main thread and hand their job to that loop,
    blocking until the result comes back.
    """

    def __init__(self, build_service: Callable[..., WorkerService], drain_timeout_s: float = DRAIN_TIMEOUT_S):
        self._build_service = build_service
        self.drain_timeout_s = drain_timeout_s
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._service: Optional[WorkerService] = None
        self._stopping: Optional[Future] = None

    @property
    def running(self) -> bool:
        return self.loop is not None and self.loop.is_running()

    @property
    def service(self) -> WorkerService:
        if self._service is None or not self.running:
            raise WorkerUnavailableError("Worker runtime is not running")
        return self._service

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self, **build_kwargs) -> WorkerService:
        if self.running:
            return self._service
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="outreach-worker-loop", daemon=True)
        self._thread.start()

        self._service = self._build_service(**build_kwargs)
        self.run(self._service.start())
        logger.info("Worker runtime started", worker_id=self._service.worker_id)
        return self._service

    def run(self, coro, timeout: Optional[float] = None):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except FutureTimeoutError:
            if future.done():
                raise
            future.cancel()
            raise WorkerUnavailableError(f"Worker loop gave no result within {timeout}s") from None

    def begin_shutdown(self) -> None:
        """Start draining without blocking the caller (safe from a signal handler)."""
        if not self.running or self._stopping is not None:
            return
        self._stopping = asyncio.run_coroutine_threadsafe(self._service.stop(), self.loop)

    def stop(self) -> None:
        if not self.running:
            return
        self.begin_shutdown()
        try:
            self._stopping.result(self.drain_timeout_s + 5)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)
            self.loop.close()
            self.loop = None
            self._stopping = None
            logger.info("Worker runtime stopped")
