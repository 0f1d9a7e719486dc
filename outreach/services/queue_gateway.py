import asyncio
from typing import Optional, Protocol

import redis
from celery import Celery

from outreach.config import CALL_QUEUE
from outreach.logging_config import get_logger

logger = get_logger(__name__)


class QueueGateway(Protocol):
    async def ping(self) -> bool: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def close(self) -> None: ...


class CeleryQueueGateway:
    """Intake control for this worker's Celery consumer, plus broker reachability."""

    def __init__(self, app: Celery, redis_client: redis.Redis, hostname: Optional[str] = None, queue: str = CALL_QUEUE):
        self.app = app
        self.redis = redis_client
        self.hostname = hostname
        self.queue = queue

    async def ping(self) -> bool:
        return bool(await asyncio.to_thread(self.redis.ping))

    def _destination(self):
        return [self.hostname] if self.hostname else None

    async def pause(self) -> None:
        await asyncio.to_thread(
            self.app.control.cancel_consumer, self.queue, destination=self._destination(), reply=False
        )
        logger.info("Queue intake paused", queue=self.queue, hostname=self.hostname)

    async def resume(self) -> None:
        await asyncio.to_thread(
            self.app.control.add_consumer, self.queue, destination=self._destination(), reply=False
        )
        logger.info("Queue intake resumed", queue=self.queue, hostname=self.hostname)

    async def close(self) -> None:
        await asyncio.to_thread(self.redis.close)
