from typing import Optional

import redis
from celery import Task
from celery.exceptions import Reject
from celery.signals import worker_ready, worker_shutdown, worker_shutting_down
from prometheus_client import start_http_server
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from outreach.celery_app import celery_app
from outreach.config import DRAIN_TIMEOUT_S, FOLLOW_UP_DELAY_S, METRICS_PORT
from outreach.dependencies import build_circuit_breaker, engine, r
from outreach.errors import DuplicateJobError, OutreachError, WorkerUnavailableError
from outreach.logging_config import configure_logging, get_logger
from outreach.metrics import REGISTRY
from outreach.models.enums import JobEvent
from outreach.schemas.jobs import CallJob, JobOptions, JobProgress
from outreach.services.backoff import BackoffShape, RetryPolicy
from outreach.services.call_consumer import JobQueueConsumer
from outreach.services.error_handler import ErrorHandler
from outreach.services.event_service import EventService
from outreach.services.job_lease import JobLease
from outreach.services.producer import CallProducer, FailedJobStore
from outreach.services.queue_gateway import CeleryQueueGateway
from outreach.services.rate_limiter import RateLimiter
from outreach.services.record_store import SQLRecordStore
from outreach.services.voice_agent_client import HTTPVoiceAgentClient
from outreach.services.worker_service import WorkerService
from worker.runtime import WorkerRuntime

logger = get_logger(__name__)

events = EventService(r)
failed_jobs = FailedJobStore(r)
leases = JobLease(r)
producer = CallProducer(celery_app, r)


class CallJobFailed(OutreachError):
    """Terminal failure of a call job; the job stays in the failed partition."""


def build_worker_service(hostname: Optional[str] = None) -> WorkerService:
    breakers = build_circuit_breaker()
    limiter = RateLimiter.from_config(breakers)
    errors = ErrorHandler(breakers)
    voice_agent = HTTPVoiceAgentClient()
    consumer = JobQueueConsumer(voice_agent, SQLRecordStore(engine), breakers, limiter, errors)
    return WorkerService(
        consumer,
        CeleryQueueGateway(celery_app, r, hostname),
        voice_agent,
        breakers,
        limiter,
        errors,
        on_health=events.publish_health,
        resources=[voice_agent],
    )


runtime = WorkerRuntime(build_worker_service)


@worker_ready.connect
def start_runtime(sender=None, **kwargs):
    configure_logging()
    if METRICS_PORT:
        start_http_server(METRICS_PORT, registry=REGISTRY)
    runtime.start(hostname=getattr(sender, "hostname", None))


@worker_shutting_down.connect
def drain_runtime(**kwargs):
    runtime.begin_shutdown()


@worker_shutdown.connect
def stop_runtime(**kwargs):
    runtime.stop()


class BaseTaskWithRetry(Task):
    autoretry_for = (redis.exceptions.RedisError, OperationalError)
    retry_kwargs = {"max_retries": 10, "countdown": 3}
    retry_backoff = True


def job_retry_delay(options: JobOptions, retries: int) -> int:
    policy = RetryPolicy(
        max_retries=options.max_attempts - 1,
        shape=BackoffShape(options.backoff_shape),
        base_delay=options.backoff_base,
        max_delay=options.backoff_base * 2 ** options.max_attempts,
    )
    return int(policy.delay(retries))


@celery_app.task(bind=True, base=BaseTaskWithRetry, acks_late=True)
def process_call_job(self, payload: dict, options: Optional[dict] = None):
    opts = JobOptions(**(options or {}))
    try:
        job = CallJob(**payload)
    except ValidationError as e:
        logger.error("Dropping malformed job payload", task_id=self.request.id, error=str(e))
        raise Reject(str(e), requeue=False)

    job = job.model_copy(
        update={
            "retry_count": min(self.request.retries, opts.max_attempts - 1),
            "max_attempts": opts.max_attempts,
        }
    )
    job_id = job.job_id
    task_id = self.request.id or job_id

    token = leases.acquire(job_id)
    if token is None:
        logger.warning("Job is already running on another worker", job_id=job_id)
        raise Reject(f"Job {job_id} already in progress", requeue=False)

    def report(progress: JobProgress):
        meta = {"job_id": job_id, **progress.model_dump()}
        self.update_state(task_id=task_id, state="PROGRESS", meta=meta)
        events.publish(job_id, {"type": JobEvent.PROGRESS.value, **meta})

    try:
        # bounded so a dead loop thread cannot block the task forever
        result = runtime.run(runtime.service.handle(job, report), timeout=DRAIN_TIMEOUT_S)
    except WorkerUnavailableError as e:
        logger.info("Worker unavailable, requeueing job", job_id=job_id, reason=str(e))
        raise Reject(str(e), requeue=True)
    except DuplicateJobError as e:
        raise Reject(str(e), requeue=False)
    finally:
        leases.release(job_id, token)

    if result.success:
        if result.next_step is not None:
            if result.next_step <= job.step:
                failed_jobs.add(job, f"Step did not advance ({job.step} -> {result.next_step})", "LOOP_DETECTED")
                events.publish(job_id, {"type": JobEvent.FAILED.value, "job_id": job_id, "error_code": "LOOP_DETECTED"})
                raise CallJobFailed("Step index did not advance")
            producer.enqueue(job.campaign_id, result.next_step, delay=FOLLOW_UP_DELAY_S)
        failed_jobs.remove(job_id)
        events.publish(
            job_id,
            {
                "type": JobEvent.COMPLETED.value,
                "job_id": job_id,
                "outcome": result.outcome.value,
                "next_step": result.next_step,
            },
        )
        return result.model_dump(mode="json")

    if result.next_step == job.step:
        countdown = job_retry_delay(opts, self.request.retries)
        events.publish(
            job_id,
            {
                "type": JobEvent.RETRYING.value,
                "job_id": job_id,
                "attempt": job.retry_count + 1,
                "max_attempts": job.max_attempts,
                "countdown_s": countdown,
                "error": result.error,
            },
        )
        raise self.retry(
            exc=CallJobFailed(result.error or "Call failed", code=result.error_code),
            countdown=countdown,
            max_retries=opts.max_attempts - 1,
        )

    failed_jobs.add_result(job, result)
    events.publish(
        job_id,
        {
            "type": JobEvent.FAILED.value,
            "job_id": job_id,
            "error": result.error,
            "error_code": result.error_code.value if result.error_code else None,
        },
    )
    raise CallJobFailed(result.error or "Call failed", code=result.error_code)
