import json
import time
from typing import List, Optional, Tuple

import redis
from celery import Celery

from outreach.config import CALL_QUEUE, FAILED_JOB_RETENTION_S, JOB_DEDUP_TTL_S
from outreach.errors import QueueError
from outreach.logging_config import get_logger
from outreach.schemas.jobs import CallJob, FailedJob, JobOptions, JobResult, make_job_id

logger = get_logger(__name__)

PROCESS_CALL_TASK = "worker.tasks.process_call_job"
FAILED_JOBS_KEY = "jobs:failed"


def submitted_key(job_id: str) -> str:
    return f"jobs:{job_id}:submitted"


class FailedJobStore:
    """Failed partition: jobs that used up their attempts, kept for inspection."""

    def __init__(self, client: redis.Redis):
        self.r = client

    def add(self, job: CallJob, error: Optional[str], error_code: Optional[str]) -> FailedJob:
        entry = FailedJob(
            job_id=job.job_id,
            campaign_id=job.campaign_id,
            step=job.step,
            retry_count=job.retry_count,
            error=error,
            error_code=error_code,
            failed_at=time.time(),
        )
        self.r.hset(FAILED_JOBS_KEY, job.job_id, entry.model_dump_json())
        self.r.expire(FAILED_JOBS_KEY, FAILED_JOB_RETENTION_S)
        return entry

    def add_result(self, job: CallJob, result: JobResult) -> FailedJob:
        code = result.error_code.value if result.error_code else None
        return self.add(job, result.error, code)

    def get(self, job_id: str) -> Optional[FailedJob]:
        raw = self.r.hget(FAILED_JOBS_KEY, job_id)
        return FailedJob(**json.loads(raw)) if raw else None

    def list(self) -> List[FailedJob]:
        entries = [FailedJob(**json.loads(raw)) for raw in self.r.hvals(FAILED_JOBS_KEY)]
        return sorted(entries, key=lambda e: e.failed_at, reverse=True)

    def remove(self, job_id: str) -> bool:
        return bool(self.r.hdel(FAILED_JOBS_KEY, job_id))


class CallProducer:
    def __init__(
        self,
        app: Celery,
        client: redis.Redis,
        queue: str = CALL_QUEUE,
        options: Optional[JobOptions] = None,
    ):
        self.app = app
        self.r = client
        self.queue = queue
        self.options = options or JobOptions()

    def enqueue(self, campaign_id: str, step: int, delay: Optional[int] = None) -> Tuple[str, bool]:
        """
        Submit the call job for (campaign_id, step).

        Returns (job_id, created). Submitting the same pair again while the
        first submission is remembered is a no-op with created=False.
        """
        job = CallJob(campaign_id=campaign_id, step=step, max_attempts=self.options.max_attempts)
        job_id = make_job_id(campaign_id, step)

        if not self.r.set(submitted_key(job_id), str(time.time()), nx=True, ex=JOB_DEDUP_TTL_S):
            logger.info("Job already submitted", job_id=job_id)
            return job_id, False

        try:
            self.app.send_task(
                PROCESS_CALL_TASK,
                args=[job.model_dump(mode="json")],
                kwargs={"options": self.options.model_dump(mode="json")},
                task_id=job_id,
                queue=self.queue,
                countdown=delay,
            )
        except Exception as e:
            self.r.delete(submitted_key(job_id))
            raise QueueError(f"Could not enqueue job {job_id}: {e}") from e

        logger.info("Job enqueued", job_id=job_id, queue=self.queue, delay_s=delay)
        return job_id, True

    def retry_failed(self, failed: FailedJobStore, job_id: str) -> Optional[str]:
        entry = failed.get(job_id)
        if entry is None:
            return None
        self.r.delete(submitted_key(job_id))
        new_id, _ = self.enqueue(entry.campaign_id, entry.step)
        failed.remove(job_id)
        return new_id
