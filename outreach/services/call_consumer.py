import asyncio
import re
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from outreach import metrics
from outreach.config import (
    DATABASE_SERVICE,
    JOB_TIMEOUT_S,
    MIN_AUDIO_QUALITY_SCORE,
    QUALITY_CHECK_INTERVAL_S,
)
from outreach.errors import ERROR_MESSAGES, ErrorCode, category_for
from outreach.logging_config import get_logger
from outreach.models.enums import CallOutcome, CallState, CampaignStatus, JobType
from outreach.schemas.jobs import CallJob, JobProgress, JobResult
from outreach.services.backoff import NO_RETRY
from outreach.services.call_state_machine import CallStateMachine, TransitionRecord
from outreach.services.circuit_breaker import CircuitBreaker
from outreach.services.error_handler import ErrorContext, ErrorHandler
from outreach.services.rate_limiter import RateLimiter
from outreach.services.record_store import RecordStore
from outreach.services.voice_agent_client import VoiceAgent

logger = get_logger(__name__)

ProgressCallback = Callable[[JobProgress], None]

CAMPAIGN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")

STAGE_PERCENTAGES = {
    CallState.INITIALIZING: 5,
    CallState.DIALING: 15,
    CallState.NAVIGATING_MENU: 25,
    CallState.SPEAKING: 45,
    CallState.SCHEDULING: 70,
    CallState.LEAVING_VOICEMAIL: 70,
    CallState.CLOSING: 85,
    CallState.ENDED: 100,
    CallState.FAILED: 100,
}


def validate_job(job: CallJob) -> List[str]:
    problems = []
    if job.type != JobType.OUTBOUND_CALL:
        problems.append(f"unsupported job type {job.type}")
    if not job.campaign_id or not job.campaign_id.strip():
        problems.append("campaign_id is required")
    elif not CAMPAIGN_ID_PATTERN.match(job.campaign_id):
        problems.append("campaign_id contains characters not allowed in a job id")
    if job.step < 0:
        problems.append("step must be >= 0")
    if job.max_attempts < 1:
        problems.append("max_attempts must be >= 1")
    elif not 0 <= job.retry_count < job.max_attempts:
        problems.append(f"retry_count {job.retry_count} outside 0..{job.max_attempts - 1}")
    return problems


def retry_step(job: CallJob) -> Optional[int]:
    """Step to re-run after a failed attempt, None once attempts are used up."""
    return job.step if job.retry_count < job.max_attempts - 1 else None


def map_outcome(outcome: CallOutcome, job: CallJob) -> Tuple[bool, Optional[int]]:
    if outcome in (CallOutcome.MEETING_SCHEDULED, CallOutcome.DECLINED):
        return True, None
    if outcome in (CallOutcome.VOICEMAIL, CallOutcome.NO_ANSWER):
        return True, job.step + 1
    return False, retry_step(job)


def campaign_status_for(result: JobResult) -> CampaignStatus:
    if result.outcome in (CallOutcome.MEETING_SCHEDULED, CallOutcome.DECLINED):
        return CampaignStatus.COMPLETED
    if not result.success and result.next_step is None:
        return CampaignStatus.FAILED
    return CampaignStatus.IN_PROGRESS


class JobQueueConsumer:
    def __init__(
        self,
        voice_agent: VoiceAgent,
        records: RecordStore,
        breakers: CircuitBreaker,
        limiter: Optional[RateLimiter],
        errors: ErrorHandler,
        *,
        job_timeout_s: float = JOB_TIMEOUT_S,
        quality_interval_s: float = QUALITY_CHECK_INTERVAL_S,
        min_quality_score: float = MIN_AUDIO_QUALITY_SCORE,
        machine_options: Optional[Dict[str, Any]] = None,
    ):
        self.voice_agent = voice_agent
        self.records = records
        self.breakers = breakers
        self.limiter = limiter
        self.errors = errors
        self.job_timeout_s = job_timeout_s
        self.quality_interval_s = quality_interval_s
        self.min_quality_score = min_quality_score
        self.machine_options = machine_options or {}

    async def process_job(self, job: CallJob, progress: Optional[ProgressCallback] = None) -> JobResult:
        correlation_id = str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(
            job_id=job.job_id, campaign_id=job.campaign_id, correlation_id=correlation_id
        ):
            problems = validate_job(job)
            if problems:
                logger.error("Rejecting invalid job", problems=problems)
                result = JobResult(
                    success=False,
                    outcome=CallOutcome.FAILED,
                    error=f"{ERROR_MESSAGES[ErrorCode.INVALID_JOB]}: {'; '.join(problems)}",
                    error_code=ErrorCode.INVALID_JOB,
                    error_category=category_for(ErrorCode.INVALID_JOB),
                )
                metrics.jobs_processed_total.labels(result.outcome.value).inc()
                return result

            logger.info("Processing call job", step=job.step, retry_count=job.retry_count)
            self._report(progress, "VALIDATED", 0, "Job accepted")

            try:
                result = await asyncio.wait_for(self._run_call(job, progress), timeout=self.job_timeout_s)
            except asyncio.TimeoutError as exc:
                result = await self._failed(
                    job, exc, correlation_id, f"Call exceeded job timeout of {self.job_timeout_s}s"
                )
            except Exception as exc:
                result = await self._failed(job, exc, correlation_id)

            await self._persist(job, result, correlation_id)
            metrics.jobs_processed_total.labels(result.outcome.value).inc()
            logger.info(
                "Call job finished",
                success=result.success,
                outcome=result.outcome.value,
                next_step=result.next_step,
                error_code=result.error_code.value if result.error_code else None,
            )
            return result

    async def _run_call(self, job: CallJob, progress: Optional[ProgressCallback]) -> JobResult:
        contact = await self.breakers.execute(DATABASE_SERVICE, lambda: self.records.get_contact(job.campaign_id))

        def on_transition(record: TransitionRecord) -> None:
            self._report(
                progress,
                record.to_state.value,
                STAGE_PERCENTAGES[record.to_state],
                f"{record.from_state.value} -> {record.to_state.value}",
            )

        machine = CallStateMachine(
            self.voice_agent,
            self.breakers,
            self.limiter,
            contact["phone_number"],
            contact,
            on_transition=on_transition,
            **self.machine_options,
        )

        samples: List[float] = []
        monitor = asyncio.create_task(self._monitor_quality(samples))
        try:
            outcome = await machine.start()
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

        ctx = machine.context
        success, next_step = map_outcome(outcome, job)
        metadata = {
            "duration_s": round(time.time() - ctx.started_at, 3),
            "history": [record.as_dict() for record in machine.history],
            "quality_samples": samples,
            "state_retries": ctx.retry_count,
        }

        if outcome != CallOutcome.FAILED:
            return JobResult(success=success, outcome=outcome, next_step=next_step, metadata=metadata)

        code = ctx.error_code or ErrorCode.UNKNOWN_ERROR
        return JobResult(
            success=False,
            outcome=CallOutcome.FAILED,
            error=f"{ERROR_MESSAGES[code]}: {ctx.last_error or 'call failed'}",
            error_code=code,
            error_category=category_for(code),
            next_step=next_step,
            metadata=metadata,
        )

    async def _monitor_quality(self, samples: List[float]) -> None:
        while True:
            await asyncio.sleep(self.quality_interval_s)
            try:
                call_metrics = await self.voice_agent.get_call_metrics()
            except Exception as e:
                logger.warning("Call quality check failed", error=str(e))
                continue
            samples.append(call_metrics.audio_quality_score)
            if call_metrics.audio_quality_score < self.min_quality_score:
                logger.warning(
                    "Call quality below threshold",
                    score=call_metrics.audio_quality_score,
                    threshold=self.min_quality_score,
                    packet_loss=call_metrics.packet_loss,
                    latency=call_metrics.latency,
                )

    async def _failed(
        self, job: CallJob, error: BaseException, correlation_id: str, message: Optional[str] = None
    ) -> JobResult:
        handled = await self.errors.handle(
            error,
            ErrorContext(
                component="consumer",
                operation="process_job",
                metadata={"job_id": job.job_id, "step": job.step, "retry_count": job.retry_count},
                correlation_id=correlation_id,
            ),
        )
        detail = message or str(error) or error.__class__.__name__
        return JobResult(
            success=False,
            outcome=CallOutcome.FAILED,
            error=f"{ERROR_MESSAGES[handled.code]}: {detail}",
            error_code=handled.code,
            error_category=handled.category,
            next_step=retry_step(job),
        )

    async def _persist(self, job: CallJob, result: JobResult, correlation_id: str) -> None:
        operations = (
            (
                "update_call_outcome",
                lambda: self.records.update_call_outcome(job.campaign_id, job.step, result.outcome, result.next_step),
            ),
            ("create_call_record", lambda: self.records.create_call_record(job, result)),
            (
                "update_campaign_status",
                lambda: self.records.update_campaign_status(job.campaign_id, campaign_status_for(result)),
            ),
        )
        for name, operation in operations:
            # ErrorHandler owns the retry budget for writes
            def write(operation=operation):
                return self.breakers.execute(DATABASE_SERVICE, operation, retry_policy=NO_RETRY)

            try:
                await write()
            except Exception as exc:
                handled = await self.errors.handle(
                    exc,
                    ErrorContext(
                        component=DATABASE_SERVICE,
                        operation=name,
                        metadata={"job_id": job.job_id, "outcome": result.outcome.value},
                        correlation_id=correlation_id,
                    ),
                    retry=write,
                )
                if not handled.recovered:
                    logger.error("Persisting call outcome failed", operation=name, error_code=handled.code.value)

    @staticmethod
    def _report(progress: Optional[ProgressCallback], stage: str, percentage: int, message: str) -> None:
        if progress is None:
            return
        progress(JobProgress(stage=stage, percentage=percentage, message=message))
