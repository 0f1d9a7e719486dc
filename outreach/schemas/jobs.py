from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, Optional

from outreach.config import (
    JOB_BACKOFF_BASE_S,
    JOB_BACKOFF_SHAPE,
    JOB_MAX_ATTEMPTS,
    JOB_TIMEOUT_S,
)
from outreach.errors import ErrorCategory, ErrorCode
from outreach.models.enums import CallOutcome, JobType

SEQUENCE_ENDING_OUTCOMES = (CallOutcome.MEETING_SCHEDULED, CallOutcome.DECLINED)
FOLLOW_UP_OUTCOMES = (CallOutcome.VOICEMAIL, CallOutcome.NO_ANSWER)


def make_job_id(campaign_id: str, step: int) -> str:
    return f"{campaign_id}-{step}"


class CallJob(BaseModel):
    # Shape checks (non-empty campaign id, step >= 0, retry bounds) happen in
    # the consumer so a bad job yields a FAILED result instead of a crash.
    type: JobType = JobType.OUTBOUND_CALL
    campaign_id: str
    step: int = 0
    retry_count: int = 0
    max_attempts: int = JOB_MAX_ATTEMPTS
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def job_id(self) -> str:
        return make_job_id(self.campaign_id, self.step)


class JobResult(BaseModel):
    success: bool
    outcome: CallOutcome
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error_category: Optional[ErrorCategory] = None
    next_step: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_outcome_invariants(self):
        if self.success and self.outcome == CallOutcome.FAILED:
            raise ValueError("a successful result cannot have outcome FAILED")
        if self.outcome in SEQUENCE_ENDING_OUTCOMES and self.next_step is not None:
            raise ValueError(f"outcome {self.outcome.value} ends the sequence; next_step must be None")
        if self.outcome in FOLLOW_UP_OUTCOMES and self.next_step is None:
            raise ValueError(f"outcome {self.outcome.value} requires a next_step")
        return self


class JobProgress(BaseModel):
    stage: str
    percentage: int = Field(ge=0, le=100)
    message: str = ""


class JobOptions(BaseModel):
    max_attempts: int = Field(default=JOB_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=JOB_BACKOFF_BASE_S, ge=0)
    backoff_shape: str = JOB_BACKOFF_SHAPE
    per_job_timeout: float = Field(default=JOB_TIMEOUT_S, gt=0)


class EnqueueJobRequest(BaseModel):
    campaign_id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.:\-]+$")
    step: int = Field(default=0, ge=0)
    delay_s: Optional[int] = Field(default=None, ge=0)


class EnqueueJobResponse(BaseModel):
    success: bool
    job_id: str
    status: str
    duplicate: bool = False
    monitor_url: str


class JobStatusResponse(BaseModel):
    job_id: str
    state: str
    progress: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class FailedJob(BaseModel):
    job_id: str
    campaign_id: str
    step: int
    retry_count: int
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_at: float
