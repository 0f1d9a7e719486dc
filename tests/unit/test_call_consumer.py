import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from outreach.errors import ErrorCategory, ErrorCode
from outreach.models.enums import CallOutcome, CampaignStatus
from outreach.schemas.jobs import CallJob, JobResult
from outreach.schemas.voice import AppointmentResult, ConversationResult
from outreach.services.call_consumer import JobQueueConsumer, campaign_status_for, map_outcome, validate_job


async def no_sleep(_delay):
    return None


@pytest.fixture
def consumer(voice_agent, records, breakers, limiter, errors):
    return JobQueueConsumer(
        voice_agent,
        records,
        breakers,
        limiter,
        errors,
        job_timeout_s=5,
        quality_interval_s=60,
        machine_options={"sleep": no_sleep},
    )


@pytest.mark.asyncio
async def test_meeting_scheduled_ends_sequence(consumer, voice_agent, records):
    voice_agent.conduct_conversation = AsyncMock(return_value=ConversationResult(schedule_requested=True))
    job = CallJob(campaign_id="camp-1", step=2)

    result = await consumer.process_job(job)

    assert result.success is True
    assert result.outcome == CallOutcome.MEETING_SCHEDULED
    assert result.next_step is None
    records.get_contact.assert_awaited_once_with("camp-1")
    records.update_call_outcome.assert_awaited_once_with("camp-1", 2, CallOutcome.MEETING_SCHEDULED, None)
    records.create_call_record.assert_awaited_once_with(job, result)
    records.update_campaign_status.assert_awaited_once_with("camp-1", CampaignStatus.COMPLETED)
    assert [h["to"] for h in result.metadata["history"]][-1] == "ENDED"


@pytest.mark.asyncio
async def test_voicemail_advances_to_next_step(consumer, voice_agent, records):
    voice_agent.detect_voicemail = AsyncMock(return_value=True)
    result = await consumer.process_job(CallJob(campaign_id="camp-1", step=1))

    assert result.success is True
    assert result.outcome == CallOutcome.VOICEMAIL
    assert result.next_step == 2
    records.update_campaign_status.assert_awaited_once_with("camp-1", CampaignStatus.IN_PROGRESS)


@pytest.mark.asyncio
async def test_no_answer_advances_to_next_step(consumer, voice_agent):
    voice_agent.start_call = AsyncMock(return_value=False)
    result = await consumer.process_job(CallJob(campaign_id="camp-1", step=0))
    assert result.outcome == CallOutcome.NO_ANSWER
    assert result.success is True
    assert result.next_step == 1


@pytest.mark.asyncio
async def test_failed_call_with_attempts_left_retries_same_step(consumer, voice_agent):
    voice_agent.start_call = AsyncMock(side_effect=ConnectionError("carrier down"))
    result = await consumer.process_job(CallJob(campaign_id="camp-1", step=3, retry_count=1, max_attempts=3))

    assert result.success is False
    assert result.outcome == CallOutcome.FAILED
    assert result.next_step == 3
    assert result.error_code == ErrorCode.NETWORK_FAILURE
    assert result.error_category == ErrorCategory.RETRYABLE
    assert result.error == "Network connection failed: carrier down"


@pytest.mark.asyncio
async def test_last_attempt_failure_ends_with_no_next_step(consumer, voice_agent, records):
    voice_agent.start_call = AsyncMock(side_effect=ConnectionError("carrier down"))
    result = await consumer.process_job(CallJob(campaign_id="camp-1", step=3, retry_count=2, max_attempts=3))

    assert result.next_step is None
    records.update_campaign_status.assert_awaited_once_with("camp-1", CampaignStatus.FAILED)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "job",
    [
        CallJob(campaign_id=""),
        CallJob(campaign_id="bad id!"),
        CallJob(campaign_id="camp-1", step=-1),
        CallJob(campaign_id="camp-1", retry_count=3, max_attempts=3),
    ],
)
async def test_invalid_job_is_rejected_without_side_effects(consumer, voice_agent, records, job):
    result = await consumer.process_job(job)

    assert result.success is False
    assert result.outcome == CallOutcome.FAILED
    assert result.error_code == ErrorCode.INVALID_JOB
    assert result.error_category == ErrorCategory.PERMANENT
    assert result.error.startswith("Invalid job data: ")
    voice_agent.start_call.assert_not_called()
    records.get_contact.assert_not_called()
    records.create_call_record.assert_not_called()


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failed_result(consumer, records):
    records.get_contact = AsyncMock(side_effect=ValueError("boom"))
    result = await consumer.process_job(CallJob(campaign_id="camp-1"))

    assert result.success is False
    assert result.error == "Unexpected error: boom"
    assert result.error_code == ErrorCode.UNKNOWN_ERROR
    assert result.next_step == 0
    records.create_call_record.assert_awaited_once()


@pytest.mark.asyncio
async def test_job_timeout_produces_failed_result(voice_agent, records, breakers, limiter, errors):
    async def hang():
        await asyncio.sleep(10)

    voice_agent.conduct_conversation = AsyncMock(side_effect=hang)
    consumer = JobQueueConsumer(voice_agent, records, breakers, limiter, errors, job_timeout_s=0.05)

    result = await consumer.process_job(CallJob(campaign_id="camp-1"))

    assert result.outcome == CallOutcome.FAILED
    assert result.error_code == ErrorCode.API_TIMEOUT
    assert "job timeout" in result.error


@pytest.mark.asyncio
async def test_persistence_failure_does_not_change_result(consumer, records):
    records.update_call_outcome = AsyncMock(side_effect=ConnectionError("db gone"))
    result = await consumer.process_job(CallJob(campaign_id="camp-1"))

    assert result.success is True
    assert result.outcome == CallOutcome.DECLINED
    # first try plus two handler retries
    assert records.update_call_outcome.await_count == 3
    records.create_call_record.assert_awaited_once()
    records.update_campaign_status.assert_awaited_once()


@pytest.mark.asyncio
async def test_progress_is_reported_per_stage(consumer, voice_agent):
    voice_agent.conduct_conversation = AsyncMock(return_value=ConversationResult(schedule_requested=True))
    voice_agent.schedule_appointment = AsyncMock(return_value=AppointmentResult(success=True))
    reports = []

    await consumer.process_job(CallJob(campaign_id="camp-1"), progress=reports.append)

    assert [(p.stage, p.percentage) for p in reports] == [
        ("VALIDATED", 0),
        ("DIALING", 15),
        ("SPEAKING", 45),
        ("SCHEDULING", 70),
        ("CLOSING", 85),
        ("ENDED", 100),
    ]


@pytest.mark.asyncio
async def test_quality_samples_are_collected(voice_agent, records, breakers, limiter, errors):
    async def slow_conversation():
        await asyncio.sleep(0.05)
        return ConversationResult(schedule_requested=False)

    voice_agent.conduct_conversation = AsyncMock(side_effect=slow_conversation)
    consumer = JobQueueConsumer(voice_agent, records, breakers, limiter, errors, quality_interval_s=0.01)

    result = await consumer.process_job(CallJob(campaign_id="camp-1"))

    assert result.metadata["quality_samples"]
    assert all(score == 9.2 for score in result.metadata["quality_samples"])


def test_map_outcome_boundaries():
    job = CallJob(campaign_id="c", step=4, retry_count=0, max_attempts=2)
    assert map_outcome(CallOutcome.DECLINED, job) == (True, None)
    assert map_outcome(CallOutcome.NO_ANSWER, job) == (True, 5)
    assert map_outcome(CallOutcome.FAILED, job) == (False, 4)
    last = job.model_copy(update={"retry_count": 1})
    assert map_outcome(CallOutcome.FAILED, last) == (False, None)


def test_campaign_status_for_results():
    assert campaign_status_for(JobResult(success=True, outcome=CallOutcome.DECLINED)) == CampaignStatus.COMPLETED
    assert campaign_status_for(JobResult(success=False, outcome=CallOutcome.FAILED)) == CampaignStatus.FAILED
    assert (
        campaign_status_for(JobResult(success=False, outcome=CallOutcome.FAILED, next_step=1))
        == CampaignStatus.IN_PROGRESS
    )


def test_validate_job_accepts_well_formed_job():
    assert validate_job(CallJob(campaign_id="acme:q3.west_1", step=0)) == []


@pytest.mark.parametrize(
    "fields",
    [
        {"success": True, "outcome": CallOutcome.FAILED},
        {"success": True, "outcome": CallOutcome.MEETING_SCHEDULED, "next_step": 2},
        {"success": True, "outcome": CallOutcome.VOICEMAIL},
    ],
)
def test_job_result_invariants(fields):
    with pytest.raises(ValidationError):
        JobResult(**fields)
