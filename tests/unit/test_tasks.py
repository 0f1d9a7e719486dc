import pytest
from celery.exceptions import Reject, Retry

from outreach.config import DRAIN_TIMEOUT_S, FOLLOW_UP_DELAY_S
from outreach.errors import ErrorCategory, ErrorCode, WorkerUnavailableError
from outreach.models.enums import CallOutcome
from outreach.schemas.jobs import JobOptions, JobResult
from worker import tasks
from worker.tasks import CallJobFailed, job_retry_delay, process_call_job


@pytest.fixture
def wiring(mocker):
    runtime = mocker.patch("worker.tasks.runtime")
    leases = mocker.patch("worker.tasks.leases")
    leases.acquire.return_value = "token-1"
    return {
        "runtime": runtime,
        "leases": leases,
        "failed_jobs": mocker.patch("worker.tasks.failed_jobs"),
        "events": mocker.patch("worker.tasks.events"),
        "producer": mocker.patch("worker.tasks.producer"),
    }


def payload(step=1, campaign_id="camp-1"):
    return {"type": "OUTBOUND_CALL", "campaign_id": campaign_id, "step": step}


def event_types(events):
    return [c.args[1]["type"] for c in events.publish.call_args_list]


def test_voicemail_schedules_follow_up(wiring):
    wiring["runtime"].run.return_value = JobResult(success=True, outcome=CallOutcome.VOICEMAIL, next_step=2)

    out = process_call_job.run(payload(step=1))

    assert out["outcome"] == "VOICEMAIL"
    wiring["producer"].enqueue.assert_called_once_with("camp-1", 2, delay=FOLLOW_UP_DELAY_S)
    wiring["failed_jobs"].remove.assert_called_once_with("camp-1-1")
    wiring["leases"].release.assert_called_once_with("camp-1-1", "token-1")
    assert event_types(wiring["events"]) == ["JOB_COMPLETED"]
    assert wiring["runtime"].run.call_args.kwargs["timeout"] == DRAIN_TIMEOUT_S


def test_sequence_end_schedules_nothing(wiring):
    wiring["runtime"].run.return_value = JobResult(success=True, outcome=CallOutcome.MEETING_SCHEDULED)
    process_call_job.run(payload())
    wiring["producer"].enqueue.assert_not_called()


def test_failure_with_attempts_left_is_retried(wiring, mocker):
    retry = mocker.patch("celery.app.task.Task.retry", side_effect=Retry())
    wiring["runtime"].run.return_value = JobResult(
        success=False,
        outcome=CallOutcome.FAILED,
        error="Network connection failed: busy",
        error_code=ErrorCode.NETWORK_FAILURE,
        error_category=ErrorCategory.RETRYABLE,
        next_step=1,
    )

    with pytest.raises(Retry):
        process_call_job.run(payload(step=1), {"max_attempts": 3, "backoff_base": 10, "backoff_shape": "exponential"})

    kwargs = retry.call_args.kwargs
    assert kwargs["countdown"] == 10
    assert kwargs["max_retries"] == 2
    assert isinstance(kwargs["exc"], CallJobFailed)
    wiring["failed_jobs"].add_result.assert_not_called()
    assert event_types(wiring["events"]) == ["JOB_RETRYING"]


def test_exhausted_job_moves_to_failed_partition(wiring):
    result = JobResult(
        success=False,
        outcome=CallOutcome.FAILED,
        error="Invalid job data: campaign_id is required",
        error_code=ErrorCode.INVALID_JOB,
        error_category=ErrorCategory.PERMANENT,
    )
    wiring["runtime"].run.return_value = result

    with pytest.raises(CallJobFailed):
        process_call_job.run(payload())

    job, stored = wiring["failed_jobs"].add_result.call_args.args
    assert job.job_id == "camp-1-1"
    assert stored == result
    assert event_types(wiring["events"]) == ["JOB_FAILED"]


def test_step_that_does_not_advance_is_a_loop(wiring):
    wiring["runtime"].run.return_value = JobResult(success=True, outcome=CallOutcome.NO_ANSWER, next_step=1)

    with pytest.raises(CallJobFailed):
        process_call_job.run(payload(step=1))

    wiring["producer"].enqueue.assert_not_called()
    assert wiring["failed_jobs"].add.call_args.args[2] == "LOOP_DETECTED"


def test_job_leased_elsewhere_is_rejected(wiring):
    wiring["leases"].acquire.return_value = None

    with pytest.raises(Reject) as exc_info:
        process_call_job.run(payload())

    assert exc_info.value.requeue is False
    wiring["runtime"].run.assert_not_called()


def test_unavailable_worker_requeues(wiring):
    wiring["runtime"].run.side_effect = WorkerUnavailableError("Worker is SHUTTING_DOWN")

    with pytest.raises(Reject) as exc_info:
        process_call_job.run(payload())

    assert exc_info.value.requeue is True
    wiring["leases"].release.assert_called_once_with("camp-1-1", "token-1")


def test_malformed_payload_is_dropped(wiring):
    with pytest.raises(Reject) as exc_info:
        process_call_job.run({"step": "not-a-number"})
    assert exc_info.value.requeue is False
    wiring["leases"].acquire.assert_not_called()


def test_retry_delay_follows_job_options():
    options = JobOptions(max_attempts=3, backoff_base=60, backoff_shape="exponential")
    assert [job_retry_delay(options, n) for n in range(3)] == [60, 120, 240]
    linear = JobOptions(max_attempts=3, backoff_base=30, backoff_shape="linear")
    assert [job_retry_delay(linear, n) for n in range(3)] == [30, 60, 90]


def test_worker_service_is_wired_from_config():
    service = tasks.build_worker_service(hostname="celery@host-1")
    assert service.queue.hostname == "celery@host-1"
    assert service.consumer.voice_agent is service.voice_agent
    assert service.breakers.is_registered("voice-agent")
