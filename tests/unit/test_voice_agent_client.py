import pytest
import requests

from outreach.errors import ErrorCode, VoiceAgentError
from outreach.services.voice_agent_client import HTTPVoiceAgentClient

BASE = "http://voice-agent.test"


def ok(data):
    return {"status": "SUCCESS", "data": data}


@pytest.fixture
def client():
    return HTTPVoiceAgentClient(BASE, "secret")


@pytest.mark.asyncio
async def test_start_call_sends_auth_and_keeps_call_id(client, requests_mock):
    requests_mock.post(f"{BASE}/v1/calls", json=ok({"call_id": "c-1", "connected": True}))

    assert await client.start_call("+15551234567", {"first_name": "Ada"}) is True

    assert client.call_id == "c-1"
    sent = requests_mock.last_request
    assert sent.headers["Authorization"] == "Bearer secret"
    assert sent.json() == {"phone_number": "+15551234567", "contact": {"first_name": "Ada"}}


@pytest.mark.asyncio
async def test_call_flow_endpoints(client, requests_mock):
    client.call_id = "c-1"
    requests_mock.post(f"{BASE}/v1/calls/c-1/voicemail-detection", json=ok({"voicemail": False}))
    requests_mock.post(f"{BASE}/v1/calls/c-1/phone-tree", json=ok({"success": True}))
    requests_mock.post(
        f"{BASE}/v1/calls/c-1/conversation",
        json=ok({"schedule_requested": True, "appointment_details": {"slot": "mon-9"}}),
    )
    requests_mock.post(f"{BASE}/v1/calls/c-1/appointments", json=ok({"success": True, "appointment_id": "a-9"}))
    requests_mock.get(f"{BASE}/v1/calls/c-1/metrics", json=ok({"audio_quality_score": 7.5, "packet_loss": 0.02}))
    requests_mock.post(f"{BASE}/v1/calls/c-1/end", json=ok({}))

    assert await client.detect_voicemail() is False
    assert await client.handle_phone_tree() is True
    conversation = await client.conduct_conversation()
    assert conversation.appointment_details == {"slot": "mon-9"}

    appointment = await client.schedule_appointment({"slot": "mon-9"})
    assert appointment.appointment_id == "a-9"
    assert requests_mock.last_request.headers["Idempotency-Key"] == "c-1:appointment"

    metrics = await client.get_call_metrics()
    assert metrics.audio_quality_score == 7.5

    await client.end_call()
    assert client.call_id is None


@pytest.mark.asyncio
async def test_operations_need_an_active_call(client):
    with pytest.raises(VoiceAgentError) as exc_info:
        await client.detect_voicemail()
    assert exc_info.value.code == ErrorCode.INVALID_TRANSITION


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, body, code, retryable",
    [
        (401, {}, ErrorCode.AUTHENTICATION, False),
        (429, {}, ErrorCode.RATE_LIMITED, True),
        (503, {}, ErrorCode.NETWORK_FAILURE, True),
        (400, {}, ErrorCode.CONFIGURATION, False),
        (
            500,
            {"status": "FAILED", "error": {"code": "VOICE_PROCESSING", "message": "tts crashed"}},
            ErrorCode.VOICE_PROCESSING,
            True,
        ),
    ],
)
async def test_http_errors_are_classified(client, requests_mock, status, body, code, retryable):
    requests_mock.post(f"{BASE}/v1/calls", status_code=status, json=body)

    with pytest.raises(VoiceAgentError) as exc_info:
        await client.start_call("+15551234567", {})

    assert exc_info.value.code == code
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_timeouts_and_connection_errors(client, requests_mock):
    requests_mock.post(f"{BASE}/v1/calls", exc=requests.exceptions.ConnectTimeout)
    with pytest.raises(VoiceAgentError) as exc_info:
        await client.start_call("+1555", {})
    assert exc_info.value.code == ErrorCode.API_TIMEOUT

    requests_mock.post(f"{BASE}/v1/calls", exc=requests.exceptions.ConnectionError)
    with pytest.raises(VoiceAgentError) as exc_info:
        await client.start_call("+1555", {})
    assert exc_info.value.code == ErrorCode.NETWORK_FAILURE


@pytest.mark.asyncio
async def test_failed_envelope_on_success_status(client, requests_mock):
    client.call_id = "c-1"
    requests_mock.post(
        f"{BASE}/v1/calls/c-1/phone-tree",
        json={"status": "FAILED", "error": {"message": "menu loop"}},
    )
    with pytest.raises(VoiceAgentError) as exc_info:
        await client.handle_phone_tree()
    assert exc_info.value.code == ErrorCode.PHONE_TREE_NAV
    assert str(exc_info.value) == "menu loop"


@pytest.mark.asyncio
async def test_health_check(client, requests_mock):
    requests_mock.get(f"{BASE}/health", status_code=200, json={"ok": True})
    assert await client.health_check() is True

    requests_mock.get(f"{BASE}/health", exc=requests.exceptions.ConnectionError)
    assert await client.health_check() is False
