import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("VOICE_AGENT_URL", "http://voice-agent.test")
os.environ.setdefault("VOICE_AGENT_API_KEY", "test-key")

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import outreach.models.campaign  # noqa: F401  registers tables
from outreach.dependencies import build_circuit_breaker, get_event_service, get_failed_store, get_producer
from outreach.errors import ErrorCategory
from outreach.main import app
from outreach.schemas.voice import AppointmentResult, CallMetrics, ConversationResult
from outreach.services.backoff import BackoffShape, RetryPolicy
from outreach.services.error_handler import ErrorHandler
from outreach.services.rate_limiter import RateLimiter
from outreach.services.voice_agent_client import VoiceAgent

FAST_POLICY = RetryPolicy(max_retries=2, shape=BackoffShape.NONE, base_delay=0.0, max_delay=0.0)


async def no_sleep(_delay):
    return None


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def breakers():
    return build_circuit_breaker(sleep=no_sleep)


@pytest.fixture
def limiter(breakers):
    return RateLimiter.from_config(breakers)


@pytest.fixture
def errors(breakers):
    return ErrorHandler(
        breakers,
        policies={ErrorCategory.RETRYABLE: FAST_POLICY, ErrorCategory.TRANSIENT: FAST_POLICY},
        terminate_on_fatal=False,
    )


@pytest.fixture
def voice_agent():
    agent = MagicMock(spec=VoiceAgent)
    agent.start_call = AsyncMock(return_value=True)
    agent.handle_phone_tree = AsyncMock(return_value=False)
    agent.conduct_conversation = AsyncMock(return_value=ConversationResult(schedule_requested=False))
    agent.schedule_appointment = AsyncMock(return_value=AppointmentResult(success=True, appointment_id="apt-1"))
    agent.end_call = AsyncMock(return_value=None)
    agent.health_check = AsyncMock(return_value=True)
    agent.get_call_metrics = AsyncMock(return_value=CallMetrics(audio_quality_score=9.2))
    return agent


@pytest.fixture
def records():
    store = MagicMock()
    store.get_contact = AsyncMock(return_value={"phone_number": "+15551234567", "first_name": "Ada"})
    store.update_call_outcome = AsyncMock(return_value=None)
    store.create_call_record = AsyncMock(return_value=None)
    store.update_campaign_status = AsyncMock(return_value=None)
    return store


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def failed_store():
    return MagicMock()


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def client(producer, failed_store, events):
    app.dependency_overrides[get_producer] = lambda: producer
    app.dependency_overrides[get_failed_store] = lambda: failed_store
    app.dependency_overrides[get_event_service] = lambda: events
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
