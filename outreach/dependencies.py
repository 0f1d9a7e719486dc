import redis
from sqlmodel import create_engine

from outreach.celery_app import celery_app
from outreach.config import DATABASE_URL, REDIS_URL, SERVICES
from outreach.services.circuit_breaker import CircuitBreaker
from outreach.services.event_service import EventService
from outreach.services.producer import CallProducer, FailedJobStore

engine = create_engine(DATABASE_URL)
r = redis.from_url(REDIS_URL, decode_responses=True)


def get_producer() -> CallProducer:
    return CallProducer(celery_app, r)


def get_failed_store() -> FailedJobStore:
    return FailedJobStore(r)


def get_event_service() -> EventService:
    return EventService(r)


def build_circuit_breaker(services: dict = None, **kwargs) -> CircuitBreaker:
    """One registry per worker process, shared by every component that calls out."""
    breakers = CircuitBreaker(**kwargs)
    for name, conf in (services or SERVICES).items():
        breakers.register(
            name,
            failure_threshold=conf["failure_threshold"],
            reset_timeout_s=conf["reset_timeout_s"],
        )
    return breakers
