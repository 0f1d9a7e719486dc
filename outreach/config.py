import os
import socket
from typing import Mapping, Optional
from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://user:pass@db:5432/outreach")

VOICE_AGENT_URL = os.getenv("VOICE_AGENT_URL", "http://voice-agent:9000")
VOICE_AGENT_API_KEY = os.getenv("VOICE_AGENT_API_KEY", "")

HTTP_CONNECT_TIMEOUT_S = float(os.getenv("HTTP_CONNECT_TIMEOUT_S", "3.0"))
HTTP_READ_TIMEOUT_S = float(os.getenv("HTTP_READ_TIMEOUT_S", "30.0"))

WORKER_ID = os.getenv("WORKER_ID", f"worker-{socket.gethostname()}-{os.getpid()}")

# One call per worker process; call quality degrades under shared resources.
MAX_CONCURRENT_CALLS = int(os.getenv("MAX_CONCURRENT_CALLS", "1"))

# Timeout layers must nest: state < job < drain, and the broker must not
# redeliver a job that is still running.
STATE_TIMEOUT_S = float(os.getenv("STATE_TIMEOUT_S", "60"))
JOB_TIMEOUT_S = float(os.getenv("JOB_TIMEOUT_S", "300"))
DRAIN_TIMEOUT_S = float(os.getenv("DRAIN_TIMEOUT_S", "330"))
VISIBILITY_TIMEOUT_S = int(os.getenv("VISIBILITY_TIMEOUT_S", "3600"))

STATE_MAX_ATTEMPTS = int(os.getenv("STATE_MAX_ATTEMPTS", "3"))
STATE_BACKOFF_BASE_S = float(os.getenv("STATE_BACKOFF_BASE_S", "1.0"))
STATE_HISTORY_LIMIT = 100

HEALTH_CHECK_INTERVAL_S = float(os.getenv("HEALTH_CHECK_INTERVAL_S", "60"))
HEALTH_SNAPSHOT_TTL_S = int(os.getenv("HEALTH_SNAPSHOT_TTL_S", "180"))
MAX_MEMORY_MB = float(os.getenv("MAX_MEMORY_MB", "450"))

QUALITY_CHECK_INTERVAL_S = float(os.getenv("QUALITY_CHECK_INTERVAL_S", "5"))
MIN_AUDIO_QUALITY_SCORE = float(os.getenv("MIN_AUDIO_QUALITY_SCORE", "8.0"))

METRICS_PORT = int(os.getenv("METRICS_PORT", "0"))

# Celery queue / job options
CALL_QUEUE = os.getenv("CALL_QUEUE", "outbound_calls")
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_BASE_S = float(os.getenv("JOB_BACKOFF_BASE_S", "60"))
JOB_BACKOFF_SHAPE = os.getenv("JOB_BACKOFF_SHAPE", "exponential")
FOLLOW_UP_DELAY_S = int(os.getenv("FOLLOW_UP_DELAY_S", "86400"))
JOB_DEDUP_TTL_S = int(os.getenv("JOB_DEDUP_TTL_S", "604800"))
FAILED_JOB_RETENTION_S = int(os.getenv("FAILED_JOB_RETENTION_S", "604800"))

REQUIRED_ENV_VARS = ("REDIS_URL", "DATABASE_URL", "VOICE_AGENT_URL", "VOICE_AGENT_API_KEY")

VOICE_AGENT_SERVICE = "voice-agent"
DATABASE_SERVICE = "database"
QUEUE_SERVICE = "queue"
CALENDAR_SERVICE = "calendar"

# Per-service circuit breaker and rate limiter settings.
# rate_limit requests per rate_window_s, refilled continuously.
SERVICES = {
    VOICE_AGENT_SERVICE: {
        "failure_threshold": 5,
        "reset_timeout_s": 30.0,
        "rate_limit": 100,
        "rate_window_s": 60.0,
        "limiter": "token_bucket",
        "backoff": "exponential",
    },
    DATABASE_SERVICE: {
        "failure_threshold": 5,
        "reset_timeout_s": 60.0,
        "rate_limit": 5500,
        "rate_window_s": 60.0,
        "limiter": "token_bucket",
        "backoff": "exponential",
    },
    QUEUE_SERVICE: {
        "failure_threshold": 5,
        "reset_timeout_s": 60.0,
        "rate_limit": 1000,
        "rate_window_s": 60.0,
        "limiter": "leaky_bucket",
        "backoff": "linear",
    },
    CALENDAR_SERVICE: {
        "failure_threshold": 3,
        "reset_timeout_s": 45.0,
        "rate_limit": 1000,
        "rate_window_s": 60.0,
        "limiter": "token_bucket",
        "backoff": "fibonacci",
    },
}


class ConfigurationError(RuntimeError):
    pass


def is_production(env: Optional[str] = None) -> bool:
    return (env or APP_ENV).lower() in ("prod", "production")


def missing_env_vars(environ: Optional[Mapping[str, str]] = None) -> list:
    environ = os.environ if environ is None else environ
    return [name for name in REQUIRED_ENV_VARS if not environ.get(name)]


def validate_environment(environ: Optional[Mapping[str, str]] = None) -> None:
    missing = missing_env_vars(environ)
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


def validate_timeouts(
    state_timeout_s: float = STATE_TIMEOUT_S,
    job_timeout_s: float = JOB_TIMEOUT_S,
    drain_timeout_s: float = DRAIN_TIMEOUT_S,
    visibility_timeout_s: float = VISIBILITY_TIMEOUT_S,
) -> None:
    if not 0 < state_timeout_s < job_timeout_s < drain_timeout_s:
        raise ConfigurationError(
            "Timeouts must satisfy 0 < STATE_TIMEOUT_S < JOB_TIMEOUT_S < DRAIN_TIMEOUT_S "
            f"(got {state_timeout_s}, {job_timeout_s}, {drain_timeout_s})"
        )
    if visibility_timeout_s <= job_timeout_s:
        raise ConfigurationError(
            f"VISIBILITY_TIMEOUT_S ({visibility_timeout_s}) must exceed JOB_TIMEOUT_S ({job_timeout_s})"
        )
