from prometheus_client import CollectorRegistry, Counter, Gauge

REGISTRY = CollectorRegistry(auto_describe=True)

CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}

circuit_state = Gauge(
    "outreach_circuit_state",
    "Circuit breaker state per service (0=closed, 1=half-open, 2=open)",
    ["service"],
    registry=REGISTRY,
)

circuit_transitions_total = Counter(
    "outreach_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["service", "to_state"],
    registry=REGISTRY,
)

service_retry_attempts_total = Counter(
    "outreach_service_retry_attempts_total",
    "Intermediate retries performed inside the circuit breaker",
    ["service"],
    registry=REGISTRY,
)

rate_limit_requests_total = Counter(
    "outreach_rate_limit_requests_total",
    "Rate limit checks per service",
    ["service"],
    registry=REGISTRY,
)

rate_limit_exceeded_total = Counter(
    "outreach_rate_limit_exceeded_total",
    "Rate limit checks that were refused",
    ["service"],
    registry=REGISTRY,
)

errors_total = Counter(
    "outreach_errors_total",
    "Errors handled by the error handler",
    ["code", "category"],
    registry=REGISTRY,
)

call_state_transitions_total = Counter(
    "outreach_call_state_transitions_total",
    "Call state machine transitions",
    ["from_state", "to_state"],
    registry=REGISTRY,
)

active_calls = Gauge(
    "outreach_active_calls",
    "Calls currently in progress on this worker",
    registry=REGISTRY,
)

jobs_processed_total = Counter(
    "outreach_jobs_processed_total",
    "Call jobs processed by outcome",
    ["outcome"],
    registry=REGISTRY,
)

worker_healthy = Gauge(
    "outreach_worker_healthy",
    "1 when the last health check passed",
    registry=REGISTRY,
)

worker_memory_mb = Gauge(
    "outreach_worker_memory_mb",
    "Worker resident memory in MB",
    registry=REGISTRY,
)
