from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

from outreach.models.enums import CircuitState, WorkerState


class CircuitStatusModel(BaseModel):
    state: CircuitState
    failures: int
    failure_threshold: int
    reset_timeout_s: float
    last_failure_at: Optional[float] = None


class HealthStatus(BaseModel):
    worker_id: str
    state: WorkerState
    healthy: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    memory_mb: float
    active_calls: int
    circuits: Dict[str, CircuitStatusModel] = Field(default_factory=dict)
    rate_limits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    error_counts: Dict[str, int] = Field(default_factory=dict)
    timestamp: float
