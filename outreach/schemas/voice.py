from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class ConversationResult(BaseModel):
    schedule_requested: bool = False
    appointment_details: Dict[str, Any] = Field(default_factory=dict)
    summary: Optional[str] = None


class AppointmentResult(BaseModel):
    success: bool
    appointment_id: Optional[str] = None
    scheduled_for: Optional[str] = None


class CallMetrics(BaseModel):
    latency: float = 0.0
    packet_loss: float = 0.0
    audio_quality_score: float = 10.0  # 0-10
    jitter: float = 0.0
    bitrate: float = 0.0
