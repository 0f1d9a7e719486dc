import time
from typing import Dict, List, Optional
from sqlmodel import SQLModel, Field, JSON
from outreach.models.enums import CampaignStatus, CallOutcome


class Contact(SQLModel, table=True):
    id: str = Field(primary_key=True)
    phone_number: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    details: Dict = Field(default_factory=dict, sa_type=JSON)

    created_at: float = Field(default_factory=time.time)


class Campaign(SQLModel, table=True):
    id: str = Field(primary_key=True)
    contact_id: str = Field(foreign_key="contact.id", index=True)
    status: CampaignStatus = Field(default=CampaignStatus.PENDING)

    last_completed_step: int = Field(default=0)
    last_call_outcome: Optional[CallOutcome] = None
    last_call_at: Optional[float] = None
    next_step: Optional[int] = None

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class CallRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    campaign_id: str = Field(foreign_key="campaign.id", index=True)
    step: int
    attempt: int = Field(default=0)
    outcome: CallOutcome
    success: bool

    duration_s: Optional[float] = None
    state_history: List = Field(default_factory=list, sa_type=JSON)
    error_code: Optional[str] = None
    error_log: Optional[str] = None

    created_at: float = Field(default_factory=time.time)
