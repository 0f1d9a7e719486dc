import time
from typing import Any, Dict, List, Optional
from sqlmodel import select
from outreach.repositories.base_repository import BaseRepository
from outreach.models.campaign import CallRecord, Campaign, Contact
from outreach.models.enums import CallOutcome, CampaignStatus


class CampaignRepository(BaseRepository):
    def get(self, campaign_id: str) -> Optional[Campaign]:
        return self.session.get(Campaign, campaign_id)

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self.session.get(Contact, contact_id)

    def create_contact(self, contact_id: str, phone_number: str, **fields: Any) -> Contact:
        return self.save(Contact(id=contact_id, phone_number=phone_number, **fields))

    def create(self, campaign_id: str, contact_id: str) -> Campaign:
        campaign = Campaign(id=campaign_id, contact_id=contact_id, status=CampaignStatus.PENDING)
        return self.save(campaign)

    def set_status(self, campaign: Campaign, status: CampaignStatus) -> Campaign:
        campaign.status = status
        campaign.updated_at = time.time()
        return self.save(campaign)

    def record_outcome(
        self, campaign: Campaign, step: int, outcome: CallOutcome, next_step: Optional[int]
    ) -> Campaign:
        # a campaign never moves backwards
        campaign.last_completed_step = max(campaign.last_completed_step, step)
        campaign.last_call_outcome = outcome
        campaign.last_call_at = time.time()
        campaign.next_step = next_step
        campaign.updated_at = time.time()
        return self.save(campaign)


class CallRecordRepository(BaseRepository):
    def create(
        self,
        job_id: str,
        campaign_id: str,
        step: int,
        outcome: CallOutcome,
        success: bool,
        attempt: int = 0,
        duration_s: Optional[float] = None,
        state_history: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        error_log: Optional[str] = None,
    ) -> CallRecord:
        record = CallRecord(
            job_id=job_id,
            campaign_id=campaign_id,
            step=step,
            attempt=attempt,
            outcome=outcome,
            success=success,
            duration_s=duration_s,
            state_history=state_history or [],
            error_code=error_code,
            error_log=error_log,
        )
        return self.save(record)

    def list_for_campaign(self, campaign_id: str) -> List[CallRecord]:
        statement = (
            select(CallRecord)
            .where(CallRecord.campaign_id == campaign_id)
            .order_by(CallRecord.step, CallRecord.created_at)
        )
        return list(self.session.exec(statement).all())
