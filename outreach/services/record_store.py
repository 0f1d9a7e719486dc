import asyncio
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from outreach.errors import InvalidJobError, PersistenceCorruptedError
from outreach.models.enums import CallOutcome, CampaignStatus
from outreach.repositories.campaign_repository import CallRecordRepository, CampaignRepository
from outreach.schemas.jobs import CallJob, JobResult


class RecordStore(Protocol):
    async def get_contact(self, campaign_id: str) -> Dict[str, Any]: ...

    async def update_campaign_status(self, campaign_id: str, status: CampaignStatus) -> None: ...

    async def update_call_outcome(
        self, campaign_id: str, step: int, outcome: CallOutcome, next_step: Optional[int]
    ) -> None: ...

    async def create_call_record(self, job: CallJob, result: JobResult) -> None: ...


class SQLRecordStore:
    """RecordStore over the SQLModel tables; each call gets its own session in a worker thread."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _campaign(self, repo: CampaignRepository, campaign_id: str):
        campaign = repo.get(campaign_id)
        if campaign is None:
            raise InvalidJobError(f"Campaign {campaign_id} not found")
        return campaign

    def _get_contact(self, campaign_id: str) -> Dict[str, Any]:
        with Session(self.engine) as session:
            repo = CampaignRepository(session)
            campaign = self._campaign(repo, campaign_id)
            contact = repo.get_contact(campaign.contact_id)
            if contact is None:
                raise PersistenceCorruptedError(
                    f"Campaign {campaign_id} references missing contact {campaign.contact_id}"
                )
            if not contact.phone_number:
                raise InvalidJobError(f"Contact {contact.id} has no phone number")
            return {
                **(contact.details or {}),
                "contact_id": contact.id,
                "phone_number": contact.phone_number,
                "first_name": contact.first_name,
                "last_name": contact.last_name,
                "company": contact.company,
                "email": contact.email,
            }

    def _update_campaign_status(self, campaign_id: str, status: CampaignStatus) -> None:
        with Session(self.engine) as session:
            repo = CampaignRepository(session)
            repo.set_status(self._campaign(repo, campaign_id), status)

    def _update_call_outcome(
        self, campaign_id: str, step: int, outcome: CallOutcome, next_step: Optional[int]
    ) -> None:
        with Session(self.engine) as session:
            repo = CampaignRepository(session)
            repo.record_outcome(self._campaign(repo, campaign_id), step, outcome, next_step)

    def _create_call_record(self, job: CallJob, result: JobResult) -> None:
        with Session(self.engine) as session:
            CallRecordRepository(session).create(
                job_id=job.job_id,
                campaign_id=job.campaign_id,
                step=job.step,
                attempt=job.retry_count,
                outcome=result.outcome,
                success=result.success,
                duration_s=result.metadata.get("duration_s"),
                state_history=result.metadata.get("history", []),
                error_code=result.error_code.value if result.error_code else None,
                error_log=result.error,
            )

    async def get_contact(self, campaign_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get_contact, campaign_id)

    async def update_campaign_status(self, campaign_id: str, status: CampaignStatus) -> None:
        await asyncio.to_thread(self._update_campaign_status, campaign_id, status)

    async def update_call_outcome(
        self, campaign_id: str, step: int, outcome: CallOutcome, next_step: Optional[int]
    ) -> None:
        await asyncio.to_thread(self._update_call_outcome, campaign_id, step, outcome, next_step)

    async def create_call_record(self, job: CallJob, result: JobResult) -> None:
        await asyncio.to_thread(self._create_call_record, job, result)
