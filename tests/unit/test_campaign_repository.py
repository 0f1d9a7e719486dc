import pytest
from sqlmodel import Session

from outreach.errors import InvalidJobError, PersistenceCorruptedError
from outreach.models.enums import CallOutcome, CampaignStatus
from outreach.repositories.campaign_repository import CallRecordRepository, CampaignRepository
from outreach.schemas.jobs import CallJob, JobResult
from outreach.services.record_store import SQLRecordStore


def seed(session, campaign_id="camp-1", contact_id="contact-1", phone="+15551234567"):
    repo = CampaignRepository(session)
    repo.create_contact(contact_id, phone, first_name="Ada", company="Analytical", details={"timezone": "UTC"})
    return repo.create(campaign_id, contact_id)


def test_create_campaign(session):
    campaign = seed(session)
    assert campaign.status == CampaignStatus.PENDING
    assert campaign.last_completed_step == 0
    assert campaign.next_step is None


def test_record_outcome_never_moves_backwards(session):
    repo = CampaignRepository(session)
    campaign = seed(session)

    repo.record_outcome(campaign, 3, CallOutcome.VOICEMAIL, 4)
    repo.record_outcome(campaign, 1, CallOutcome.NO_ANSWER, 2)

    updated = repo.get("camp-1")
    assert updated.last_completed_step == 3
    assert updated.last_call_outcome == CallOutcome.NO_ANSWER
    assert updated.next_step == 2
    assert updated.last_call_at is not None


def test_call_records_are_listed_by_step(session):
    seed(session)
    records = CallRecordRepository(session)
    records.create("camp-1-1", "camp-1", 1, CallOutcome.VOICEMAIL, True)
    records.create("camp-1-0", "camp-1", 0, CallOutcome.NO_ANSWER, True, error_log=None)

    assert [r.job_id for r in records.list_for_campaign("camp-1")] == ["camp-1-0", "camp-1-1"]


@pytest.mark.asyncio
async def test_record_store_reads_contact(engine):
    with Session(engine) as session:
        seed(session)
    store = SQLRecordStore(engine)

    contact = await store.get_contact("camp-1")

    assert contact["phone_number"] == "+15551234567"
    assert contact["first_name"] == "Ada"
    assert contact["timezone"] == "UTC"


@pytest.mark.asyncio
async def test_record_store_missing_campaign(engine):
    with pytest.raises(InvalidJobError):
        await SQLRecordStore(engine).get_contact("nope")


@pytest.mark.asyncio
async def test_record_store_missing_contact_is_corruption(engine):
    with Session(engine) as session:
        CampaignRepository(session).create("camp-2", "ghost")
    with pytest.raises(PersistenceCorruptedError):
        await SQLRecordStore(engine).get_contact("camp-2")


@pytest.mark.asyncio
async def test_record_store_writes_outcome(engine):
    with Session(engine) as session:
        seed(session)
    store = SQLRecordStore(engine)
    job = CallJob(campaign_id="camp-1", step=2, retry_count=1)
    result = JobResult(
        success=True,
        outcome=CallOutcome.VOICEMAIL,
        next_step=3,
        metadata={"duration_s": 41.5, "history": [{"from": "INITIALIZING", "to": "DIALING"}]},
    )

    await store.update_call_outcome("camp-1", 2, result.outcome, result.next_step)
    await store.create_call_record(job, result)
    await store.update_campaign_status("camp-1", CampaignStatus.IN_PROGRESS)

    with Session(engine) as session:
        campaign = CampaignRepository(session).get("camp-1")
        assert campaign.status == CampaignStatus.IN_PROGRESS
        assert campaign.last_completed_step == 2
        assert campaign.next_step == 3
        [record] = CallRecordRepository(session).list_for_campaign("camp-1")
        assert record.job_id == "camp-1-2"
        assert record.attempt == 1
        assert record.duration_s == 41.5
        assert record.state_history[0]["to"] == "DIALING"
