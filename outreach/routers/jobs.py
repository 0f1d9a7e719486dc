import re
from typing import List

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException, Response

from outreach.celery_app import celery_app
from outreach.dependencies import get_failed_store, get_producer
from outreach.errors import QueueError
from outreach.schemas.jobs import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    FailedJob,
    JobStatusResponse,
)
from outreach.services.producer import CallProducer, FailedJobStore

router = APIRouter()

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+-\d+$")


@router.post("/jobs", status_code=201, response_model=EnqueueJobResponse)
def enqueue_job(req: EnqueueJobRequest, response: Response, producer: CallProducer = Depends(get_producer)):
    try:
        job_id, created = producer.enqueue(req.campaign_id, req.step, delay=req.delay_s)
    except QueueError as e:
        raise HTTPException(503, str(e))

    if not created:
        response.status_code = 200

    return EnqueueJobResponse(
        success=True,
        job_id=job_id,
        status="PENDING" if created else "ALREADY_SUBMITTED",
        duplicate=not created,
        monitor_url=f"/ws/jobs/{job_id}",
    )


@router.get("/jobs/failed", response_model=List[FailedJob])
def list_failed_jobs(failed: FailedJobStore = Depends(get_failed_store)):
    return failed.list()


@router.post("/jobs/{job_id}/retry")
def retry_failed_job(
    job_id: str,
    producer: CallProducer = Depends(get_producer),
    failed: FailedJobStore = Depends(get_failed_store),
):
    try:
        new_id = producer.retry_failed(failed, job_id)
    except QueueError as e:
        raise HTTPException(503, str(e))
    if new_id is None:
        raise HTTPException(404, "Failed job not found")
    return {"success": True, "job_id": new_id, "status": "PENDING"}


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str):
    if not JOB_ID_PATTERN.match(job_id):
        raise HTTPException(400, "Malformed job id")

    res = AsyncResult(job_id, app=celery_app)
    state = res.state
    info = res.info

    if state == "PROGRESS":
        return JobStatusResponse(job_id=job_id, state=state, progress=info if isinstance(info, dict) else None)
    if state == "SUCCESS":
        return JobStatusResponse(job_id=job_id, state=state, result=info if isinstance(info, dict) else None)
    if state in ("FAILURE", "RETRY"):
        return JobStatusResponse(job_id=job_id, state=state, error=str(info) if info else None)
    return JobStatusResponse(job_id=job_id, state=state)
