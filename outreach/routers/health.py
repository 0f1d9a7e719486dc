from fastapi import APIRouter, Depends
from outreach.dependencies import get_event_service
from outreach.services.event_service import EventService

router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/health/workers")
def health_workers(events: EventService = Depends(get_event_service)):
    snapshots = events.worker_health()
    return {
        "workers": snapshots,
        "total": len(snapshots),
        "healthy": sum(1 for s in snapshots if s.get("healthy")),
    }
