from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import redis.asyncio as aioredis
from outreach.config import REDIS_URL
from outreach.services.event_service import job_channel

router = APIRouter()
r = aioredis.from_url(REDIS_URL, decode_responses=True)


@router.websocket("/ws/jobs/{job_id}")
async def ws(job_id: str, websocket: WebSocket):
    await websocket.accept()
    pubsub = r.pubsub()
    await pubsub.subscribe(job_channel(job_id))
    await websocket.send_json({"type": "WS_CONNECTED", "job_id": job_id})

    try:
        async for msg in pubsub.listen():
            if msg and msg.get("type") == "message":
                await websocket.send_text(msg["data"])
    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(job_channel(job_id))
        await pubsub.aclose()
