import json
from typing import List, Optional

import redis

from outreach.config import HEALTH_SNAPSHOT_TTL_S
from outreach.schemas.health import HealthStatus

HEALTH_KEY_PREFIX = "worker:health:"


def job_channel(job_id: str) -> str:
    return f"jobs:{job_id}"


class EventService:
    def __init__(self, client: redis.Redis):
        self.r = client

    def publish(self, job_id: str, payload: dict):
        self.r.publish(job_channel(job_id), json.dumps(payload))

    def publish_health(self, status: HealthStatus):
        self.r.set(HEALTH_KEY_PREFIX + status.worker_id, status.model_dump_json(), ex=HEALTH_SNAPSHOT_TTL_S)

    def worker_health(self) -> List[dict]:
        out = []
        for key in sorted(self.r.scan_iter(match=HEALTH_KEY_PREFIX + "*")):
            raw: Optional[str] = self.r.get(key)
            if raw:
                out.append(json.loads(raw))
        return out
