import uuid
from typing import Optional

import redis

from outreach.config import VISIBILITY_TIMEOUT_S

RELEASE_LUA = """
local lease_key = KEYS[1]
local token = ARGV[1]
if redis.call("GET", lease_key) == token then
    return redis.call("DEL", lease_key)
end
return 0
"""


class JobLease:
    """Cross-worker guard so one job id is never processed twice at the same time."""

    def __init__(self, client: redis.Redis, ttl_s: int = VISIBILITY_TIMEOUT_S):
        self.r = client
        self.ttl_s = ttl_s

    @staticmethod
    def key(job_id: str) -> str:
        return f"lease:job:{job_id}"

    def acquire(self, job_id: str) -> Optional[str]:
        token = str(uuid.uuid4())
        if self.r.set(self.key(job_id), token, nx=True, ex=self.ttl_s):
            return token
        return None

    def release(self, job_id: str, token: str) -> bool:
        # only the holder may release; an expired lease may belong to someone else now
        return bool(self.r.eval(RELEASE_LUA, 1, self.key(job_id), token))
