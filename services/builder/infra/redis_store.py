"""
Redis store for builder sessions and per-workflow save locks.
"""

import redis
import json
from typing import Optional, Dict, Any
from shared.constants import REDIS_KEY_TTL_SECONDS, REDIS_URL, SAVE_LOCK_TTL_SECONDS


class RedisStore:
    """Redis client wrapper for builder session state"""

    def __init__(self, redis_url: Optional[str] = None, client=None):
        self.client = client or redis.Redis.from_url(redis_url or REDIS_URL, decode_responses=False)

    def store_session(self, session_id: str, state: Dict[str, Any]) -> None:
        key = f"builder:session:{session_id}"
        self.client.set(key, json.dumps(state))
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        data = self.client.get(f"builder:session:{session_id}")
        if data:
            return json.loads(data)
        return None

    def delete_session(self, session_id: str) -> bool:
        return bool(self.client.delete(f"builder:session:{session_id}"))


class RedisSaveGuard:
    """At most one save in flight per workflow, across API processes (SETNX lock)"""

    def __init__(self, client):
        self.client = client

    def acquire(self, workflow_id: int) -> bool:
        key = f"builder:workflow:{workflow_id}:save_lock"
        was_set = self.client.setnx(key, "1")
        if was_set:
            # TTL frees the lock if the holder dies mid-save
            self.client.expire(key, SAVE_LOCK_TTL_SECONDS)
            return True
        return False

    def release(self, workflow_id: int) -> None:
        self.client.delete(f"builder:workflow:{workflow_id}:save_lock")
