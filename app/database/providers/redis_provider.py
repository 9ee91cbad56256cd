import json
import logging
from typing import Optional, Dict, Any

import redis
from fastapi.concurrency import run_in_threadpool

from ..base import TaskStore, StoreConfig

logger = logging.getLogger(__name__)

class RedisTaskStore(TaskStore):
    """Tasks as JSON strings with a Redis TTL, so expiry is handled by Redis itself."""

    def __init__(self, config: StoreConfig, client: Optional[redis.Redis] = None):
        super().__init__(config)
        if client is None:
            if not config.redis_url:
                raise ValueError("Redis task store requires a redis_url")
            client = redis.Redis.from_url(config.redis_url, decode_responses=True)
        self.client = client

    def _key(self, task_id: str) -> str:
        return f"{self.config.key_prefix}{task_id}"

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        raw = await run_in_threadpool(self.client.get, self._key(task_id))
        if raw is None:
            return None
        try:
            task = json.loads(raw)
        except ValueError as e:
            logger.error(f"Corrupt task payload for {task_id}: {e}")
            return None
        if self.is_expired(task):
            return None
        return task

    async def set(self, task_id: str, task: Dict[str, Any]) -> None:
        await run_in_threadpool(
            self.client.set, self._key(task_id), json.dumps(task), ex=self.config.expiry_seconds
        )

    async def delete(self, task_id: str) -> bool:
        deleted = await run_in_threadpool(self.client.delete, self._key(task_id))
        return bool(deleted)

    async def cleanup_expired(self) -> int:
        # Keys expire on their own; nothing to sweep
        return 0

    async def close(self) -> None:
        await run_in_threadpool(self.client.close)
