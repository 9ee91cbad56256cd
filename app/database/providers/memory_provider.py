import copy
import logging
from typing import Optional, Dict, Any

from ..base import TaskStore, StoreConfig, now_ms

logger = logging.getLogger(__name__)

class MemoryTaskStore(TaskStore):
    """In-process dict store. Only valid with the background task runner."""

    def __init__(self, config: StoreConfig):
        super().__init__(config)
        self._tasks: Dict[str, Dict[str, Any]] = {}

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if self.is_expired(task):
            self._tasks.pop(task_id, None)
            return None
        return copy.deepcopy(task)

    async def set(self, task_id: str, task: Dict[str, Any]) -> None:
        self._tasks[task_id] = copy.deepcopy(task)

    async def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    async def cleanup_expired(self) -> int:
        now = now_ms()
        expired = [task_id for task_id, task in self._tasks.items() if self.is_expired(task, now)]
        for task_id in expired:
            del self._tasks[task_id]
        if expired:
            logger.info(f"Removed {len(expired)} expired task(s) from memory store")
        return len(expired)
