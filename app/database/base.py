import time
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from dataclasses import dataclass

@dataclass
class StoreConfig:
    """Task store configuration for different providers"""
    provider: str  # 'memory', 'file' or 'redis'
    expiry_seconds: int
    directory: Optional[str] = None
    redis_url: Optional[str] = None
    key_prefix: str = "edit_task:"

def now_ms() -> int:
    return int(time.time() * 1000)

class TaskStore(ABC):
    """Abstract base class for edit task stores.

    Tasks are stored as plain JSON-compatible dicts keyed by task id. A task whose
    `created_at` (epoch ms) is older than the configured expiry is treated as absent.
    """

    def __init__(self, config: StoreConfig):
        self.config = config

    def is_expired(self, task: Dict[str, Any], now: Optional[int] = None) -> bool:
        created_at = task.get("created_at") or 0
        return (now or now_ms()) - created_at > self.config.expiry_seconds * 1000

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Return the task, or None if missing or expired"""
        pass

    @abstractmethod
    async def set(self, task_id: str, task: Dict[str, Any]) -> None:
        """Insert or replace a task"""
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """Remove a task; True if it existed"""
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired tasks and return how many were removed"""
        pass

    async def close(self) -> None:
        """Release provider resources"""
        pass
