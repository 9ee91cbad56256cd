import logging
from typing import Optional

from app.config import settings
from app.database.base import TaskStore, StoreConfig

logger = logging.getLogger(__name__)

_task_store: Optional[TaskStore] = None

def create_task_store(config: StoreConfig) -> TaskStore:
    """Build the task store for `config.provider`."""
    if config.provider == "memory":
        from app.database.providers.memory_provider import MemoryTaskStore
        return MemoryTaskStore(config)
    if config.provider == "file":
        from app.database.providers.file_provider import FileTaskStore
        return FileTaskStore(config)
    if config.provider == "redis":
        from app.database.providers.redis_provider import RedisTaskStore
        return RedisTaskStore(config)
    raise ValueError(f"Unsupported task store provider: {config.provider}")

def get_task_store() -> TaskStore:
    """Process-wide task store built from settings on first use."""
    global _task_store
    if _task_store is None:
        config = StoreConfig(
            provider=settings.TASK_STORE_BACKEND,
            expiry_seconds=settings.TASK_EXPIRY_SECONDS,
            directory=settings.TASK_STORE_DIR,
            redis_url=settings.redis_url,
        )
        _task_store = create_task_store(config)
        logger.info(f"Using {config.provider} task store")
    return _task_store

def set_task_store(store: Optional[TaskStore]) -> None:
    global _task_store
    _task_store = store
