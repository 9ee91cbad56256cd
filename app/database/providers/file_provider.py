import json
import logging
import os
import re
import tempfile
from typing import Optional, Dict, Any

from fastapi.concurrency import run_in_threadpool

from ..base import TaskStore, StoreConfig, now_ms

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

class FileTaskStore(TaskStore):
    """One JSON file per task under `config.directory`, shared between processes."""

    def __init__(self, config: StoreConfig):
        super().__init__(config)
        if not config.directory:
            raise ValueError("File task store requires a directory")
        self.directory = config.directory
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, task_id: str) -> Optional[str]:
        if not _SAFE_ID_RE.match(task_id or ""):
            return None
        return os.path.join(self.directory, f"{task_id}.json")

    def _read(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read task file {path}: {e}")
            return None

    def _write(self, path: str, task: Dict[str, Any]) -> None:
        # Write to a temp file then rename so readers never see a partial task
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(task, f)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _remove(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(task_id)
        if path is None:
            return None
        task = await run_in_threadpool(self._read, path)
        if task is None:
            return None
        if self.is_expired(task):
            await run_in_threadpool(self._remove, path)
            return None
        return task

    async def set(self, task_id: str, task: Dict[str, Any]) -> None:
        path = self._path(task_id)
        if path is None:
            raise ValueError(f"Invalid task id: {task_id}")
        await run_in_threadpool(self._write, path, task)

    async def delete(self, task_id: str) -> bool:
        path = self._path(task_id)
        if path is None:
            return False
        return await run_in_threadpool(self._remove, path)

    def _cleanup(self) -> int:
        now = now_ms()
        removed = 0
        for name in os.listdir(self.directory):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.directory, name)
            task = self._read(path)
            if task is None or self.is_expired(task, now):
                removed += int(self._remove(path))
        return removed

    async def cleanup_expired(self) -> int:
        removed = await run_in_threadpool(self._cleanup)
        if removed:
            logger.info(f"Removed {removed} expired task file(s) from {self.directory}")
        return removed
