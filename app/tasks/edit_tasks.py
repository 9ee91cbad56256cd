import asyncio
import logging
from typing import Optional, Set

from fastapi import BackgroundTasks

from app.celery_worker import celery_app
from app.config import settings
from app.task_manager import process_edit_task

logger = logging.getLogger(__name__)

# Strong references to loop-scheduled jobs so they are not garbage collected mid-run
_running_jobs: Set[asyncio.Task] = set()

@celery_app.task(bind=True)
def process_edit_task_job(self, task_id: str):
    """Celery task running the edit pipeline for one task. State lives in the task store, not in Celery."""
    logger.info(f"Celery task {self.request.id}: processing edit task {task_id}")

    # Synchronous wrapper to run the async processing logic
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(process_edit_task(task_id))
    finally:
        loop.close()
    return {'task_id': task_id}

def dispatch_edit_task(task_id: str, background_tasks: Optional[BackgroundTasks] = None) -> None:
    """Hand a task to the configured runner. Returns immediately."""
    if settings.TASK_RUNNER == "celery":
        celery_task = process_edit_task_job.delay(task_id)
        logger.info(f"Sent edit task {task_id} to Celery as {celery_task.id}")
        return

    if background_tasks is not None:
        background_tasks.add_task(process_edit_task, task_id)
        logger.info(f"Scheduled edit task {task_id} as a background task")
        return

    job = asyncio.get_running_loop().create_task(process_edit_task(task_id))
    _running_jobs.add(job)
    job.add_done_callback(_running_jobs.discard)
    logger.info(f"Scheduled edit task {task_id} on the event loop")
