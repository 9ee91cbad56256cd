import logging
from typing import Optional

from fastapi import APIRouter, Query

from app.errors import ApiError, success_response
from app.schemas.edit_schemas import TaskStatusData
import app.task_manager as task_manager

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/status")
async def get_task_status_endpoint(task_id: Optional[str] = Query(default=None, alias="taskId")):
    """
    Polls the status of an edit task.

    Completed tasks carry the saved image id and URL; failed tasks carry the error.
    Both report when they finished.
    """
    if not task_id:
        raise ApiError("MISSING_TASK_ID", "Missing task id")

    task = await task_manager.get_task_by_id(task_id)
    if not task:
        logger.info(f"Status requested for unknown task {task_id}")
        raise ApiError("TASK_NOT_FOUND", "Task not found or expired", status_code=404)

    data = TaskStatusData(
        task_id=task.id,
        status=task.status,
        created_at=task.created_at,
        original_image_id=task.original_image_id,
        prompt=task.prompt,
    )
    if task.status == "completed":
        data.result_image_id = task.result_image_id
        data.result_image_url = task.result_image_url
        data.text_response = task.text_response
        data.completed_at = task.completed_at
    elif task.status == "failed":
        data.error = task.error
        data.completed_at = task.completed_at

    return success_response(data.model_dump(by_alias=True, exclude_none=True))
