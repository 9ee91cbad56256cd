"""
Edit task manager.

Tracks edit tasks (pending -> processing -> completed | failed) in the configured
task store and runs the edit pipeline: fetch the source image from Feishu, ask
Gemini for the edit, parse the response, save the result back to Feishu.
"""

import base64
import binascii
import logging
import traceback
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from app.config import settings
from app.database.base import now_ms
from app.database.store import get_task_store
from app.schemas.edit_schemas import EditTask, TaskError, TaskStatus
from app.errors import TaskProcessingError
from app.ai_clients.gemini_client import gemini_client
from app.ai_clients.gemini_response import parse_gemini_response
from app.utils.image_processing import downscale_to_max_dimension
import app.feishu_handler as feishu_handler

logger = logging.getLogger(__name__)

FINAL_STATUSES = ("completed", "failed")

@dataclass
class EditResult:
    image_data: str # base64
    mime_type: str
    text_response: Optional[str]
    image_record: feishu_handler.ImageRecord

async def create_edit_task(
    original_image_id: str,
    prompt: str,
    original_image_token: Optional[str] = None,
    image_url: Optional[str] = None,
) -> EditTask:
    task = EditTask(
        id=str(uuid.uuid4()),
        status="pending",
        original_image_id=original_image_id,
        original_image_token=original_image_token,
        image_url=image_url,
        prompt=prompt,
        created_at=now_ms(),
    )
    await get_task_store().set(task.id, task.model_dump())
    logger.info(f"Created edit task {task.id} for image {original_image_id}")
    return task

async def get_task_by_id(task_id: str) -> Optional[EditTask]:
    if not task_id:
        return None
    data = await get_task_store().get(task_id)
    return EditTask.model_validate(data) if data else None

async def update_task_status(task_id: str, status: TaskStatus, **data) -> bool:
    """Set a task's status and merge `data` into it. False if the task does not exist."""
    store = get_task_store()
    current = await store.get(task_id)
    if current is None:
        logger.warning(f"update_task_status: task {task_id} not found")
        return False

    current["status"] = status
    if status in FINAL_STATUSES:
        current["completed_at"] = now_ms()
    for key, value in data.items():
        if isinstance(value, TaskError):
            value = value.model_dump()
        current[key] = value

    task = EditTask.model_validate(current)
    await store.set(task_id, task.model_dump())
    logger.info(f"Task {task_id} -> {status}")
    return True

async def cleanup_expired_tasks() -> int:
    return await get_task_store().cleanup_expired()

def task_error_from_exception(exc: Exception, default_code: str = "PROCESSING_ERROR") -> TaskError:
    code = getattr(exc, "code", None)
    return TaskError(
        code=code if isinstance(code, str) and code else default_code,
        message=str(exc) or "An error occurred while processing the task",
        details="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )

async def run_edit(image_id: str, prompt: str, file_token: Optional[str] = None) -> EditResult:
    """Fetch, edit and parse. Raises TaskProcessingError when no image comes back."""
    image_b64, mime_type, image_record = await feishu_handler.fetch_image_for_edit(image_id, file_token)
    if not image_b64 or not mime_type:
        raise TaskProcessingError("FETCH_IMAGE_ERROR", "Could not get the original image data")

    image_b64, mime_type = await run_in_threadpool(_prepare_input_image, image_b64, mime_type)

    logger.info(f"Calling Gemini to edit image {image_id}")
    response = await gemini_client.edit_image(prompt, image_b64, mime_type)

    parsed = parse_gemini_response(response)
    if not parsed.has_image:
        detail = parsed.text_response or "No image was generated"
        if parsed.model_text:
            detail = f"{detail} (model said: {parsed.model_text})"
        if parsed.block_reason:
            detail = f"{detail} [reason: {parsed.block_reason}]"
        raise TaskProcessingError("NO_IMAGE_GENERATED", detail)

    return EditResult(
        image_data=parsed.image_data,
        mime_type=parsed.mime_type,
        text_response=parsed.text_response,
        image_record=image_record,
    )

def _prepare_input_image(image_b64: str, mime_type: str) -> Tuple[str, str]:
    try:
        image_bytes = base64.b64decode(image_b64)
        resized, resized_mime = downscale_to_max_dimension(image_bytes, settings.MAX_INPUT_DIMENSION)
    except (binascii.Error, ValueError, OSError) as e:
        logger.warning(f"Could not inspect source image, sending as-is: {e}")
        return image_b64, mime_type
    if resized is image_bytes:
        return image_b64, mime_type
    return base64.b64encode(resized).decode('utf-8'), resized_mime

async def process_edit_task(task_id: str) -> None:
    """Run a task end to end. Never raises; failures are recorded on the task."""
    task = await get_task_by_id(task_id)
    if not task:
        logger.error(f"process_edit_task: task {task_id} not found")
        return

    try:
        await update_task_status(task_id, "processing")
        logger.info(f"process_edit_task: starting task {task_id}, image: {task.original_image_id}, prompt: {task.prompt}")

        result = await run_edit(task.original_image_id, task.prompt, task.original_image_token)

        logger.info(f"process_edit_task: saving generated image for task {task_id} to Feishu")
        saved = await feishu_handler.save_edited_image(
            result.image_data, task.prompt, result.mime_type, result.image_record
        )

        await update_task_status(
            task_id,
            "completed",
            result_image_id=saved.id,
            result_image_url=saved.url,
            text_response=result.text_response,
        )
        logger.info(f"process_edit_task: task {task_id} completed")
    except Exception as e:
        logger.error(f"process_edit_task: task {task_id} failed: {e}", exc_info=True)
        try:
            await update_task_status(task_id, "failed", error=task_error_from_exception(e))
        except Exception as update_exc:
            logger.error(f"process_edit_task: CRITICAL - could not mark task {task_id} failed: {update_exc}", exc_info=True)
