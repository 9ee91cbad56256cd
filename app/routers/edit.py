import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query, Request

from app.ai_clients.gemini_client import GeminiAPIError
from app.config import settings
from app.errors import ApiError, TaskProcessingError, success_response, error_response
from app.limiter import limiter, EDIT_RATE_LIMIT
from app.schemas.edit_schemas import (
    EditStartRequest,
    EditProcessRequest,
    EditSaveRequest,
    EditStatusData,
    ProcessResultData,
    TaskResult,
)
from app.tasks.edit_tasks import dispatch_edit_task
from app.utils.url_utils import extract_image_id_from_url, is_feishu_url
import app.feishu_handler as feishu_handler
import app.task_manager as task_manager

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_MESSAGES = {
    "pending": "Task is waiting to be processed",
    "processing": "Task is being processed",
    "completed": "Task completed",
    "failed": "Task failed",
}

def _validate_start_request(request_data: EditStartRequest) -> str:
    """Checks prompt and image URL; returns the extracted image id."""
    if not request_data.prompt:
        raise ApiError("MISSING_PROMPT", "Missing prompt parameter")
    if not request_data.image_url:
        raise ApiError("MISSING_IMAGE_URL", "Missing image URL parameter")
    if not is_feishu_url(request_data.image_url):
        raise ApiError("INVALID_URL_FORMAT", "Only Feishu image URLs are supported")

    image_id = extract_image_id_from_url(request_data.image_url)
    if not image_id:
        raise ApiError("INVALID_IMAGE_URL", "Could not extract an image id from the URL")
    return image_id

async def _require_task(task_id: Optional[str]):
    if not task_id:
        raise ApiError("MISSING_TASK_ID", "Missing task id")
    task = await task_manager.get_task_by_id(task_id)
    if not task:
        raise ApiError("TASK_NOT_FOUND", "Task not found", status_code=404)
    return task

@router.get("/extract-image-id")
async def extract_image_id_endpoint(url: Optional[str] = Query(default=None)):
    """Extracts the image id from an image URL."""
    if not url:
        raise ApiError("MISSING_URL", "Missing image URL parameter")
    image_id = extract_image_id_from_url(url)
    if not image_id:
        raise ApiError("INVALID_URL", "Could not extract an image id from the URL")
    # This endpoint returns the id at the top level, not under `data`
    return {"success": True, "imageId": image_id}

@router.post("/start")
@limiter.limit(EDIT_RATE_LIMIT)
async def start_edit_endpoint(request: Request, request_data: EditStartRequest, background_tasks: BackgroundTasks):
    """Creates an edit task and returns its id immediately; processing runs in the background."""
    logger.info(f"Received /api/edit/start for image URL: {request_data.image_url}")
    image_id = _validate_start_request(request_data)

    task = await task_manager.create_edit_task(
        original_image_id=image_id,
        prompt=request_data.prompt,
        image_url=request_data.image_url,
    )
    if request_data.auto_process:
        dispatch_edit_task(task.id, background_tasks)

    return success_response({"taskId": task.id, "status": task.status})

@router.post("/process")
@limiter.limit(EDIT_RATE_LIMIT)
async def process_edit_endpoint(request: Request, request_data: EditProcessRequest):
    """
    Runs fetch + Gemini + parse synchronously and returns the edited image as base64.

    Image id and prompt default to those of the task. The processed image is kept on the
    task until /api/edit/save stores it in Feishu.
    """
    task = await task_manager.get_task_by_id(request_data.task_id) if request_data.task_id else None
    image_id = request_data.image_id or (task.original_image_id if task else None)
    prompt = request_data.prompt or (task.prompt if task else None)

    if not image_id:
        raise ApiError("MISSING_IMAGE_ID", "Missing image id")
    if not prompt:
        raise ApiError("MISSING_PROMPT", "Missing prompt")

    task_id = task.id if task else request_data.task_id
    logger.info(f"Processing image {image_id} for task {task_id}")
    if task:
        await task_manager.update_task_status(task.id, "processing")

    try:
        result = await task_manager.run_edit(image_id, prompt, task.original_image_token if task else None)
    except GeminiAPIError as e:
        logger.error(f"Gemini call failed for task {task_id}: {e}")
        await _fail_task(task, e, "GEMINI_API_ERROR")
        raise ApiError("GEMINI_API_ERROR", "Gemini API call failed", 500, details=str(e), extra={"taskId": task_id})
    except TaskProcessingError as e:
        logger.error(f"No usable image for task {task_id}: {e}")
        await _fail_task(task, e, "PARSE_ERROR")
        raise ApiError("PARSE_ERROR", f"Error parsing API response: {e}", 500, extra={"taskId": task_id})
    except Exception as e:
        logger.error(f"Processing failed for task {task_id}: {e}", exc_info=True)
        await _fail_task(task, e, "PROCESSING_ERROR")
        raise ApiError("PROCESSING_ERROR", "Error while processing the image", 500, details=str(e), extra={"taskId": task_id})

    if task:
        await task_manager.update_task_status(
            task.id,
            "processing",
            processed_image_data=result.image_data,
            processed_mime_type=result.mime_type,
            text_response=result.text_response,
        )

    data = ProcessResultData(
        task_id=task_id,
        processed_image_data=result.image_data,
        response_type=result.mime_type,
        text=result.text_response or "Image processing completed",
    )
    return success_response(data.model_dump(by_alias=True))

async def _fail_task(task, exc: Exception, code: str) -> None:
    if not task:
        return
    error = task_manager.task_error_from_exception(exc, default_code=code)
    error.code = code
    await task_manager.update_task_status(task.id, "failed", error=error)

@router.get("/process-result")
async def process_result_endpoint(task_id: Optional[str] = Query(default=None, alias="taskId")):
    """Returns the processed image of a task once /process (or the background run) has produced one."""
    task = await _require_task(task_id)

    if task.processed_image_data:
        data = ProcessResultData(
            task_id=task.id,
            processed_image_data=task.processed_image_data,
            response_type=task.processed_mime_type or "image/png",
            text=task.text_response,
        )
        return success_response(data.model_dump(by_alias=True))

    if task.status == "completed":
        return success_response({
            "taskId": task.id,
            "status": task.status,
            "result": TaskResult(id=task.result_image_id, url=task.result_image_url, text_response=task.text_response).model_dump(by_alias=True),
        })

    if task.status == "failed" and task.error:
        return error_response(task.error.code, task.error.message, 500, taskId=task.id)

    raise ApiError("RESULT_NOT_READY", "The processing result is not ready yet, try again later", status_code=404)

@router.post("/save")
async def save_edit_endpoint(request_data: EditSaveRequest):
    """Stores the processed image of a task in Feishu and completes the task."""
    task = await _require_task(request_data.task_id)

    image_data = request_data.processed_image_data or task.processed_image_data
    mime_type = request_data.response_type or task.processed_mime_type or "image/png"
    if not image_data:
        raise ApiError("NO_PROCESSED_IMAGE", "The task has no processed image data")

    try:
        original_record = await feishu_handler.get_image_record_by_id(task.original_image_id)
        if not original_record:
            original_record = feishu_handler.ImageRecord(id=task.original_image_id)
        saved = await feishu_handler.save_edited_image(image_data, task.prompt, mime_type, original_record)
    except Exception as e:
        logger.error(f"Failed to save image for task {task.id}: {e}", exc_info=True)
        error = task_manager.task_error_from_exception(e)
        error.code = "SAVE_ERROR"
        error.message = "Error while saving the image"
        await task_manager.update_task_status(task.id, "failed", error=error)
        raise ApiError("SAVE_ERROR", "Error while saving the image", 500, details=str(e))

    await task_manager.update_task_status(
        task.id,
        "completed",
        result_image_id=saved.id,
        result_image_url=saved.url,
        processed_image_data=None,
        processed_mime_type=None,
    )
    return success_response({"taskId": task.id, "status": "completed", "id": saved.id, "url": saved.url})

@router.get("/status")
async def edit_status_endpoint(task_id: Optional[str] = Query(default=None, alias="taskId")):
    """Current status of an edit task."""
    task = await _require_task(task_id)

    data = EditStatusData(task_id=task.id, status=task.status, message=STATUS_MESSAGES[task.status])
    if task.status == "completed":
        data.result = TaskResult(id=task.result_image_id, url=task.result_image_url, text_response=task.text_response)
    if task.status == "failed":
        data.error = task.error
    return success_response(data.model_dump(by_alias=True, exclude_none=True))

@router.post("")
@limiter.limit(EDIT_RATE_LIMIT)
async def legacy_edit_endpoint(request: Request, request_data: EditStartRequest):
    """
    Backward compatible one-shot edit.

    Starts a task and waits briefly for it. If the task does not finish in time a 202
    with the task id is returned so the client can poll /api/task/status.
    """
    logger.info("Legacy /api/edit request, forwarding to the task flow")
    image_id = _validate_start_request(request_data)

    task = await task_manager.create_edit_task(
        original_image_id=image_id,
        prompt=request_data.prompt,
        image_url=request_data.image_url,
    )
    dispatch_edit_task(task.id)

    for attempt in range(1, settings.EDIT_LEGACY_MAX_POLLS + 1):
        await asyncio.sleep(settings.EDIT_LEGACY_POLL_INTERVAL_SECONDS)
        current = await task_manager.get_task_by_id(task.id)
        status = current.status if current else None
        logger.info(f"Legacy edit task {task.id} status: {status}, poll {attempt}")

        if current and status == "completed" and current.result_image_url:
            return success_response({
                "imageUrl": current.result_image_url,
                "imageId": current.result_image_id,
                "taskId": task.id,
            })
        if status == "failed":
            error = current.error
            return error_response(
                error.code if error else "TASK_FAILED",
                error.message if error else "Task processing failed",
                500,
                details=error.details if error else None,
            )

    return error_response(
        "PROCESSING_TIMEOUT",
        "Processing is taking longer than expected, query the result later with the task id",
        202,
        taskId=task.id,
    )
