import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from app.config import settings
from app.errors import ApiError, success_response
from app.limiter import limiter, EDIT_RATE_LIMIT
from app.schemas.edit_schemas import UploadData
from app.utils.image_processing import get_image_format_from_bytes, mime_type_for_format, validate_image_format
import app.feishu_handler as feishu_handler

logger = logging.getLogger(__name__)
router = APIRouter()

def _detect_upload_mime_type(image_bytes: bytes) -> Optional[str]:
    if not validate_image_format(image_bytes):
        return None
    return mime_type_for_format(get_image_format_from_bytes(image_bytes))

@router.post("/upload")
@limiter.limit(EDIT_RATE_LIMIT)
async def upload_image_endpoint(
    request: Request,
    image: Optional[UploadFile] = File(default=None),
    prompt: str = Form(default=""),
):
    """Stores an uploaded original image in Feishu so it can be edited later."""
    if image is None:
        raise ApiError("MISSING_IMAGE", "No image file was provided")

    image_bytes = await image.read()
    if not image_bytes:
        raise ApiError("MISSING_IMAGE", "No image file was provided")
    if len(image_bytes) > settings.MAX_UPLOAD_BYTES:
        raise ApiError(
            "FILE_TOO_LARGE",
            f"Image exceeds the {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB upload limit",
            status_code=413,
        )

    mime_type = await run_in_threadpool(_detect_upload_mime_type, image_bytes)
    if mime_type is None:
        raise ApiError("INVALID_IMAGE_FORMAT", f"Unsupported image format: {image.content_type}")

    logger.info(f"Uploading {image.filename} ({len(image_bytes)} bytes, {mime_type}) to Feishu")
    try:
        saved = await feishu_handler.save_uploaded_image(image_bytes, mime_type, prompt)
    except Exception as e:
        logger.error(f"Upload of {image.filename} failed: {e}", exc_info=True)
        raise ApiError("UPLOAD_ERROR", "Failed to store the image", 500, details=str(e))

    data = UploadData(id=saved.id, image_url=saved.url, image_id=saved.file_token, file_token=saved.file_token)
    return success_response(data.model_dump(by_alias=True))
