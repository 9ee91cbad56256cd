import base64
import binascii
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from app.config import settings
from app.feishu_client import feishu_client, FeishuError
from app.utils.image_processing import extension_for_mime_type

logger = logging.getLogger(__name__)

@dataclass
class ImageRecord:
    """A row of the image lineage table."""
    id: str
    url: Optional[str] = None
    file_token: Optional[str] = None
    prompt: Optional[str] = None
    timestamp: Optional[int] = None
    parent_id: Optional[str] = None
    root_parent_id: Optional[str] = None
    type: Optional[str] = None
    record_id: Optional[str] = None

    @classmethod
    def from_fields(cls, fields: dict) -> "ImageRecord":
        timestamp = fields.get("timestamp")
        try:
            timestamp = int(timestamp) if timestamp is not None else None
        except (TypeError, ValueError):
            timestamp = None
        return cls(
            id=str(fields.get("id") or ""),
            url=fields.get("url"),
            file_token=fields.get("fileToken"),
            prompt=fields.get("prompt"),
            timestamp=timestamp,
            parent_id=fields.get("parentId"),
            root_parent_id=fields.get("rootParentId"),
            type=fields.get("type"),
            record_id=fields.get("record_id"),
        )

    def to_fields(self) -> dict:
        fields = {
            "id": self.id,
            "url": self.url,
            "fileToken": self.file_token,
            "prompt": self.prompt,
            "timestamp": self.timestamp,
            "parentId": self.parent_id,
            "rootParentId": self.root_parent_id,
            "type": self.type,
        }
        return {key: value for key, value in fields.items() if value is not None}

@dataclass
class SavedImage:
    id: str
    url: str
    file_token: str

def looks_like_image_key(image_id: str) -> bool:
    return bool(image_id) and image_id.startswith("img_")

async def get_image_record_by_id(image_id: str) -> Optional[ImageRecord]:
    """
    Looks up the image record whose `id` or `fileToken` equals `image_id`.

    Without a configured record table, or when nothing matches, a Feishu image key
    still resolves to a synthesized record pointing at that key.
    """
    if settings.bitable_configured:
        conditions = [
            {"field_name": "id", "operator": "is", "value": [image_id]},
            {"field_name": "fileToken", "operator": "is", "value": [image_id]},
        ]
        records = await feishu_client.search_records(conditions, conjunction="or", page_size=1)
        if records:
            record = ImageRecord.from_fields(records[0])
            logger.info(f"Found image record {record.id} (record_id={record.record_id}) for {image_id}")
            return record
        logger.info(f"No image record found for {image_id}")

    if looks_like_image_key(image_id):
        return ImageRecord(id=image_id, file_token=image_id, url=feishu_client.image_url(image_id))
    return None

async def fetch_image_for_edit(image_id: str, file_token: Optional[str] = None) -> Tuple[str, str, ImageRecord]:
    """Fetches the source image of an edit. Returns (base64 data, MIME type, record)."""
    logger.info(f"Fetching image from Feishu, id: {image_id}")
    try:
        record = await get_image_record_by_id(image_id)
        if not record:
            raise FeishuError(f"Image record not found: {image_id}", code="IMAGE_NOT_FOUND")

        token = file_token or record.file_token
        if not token:
            raise FeishuError(f"Image record {image_id} has no file token", code="IMAGE_NOT_FOUND")

        image_bytes, mime_type = await feishu_client.download_image(token)
        return base64.b64encode(image_bytes).decode('utf-8'), mime_type, record
    except Exception as e:
        logger.error(f"Failed to fetch image data for {image_id}: {e}", exc_info=True)
        raise FeishuError(f"Failed to fetch image data: {e}", code=getattr(e, "code", "FETCH_IMAGE_ERROR")) from e

async def _store_image(image_bytes: bytes, mime_type: str, prompt: str, parent_id: Optional[str], root_parent_id: Optional[str], image_type: str) -> SavedImage:
    image_id = str(uuid.uuid4())
    file_name = f"{image_id}.{extension_for_mime_type(mime_type)}"

    file_token = await feishu_client.upload_image(image_bytes, file_name, mime_type)
    url = feishu_client.image_url(file_token)

    record = ImageRecord(
        id=image_id,
        url=url,
        file_token=file_token,
        prompt=prompt,
        timestamp=int(time.time() * 1000),
        parent_id=parent_id,
        root_parent_id=root_parent_id,
        type=image_type,
    )
    if settings.bitable_configured:
        await feishu_client.create_record(record.to_fields())
    else:
        logger.warning(f"Feishu record table not configured, record for image {image_id} not saved")

    return SavedImage(id=image_id, url=url, file_token=file_token)

async def save_edited_image(image_data_b64: str, prompt: str, mime_type: str, original_record: ImageRecord) -> SavedImage:
    """Uploads an edited image and records it as a child of `original_record`."""
    try:
        image_bytes = base64.b64decode(image_data_b64)
    except (binascii.Error, ValueError) as e:
        raise FeishuError(f"Edited image data is not valid base64: {e}", code="INVALID_IMAGE_DATA") from e

    # Lineage uses internal record ids, not file tokens
    parent_id = original_record.id
    root_parent_id = original_record.root_parent_id or parent_id
    image_type = "uploaded" if original_record.type == "uploaded" else "generated"

    logger.info(f"Saving edited image (parent {parent_id}, root {root_parent_id}) to Feishu")
    saved = await _store_image(image_bytes, mime_type, prompt, parent_id, root_parent_id, image_type)
    logger.info(f"Saved edited image {saved.id} at {saved.url}")
    return saved

async def save_uploaded_image(image_bytes: bytes, mime_type: str, prompt: str) -> SavedImage:
    """Stores a user-uploaded original image."""
    saved = await _store_image(image_bytes, mime_type, prompt, None, None, "uploaded")
    logger.info(f"Saved uploaded image {saved.id} at {saved.url}")
    return saved
