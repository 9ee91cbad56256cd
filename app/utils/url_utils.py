import logging
import re
from typing import Optional
from urllib.parse import urlparse, parse_qs

logger = logging.getLogger(__name__)

FEISHU_HOST_MARKER = "open.feishu.cn"

_IMAGES_PATH_RE = re.compile(r"/images/([^/?&#]+)")
_IMG_V3_RE = re.compile(r"img_v3_[\w-]+")
_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)

# Path segments that belong to the Feishu API itself, never to an image
_API_PATH_SEGMENTS = {"open-apis", "images", "bitable", "records"}

def is_feishu_url(url: Optional[str]) -> bool:
    return bool(url) and FEISHU_HOST_MARKER in url

def extract_images_path_key(url: Optional[str]) -> Optional[str]:
    """The key after `/images/` in a Feishu image URL."""
    match = _IMAGES_PATH_RE.search(url or "")
    return match.group(1) if match else None

def extract_image_id_from_url(image_url: Optional[str]) -> Optional[str]:
    """
    Extract the image id (Feishu image key or record id) from an image URL.

    Tried in order: the segment after ``/images/``, an ``img_v3_`` key anywhere
    in the URL, the ``id`` query parameter, a UUID, and finally the first path
    segment longer than 8 characters. Returns None when nothing matches.
    """
    if not image_url:
        return None
    logger.info(f"Extracting image id from URL: {image_url}")

    image_key = extract_images_path_key(image_url)
    if image_key:
        return image_key

    match = _IMG_V3_RE.search(image_url)
    if match:
        return match.group(0)

    parsed = None
    try:
        parsed = urlparse(image_url)
        id_from_query = parse_qs(parsed.query).get("id")
        if id_from_query and id_from_query[0]:
            return id_from_query[0]
    except ValueError as e:
        logger.warning(f"Failed to parse URL {image_url}: {e}")

    match = _UUID_RE.search(image_url)
    if match:
        return match.group(0)

    if parsed is not None and parsed.scheme:
        for part in parsed.path.split("/"):
            if len(part) > 8 and part not in _API_PATH_SEGMENTS:
                return part

    logger.info(f"No image id found in URL: {image_url}")
    return None
