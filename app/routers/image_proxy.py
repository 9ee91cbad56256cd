import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import APIRouter, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from app.config import settings
from app.feishu_client import feishu_client, FeishuAuthError
from app.utils.url_utils import extract_images_path_key, is_feishu_url

logger = logging.getLogger(__name__)
router = APIRouter()

FALLBACK_PLACEHOLDER_SVG = (
    b'<svg width="400" height="300" xmlns="http://www.w3.org/2000/svg">'
    b'<rect width="400" height="300" fill="#f0f0f0"/>'
    b'<text x="50%" y="50%" font-family="Arial" font-size="20" text-anchor="middle" fill="#999">Image unavailable</text>'
    b'</svg>'
)

# Headers some Feishu hosts expect before serving an image to a third party
BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36",
    "Referer": "https://applink.feishu.cn/",
    "Origin": "https://applink.feishu.cn",
}

# Injected in tests
proxy_transport: Optional[httpx.AsyncBaseTransport] = None

def _read_placeholder() -> bytes:
    path = Path(settings.PLACEHOLDER_IMAGE_PATH)
    if not path.is_absolute() and not path.exists():
        path = Path(__file__).resolve().parent.parent / "static" / path.name
    try:
        return path.read_bytes()
    except OSError as e:
        logger.warning(f"Placeholder image not readable at {path}: {e}")
        return FALLBACK_PLACEHOLDER_SVG

async def placeholder_response(error: str, max_age: int, details: Optional[str] = None) -> Response:
    """The placeholder SVG, served with 200 so <img> tags render something."""
    headers = {
        "Cache-Control": f"public, max-age={max_age}",
        "X-Error": error,
    }
    if details:
        # Header values must stay on one latin-1 line
        headers["X-Error-Details"] = details.replace("\n", " ").encode("latin-1", "replace").decode("latin-1")[:200]
    content = await run_in_threadpool(_read_placeholder)
    return Response(content=content, media_type="image/svg+xml", headers=headers)

@router.get("/image-proxy")
async def feishu_image_proxy_endpoint(url: Optional[str] = Query(default=None)):
    """
    Serves a Feishu image to the browser using the app's tenant token.

    Never returns a JSON error: any failure yields the placeholder image with an
    X-Error header describing what went wrong.
    """
    success_max_age = settings.IMAGE_PROXY_CACHE_SECONDS
    error_max_age = settings.IMAGE_PROXY_ERROR_CACHE_SECONDS
    try:
        if not url:
            return await placeholder_response("Missing url parameter", success_max_age)
        logger.info(f"Image proxy request: {url}")

        if not is_feishu_url(url):
            return await placeholder_response("Only Feishu image URLs are supported", success_max_age)

        image_key = extract_images_path_key(url)
        if not image_key:
            logger.error(f"Could not extract image id from {url}")
            return await placeholder_response("Could not extract image id", success_max_age)

        try:
            await feishu_client.get_tenant_access_token()
        except FeishuAuthError as e:
            logger.error(f"Image proxy could not get a Feishu token: {e}")
            return await placeholder_response("Failed to get access token", success_max_age)

        try:
            image_bytes, content_type = await feishu_client.download_image(image_key)
        except Exception as e:
            logger.error(f"Image proxy download failed for {image_key}: {e}")
            return await placeholder_response("Failed to download image", error_max_age, details=str(e))

        logger.info(f"Image proxy served {image_key} ({content_type})")
        return Response(
            content=image_bytes,
            media_type=content_type,
            headers={
                "Cache-Control": f"public, max-age={success_max_age}",
                "Access-Control-Allow-Origin": "*",
                "X-Image-Id": image_key,
            },
        )
    except Exception as e:
        logger.error(f"Unexpected image proxy error: {e}", exc_info=True)
        return await placeholder_response("Internal server error", error_max_age)

@router.get("/proxy-image")
async def generic_image_proxy_endpoint(url: Optional[str] = Query(default=None)):
    """Fetches any image URL server-side with browser-like headers."""
    if not url:
        return JSONResponse(status_code=400, content={"error": "An image URL is required"})

    logger.info(f"Proxying image request: {url}")
    try:
        async with httpx.AsyncClient(
            timeout=settings.PROXY_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=proxy_transport,
        ) as client:
            response = await client.get(url, headers=BROWSER_HEADERS)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Proxy image request failed for {url}: {e}")
        return JSONResponse(status_code=500, content={"error": f"Failed to fetch image: {e}"})

    return Response(
        content=response.content,
        media_type=response.headers.get("content-type", "image/jpeg"),
        headers={"Cache-Control": f"public, max-age={settings.IMAGE_PROXY_CACHE_SECONDS}"},
    )
