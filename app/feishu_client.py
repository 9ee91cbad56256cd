import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

# Feishu error codes meaning the tenant access token is invalid or expired
TOKEN_INVALID_CODES = {99991661, 99991663, 99991668}

# Custom Feishu specific exceptions
class FeishuError(Exception):
    """Base exception for Feishu client errors."""
    def __init__(self, message: str, code: Any = "FEISHU_ERROR"):
        super().__init__(message)
        self.code = code

class FeishuAuthError(FeishuError):
    """Exception for tenant access token failures."""
    def __init__(self, message: str):
        super().__init__(message, code="FEISHU_AUTH_ERROR")

class FeishuAPIError(FeishuError):
    """Exception for Feishu open API errors (non-zero `code` or bad HTTP status)."""
    def __init__(self, message: str, feishu_code: Optional[int] = None, status_code: Optional[int] = None):
        super().__init__(message, code="FEISHU_API_ERROR")
        self.feishu_code = feishu_code
        self.status_code = status_code

def flatten_field_value(value: Any) -> Any:
    """
    Normalize a Bitable field value to a plain Python value.

    Text fields come back from the search API as lists of segments
    (``[{"text": "abc", "type": "text"}]``), links as ``{"link": ..., "text": ...}``.
    """
    if isinstance(value, list):
        if all(isinstance(item, dict) and "text" in item for item in value):
            return "".join(str(item.get("text") or "") for item in value)
        if len(value) == 1:
            return flatten_field_value(value[0])
        return value
    if isinstance(value, dict):
        if "link" in value:
            return value.get("link")
        if "text" in value:
            return value.get("text")
    return value

class FeishuClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.app_id = settings.feishu_app_id
        self.app_secret = settings.feishu_app_secret
        self.base_url = settings.FEISHU_BASE_URL.rstrip('/')
        self.timeout = settings.FEISHU_TIMEOUT_SECONDS
        self.refresh_margin = settings.FEISHU_TOKEN_REFRESH_MARGIN_SECONDS
        self.transport = transport # Injected in tests
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock: Optional[asyncio.Lock] = None
        self._lock_loop = None

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=kwargs.pop("timeout", self.timeout), transport=self.transport, **kwargs)

    def _get_lock(self) -> asyncio.Lock:
        # Celery tasks run each job on a fresh event loop, so the lock is per loop
        loop = asyncio.get_running_loop()
        if self._token_lock is None or self._lock_loop is not loop:
            self._token_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._token_lock

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    def image_url(self, image_key: str) -> str:
        return f"{self.base_url}/open-apis/im/v1/images/{image_key}"

    async def get_tenant_access_token(self) -> str:
        """Returns a cached tenant access token, refreshing it shortly before it expires."""
        if self._token and time.time() < self._token_expires_at:
            return self._token

        async with self._get_lock():
            if self._token and time.time() < self._token_expires_at:
                return self._token

            url = f"{self.base_url}/open-apis/auth/v3/tenant_access_token/internal"
            logger.info(f"Requesting Feishu tenant access token for app {self.app_id}")
            try:
                async with self._client() as client:
                    response = await client.post(url, json={"app_id": self.app_id, "app_secret": self.app_secret})
                    response.raise_for_status()
                    payload = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"Feishu token HTTP error: {e.response.status_code} - {e.response.text}")
                raise FeishuAuthError(f"Failed to get Feishu access token: HTTP {e.response.status_code}") from e
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Error requesting Feishu access token: {e}", exc_info=True)
                raise FeishuAuthError(f"Failed to get Feishu access token: {e}") from e

            if payload.get("code") != 0 or not payload.get("tenant_access_token"):
                logger.error(f"Feishu token request rejected: code={payload.get('code')} msg={payload.get('msg')}")
                raise FeishuAuthError(f"Failed to get Feishu access token: {payload.get('msg') or payload.get('code')}")

            expire = int(payload.get("expire") or 7200)
            self._token = payload["tenant_access_token"]
            self._token_expires_at = time.time() + max(0, expire - self.refresh_margin)
            logger.info(f"Got Feishu access token {self._token[:10]}..., expires in {expire}s")
            return self._token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.get_tenant_access_token()
        return {"Authorization": f"Bearer {token}"}

    async def download_image(self, image_key: str) -> Tuple[bytes, str]:
        """Downloads an image by key. Returns (bytes, content type)."""
        url = f"{self.image_url(image_key)}?image_type=image"
        logger.info(f"Downloading Feishu image: {url}")

        for attempt in range(2):
            headers = await self._auth_headers()
            headers["Accept"] = "image/*"
            async with self._client(follow_redirects=True) as client:
                response = await client.get(url, headers=headers)

            content_type = response.headers.get("content-type", "")
            if content_type.startswith("application/json"):
                payload = _safe_json(response)
                feishu_code = payload.get("code")
                if attempt == 0 and (response.status_code == 401 or feishu_code in TOKEN_INVALID_CODES):
                    logger.warning(f"Feishu token rejected while downloading {image_key}, refreshing")
                    self.invalidate_token()
                    continue
                raise FeishuAPIError(
                    f"Feishu image download failed: {payload.get('msg') or response.status_code}",
                    feishu_code=feishu_code,
                    status_code=response.status_code,
                )
            if response.status_code == 401 and attempt == 0:
                self.invalidate_token()
                continue
            if response.status_code != 200:
                raise FeishuAPIError(
                    f"Feishu API returned non-200 status: {response.status_code}",
                    status_code=response.status_code,
                )
            if not content_type.startswith("image/"):
                content_type = "image/jpeg"
            logger.info(f"Downloaded Feishu image {image_key}: {len(response.content)} bytes, {content_type}")
            return response.content, content_type

        raise FeishuAPIError(f"Feishu image download failed for {image_key}: token rejected twice", status_code=401)

    async def upload_image(self, image_bytes: bytes, filename: str, mime_type: str) -> str:
        """Uploads an image and returns its image key."""
        url = f"{self.base_url}/open-apis/im/v1/images"
        headers = await self._auth_headers()
        files = {"image": (filename, image_bytes, mime_type)}
        data = {"image_type": "message"}

        logger.info(f"Uploading {filename} ({len(image_bytes)} bytes, {mime_type}) to Feishu")
        try:
            async with self._client(timeout=max(self.timeout, 30.0)) as client:
                response = await client.post(url, headers=headers, files=files, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Feishu upload HTTP error: {e.response.status_code} - {e.response.text}")
            raise FeishuAPIError(f"Failed to upload image to Feishu: HTTP {e.response.status_code}", status_code=e.response.status_code) from e

        image_key = (payload.get("data") or {}).get("image_key")
        if payload.get("code") != 0 or not image_key:
            raise FeishuAPIError(f"Failed to upload image to Feishu: {payload.get('msg')}", feishu_code=payload.get("code"))
        logger.info(f"Uploaded {filename} to Feishu as {image_key}")
        return image_key

    def _records_url(self, suffix: str = "") -> str:
        if not settings.bitable_configured:
            raise FeishuError("Feishu record table is not configured", code="FEISHU_NOT_CONFIGURED")
        return (
            f"{self.base_url}/open-apis/bitable/v1/apps/{settings.FEISHU_BITABLE_APP_TOKEN}"
            f"/tables/{settings.FEISHU_BITABLE_TABLE_ID}/records{suffix}"
        )

    async def create_record(self, fields: Dict[str, Any]) -> str:
        """Creates a record in the image table and returns its record id."""
        url = self._records_url()
        headers = await self._auth_headers()
        async with self._client() as client:
            response = await client.post(url, headers=headers, json={"fields": fields})
        payload = _safe_json(response)
        if response.status_code != 200 or payload.get("code") != 0:
            logger.error(f"Feishu create record failed: {response.status_code} - {response.text}")
            raise FeishuAPIError(
                f"Failed to save record to Feishu: {payload.get('msg') or response.status_code}",
                feishu_code=payload.get("code"),
                status_code=response.status_code,
            )
        record_id = ((payload.get("data") or {}).get("record") or {}).get("record_id")
        logger.info(f"Created Feishu record {record_id} for image {fields.get('id')}")
        return record_id

    async def search_records(self, conditions: List[Dict[str, Any]], conjunction: str = "and", page_size: int = 20) -> List[Dict[str, Any]]:
        """Searches the image table. Returns flattened field dicts, each with its `record_id`."""
        url = self._records_url("/search")
        headers = await self._auth_headers()
        body = {"filter": {"conjunction": conjunction, "conditions": conditions}}
        async with self._client() as client:
            response = await client.post(url, headers=headers, params={"page_size": page_size}, json=body)
        payload = _safe_json(response)
        if response.status_code != 200 or payload.get("code") != 0:
            logger.error(f"Feishu record search failed: {response.status_code} - {response.text}")
            raise FeishuAPIError(
                f"Failed to search Feishu records: {payload.get('msg') or response.status_code}",
                feishu_code=payload.get("code"),
                status_code=response.status_code,
            )

        records = []
        for item in (payload.get("data") or {}).get("items") or []:
            fields = {name: flatten_field_value(value) for name, value in (item.get("fields") or {}).items()}
            fields["record_id"] = item.get("record_id")
            records.append(fields)
        return records

def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}

# Create a singleton instance
feishu_client = FeishuClient()
