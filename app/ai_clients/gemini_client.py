import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.ai_clients.gemini_response import has_image_content

logger = logging.getLogger(__name__)

EDIT_PROMPT_TEMPLATE = (
    "Edit this image according to the following instruction: {prompt}. "
    "Return only the edited image. Do not return code, and only return text if the edit fails."
)

class GeminiAPIError(Exception):
    """Raised when the Gemini call fails for good (non-retryable error or retries exhausted)."""
    def __init__(self, message: str, code: str = "GEMINI_API_ERROR", status_code: Optional[int] = None, response_text: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.response_text = response_text

class _RetryableError(Exception):
    def __init__(self, message: str, rate_limited: bool = False):
        super().__init__(message)
        self.rate_limited = rate_limited

def _is_rate_limit(status_code: int, body: str) -> bool:
    lowered = (body or "").lower()
    return status_code == 429 or "rate limit" in lowered or "resource_exhausted" in lowered

class GeminiClient:
    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.api_key = settings.gemini_api_key
        self.base_url = settings.GEMINI_API_BASE_URL.rstrip('/')
        self.model = settings.GEMINI_MODEL
        self.timeout = settings.GEMINI_TIMEOUT_SECONDS
        self.max_retries = settings.GEMINI_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.GEMINI_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.transport = transport # Injected in tests

    def build_payload(self, prompt: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": EDIT_PROMPT_TEMPLATE.format(prompt=prompt)},
                        {"inline_data": {"mime_type": mime_type, "data": image_b64}},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": settings.GEMINI_TEMPERATURE,
                "topP": settings.GEMINI_TOP_P,
                "topK": settings.GEMINI_TOP_K,
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TransportError as e:
            raise _RetryableError(f"Transport error calling Gemini: {type(e).__name__} - {e}") from e

        if response.status_code >= 400:
            body = response.text
            logger.error(f"Gemini HTTP error: {response.status_code} - {body[:500]}")
            if _is_rate_limit(response.status_code, body):
                raise _RetryableError(f"Rate limit from Gemini: HTTP {response.status_code}", rate_limited=True)
            if response.status_code >= 500:
                raise _RetryableError(f"Gemini server error: HTTP {response.status_code}")
            raise GeminiAPIError(
                f"Gemini API rejected the request: HTTP {response.status_code}",
                status_code=response.status_code,
                response_text=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise _RetryableError(f"Gemini response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise _RetryableError("Gemini response is not a JSON object")
        return data

    async def edit_image(self, prompt: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
        """
        Calls Gemini generateContent with the edit instruction and source image.

        Retries transport errors, 5xx, rate limits (with a growing delay), invalid JSON,
        responses without candidates and responses without an image. Returns the last
        response dict; raises GeminiAPIError when no usable response could be obtained.
        """
        payload = self.build_payload(prompt, image_b64, mime_type)
        total_attempts = self.max_retries + 1
        last_error: Optional[str] = None
        missing_candidates = False
        last_response: Optional[Dict[str, Any]] = None

        for attempt in range(1, total_attempts + 1):
            logger.info(f"Calling Gemini {self.model} to edit image, attempt {attempt}/{total_attempts}")
            delay = self.retry_delay
            try:
                data = await self._post(payload)
                candidates = data.get("candidates")
                missing_candidates = not candidates
                if missing_candidates:
                    last_error = "Gemini returned a response without candidates"
                    last_response = None
                    logger.warning(f"{last_error}: {str(data)[:300]}")
                elif not has_image_content(data):
                    last_response = data
                    logger.warning("Gemini response has no image content")
                else:
                    logger.info("Gemini call succeeded")
                    return data
            except _RetryableError as e:
                last_error = str(e)
                missing_candidates = False
                logger.warning(f"Gemini attempt {attempt} failed: {last_error}")
                if e.rate_limited:
                    delay = self.retry_delay * attempt

            if attempt < total_attempts:
                logger.info(f"Retrying Gemini call in {delay:.1f}s...")
                await asyncio.sleep(delay)

        if last_response is not None:
            logger.warning("Gemini retries exhausted without image content, returning last response")
            return last_response

        logger.error(f"Gemini retries exhausted: {last_error}")
        code = "INVALID_RESPONSE" if missing_candidates else "GEMINI_API_ERROR"
        raise GeminiAPIError(f"Gemini API call failed after {total_attempts} attempts: {last_error}", code=code)

# Create a singleton instance
gemini_client = GeminiClient()
