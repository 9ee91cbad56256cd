"""
Parsing of Gemini ``generateContent`` responses.

The upstream payload shape is not stable: depending on API version, SDK and
whether the response was re-wrapped on the way, image bytes can show up as
``inlineData`` or ``inline_data`` parts, under ``candidates`` or a top-level
``parts`` list, nested one level down under ``response``, or as a
``data:image/...;base64,`` URL inside a text part. The parser tries each shape
in turn and never raises; failures come back as an explanatory text.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/png"
MODEL_TEXT_MAX_LENGTH = 100
TRUNCATION_MARKER = "...[response truncated]"

EMPTY_RESPONSE_TEXT = "Processing failed: the API returned an empty response"
INVALID_TYPE_TEXT = "Processing failed: the API returned an invalid response type"
NO_CONTENT_TEXT = "Processing failed: the API response had no content"
NO_IMAGE_TEXT = "Failed to generate an image, try a more specific description or a different image"

_DATA_URL_RE = re.compile(r"data:(image/[\w.+-]+);base64,([A-Za-z0-9+/=_\-]+)")

@dataclass
class ParsedGeminiResponse:
    image_data: Optional[str] = None # base64, no data-URL prefix
    mime_type: str = DEFAULT_MIME_TYPE
    text_response: Optional[str] = None
    model_text: Optional[str] = None # the model's own text when no image came back
    block_reason: Optional[str] = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_data)

def _looks_like_function_source(value: str) -> bool:
    return "function(" in value and "return" in value

def _get(mapping: Any, *keys: str) -> Any:
    current = mapping
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current

def _candidate_parts(container: Any) -> List[Any]:
    """Parts of the first candidate that has any."""
    candidates = _get(container, "candidates")
    if not isinstance(candidates, list):
        return []
    for candidate in candidates:
        parts = _get(candidate, "content", "parts")
        if isinstance(parts, list) and parts:
            return parts
    return []

def _normalize_base64(data: Any) -> Optional[str]:
    """Returns canonical base64 for `data`, or None if it does not decode."""
    if not isinstance(data, str) or not data.strip():
        return None
    compact = re.sub(r"\s+", "", data)
    try:
        base64.b64decode(compact, validate=True)
        return compact
    except (binascii.Error, ValueError):
        pass
    try:
        # URL-safe alphabet, possibly without padding
        padded = compact + "=" * (-len(compact) % 4)
        decoded = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    return base64.b64encode(decoded).decode("ascii")

def _inline_image(part: Dict[str, Any]) -> Optional[tuple]:
    """(data, mime type) from an inlineData / inline_data part."""
    inline = part.get("inlineData")
    if isinstance(inline, dict):
        return inline.get("data"), inline.get("mimeType") or inline.get("mime_type") or DEFAULT_MIME_TYPE
    inline = part.get("inline_data")
    if isinstance(inline, dict):
        return inline.get("data"), inline.get("mime_type") or inline.get("mimeType") or DEFAULT_MIME_TYPE
    return None

def _truncate(text: str) -> str:
    if len(text) > MODEL_TEXT_MAX_LENGTH:
        return text[:MODEL_TEXT_MAX_LENGTH] + TRUNCATION_MARKER
    return text

def _block_reason(response: Dict[str, Any]) -> Optional[str]:
    for container in (response, _get(response, "response")):
        reason = _get(container, "promptFeedback", "blockReason")
        if reason:
            return str(reason)
        candidates = _get(container, "candidates")
        if isinstance(candidates, list) and candidates:
            finish_reason = _get(candidates[0], "finishReason")
            if finish_reason and finish_reason != "STOP":
                return str(finish_reason)
    return None

def collect_parts(response: Dict[str, Any]) -> List[Any]:
    parts: List[Any] = []
    top_level = response.get("parts")
    if isinstance(top_level, list):
        parts.extend(top_level)
    parts.extend(_candidate_parts(response))
    parts.extend(_candidate_parts(response.get("response")))
    return parts

def has_image_content(response: Any) -> bool:
    """True when any part of `response` carries image data the parser would accept."""
    if not isinstance(response, dict):
        return False
    for part in collect_parts(response):
        if not isinstance(part, dict):
            continue
        inline = _inline_image(part)
        if inline and _normalize_base64(inline[0]):
            return True
        text = part.get("text")
        if isinstance(text, str):
            match = _DATA_URL_RE.search(text)
            if match and _normalize_base64(match.group(2)):
                return True
    return False

def parse_gemini_response(response: Any) -> ParsedGeminiResponse:
    """Extract image data and text from a Gemini response of any known shape."""
    try:
        if response is None or response == "" or response == {}:
            logger.info("Gemini response is empty")
            return ParsedGeminiResponse(text_response=EMPTY_RESPONSE_TEXT)

        if callable(response) or (isinstance(response, str) and _looks_like_function_source(response)):
            logger.error(f"Gemini returned an invalid response type: {type(response).__name__}")
            return ParsedGeminiResponse(text_response=INVALID_TYPE_TEXT)

        if isinstance(response, (str, bytes)):
            try:
                response = json.loads(response)
            except ValueError:
                logger.error("Gemini response is a string that is not valid JSON")
                return ParsedGeminiResponse(text_response=INVALID_TYPE_TEXT)

        if not isinstance(response, dict):
            logger.error(f"Gemini returned an invalid response type: {type(response).__name__}")
            return ParsedGeminiResponse(text_response=INVALID_TYPE_TEXT)

        logger.info(f"Gemini response keys: {', '.join(response.keys())}")

        # Convenience text accessors, only trusted when no part carries text
        fallback_text = None
        if isinstance(response.get("text"), str):
            fallback_text = response["text"]
        elif isinstance(_get(response, "response", "text"), str):
            fallback_text = response["response"]["text"]

        parts = collect_parts(response)
        logger.info(f"Gemini response has {len(parts)} part(s)")

        if not parts and not fallback_text:
            logger.warning("Gemini response has no content")
            return ParsedGeminiResponse(text_response=NO_CONTENT_TEXT, block_reason=_block_reason(response))

        texts: List[str] = []
        image_data = None
        mime_type = DEFAULT_MIME_TYPE

        for part in parts:
            if not isinstance(part, dict):
                continue

            text = part.get("text")
            if isinstance(text, str):
                if image_data is None:
                    match = _DATA_URL_RE.search(text)
                    if match:
                        candidate = _normalize_base64(match.group(2))
                        if candidate:
                            image_data, mime_type = candidate, match.group(1)
                            logger.info(f"Found data-URL image in text part, type: {mime_type}")
                            text = (text[:match.start()] + text[match.end():]).strip()
                if text:
                    texts.append(text)

            if image_data is None:
                inline = _inline_image(part)
                if inline:
                    candidate = _normalize_base64(inline[0])
                    if candidate:
                        image_data, mime_type = candidate, inline[1]
                        logger.info(f"Found inline image data, type: {mime_type}")
                    else:
                        logger.warning("Skipping inline image part with missing or invalid base64 data")

        text_response = "".join(texts) if texts else fallback_text
        block_reason = _block_reason(response)

        if not image_data:
            logger.warning("No image data in Gemini response, returning text only")
            return ParsedGeminiResponse(
                text_response=NO_IMAGE_TEXT,
                model_text=_truncate(text_response) if text_response else None,
                block_reason=block_reason,
            )

        return ParsedGeminiResponse(
            image_data=image_data,
            mime_type=mime_type,
            text_response=text_response,
            block_reason=block_reason,
        )
    except Exception as e:
        logger.error(f"Failed to parse Gemini response: {e}", exc_info=True)
        return ParsedGeminiResponse(text_response=f"Error parsing API response: {e}")
