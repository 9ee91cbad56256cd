import json

import httpx
import pytest

from app.ai_clients.gemini_client import GeminiClient, GeminiAPIError, EDIT_PROMPT_TEMPLATE
from app.ai_clients.gemini_response import parse_gemini_response
import app.ai_clients.gemini_client as gemini_client_module

from test_helpers import gemini_image_response, gemini_text_response

class ScriptedTransport:
    """Returns the scripted responses (or raises scripted exceptions) in order."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step

def _client(script: ScriptedTransport, max_retries: int = 2) -> GeminiClient:
    return GeminiClient(transport=httpx.MockTransport(script.handler), max_retries=max_retries, retry_delay=0)

class TestGeminiPayload:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        """The request carries the API key header, the instruction and the inline image."""
        script = ScriptedTransport(httpx.Response(200, json=gemini_image_response()))
        client = _client(script)

        await client.edit_image("make it blue", "aGVsbG8=", "image/jpeg")

        request = script.requests[0]
        assert request.url.path.endswith(f"/models/{client.model}:generateContent")
        assert request.headers["x-goog-api-key"] == client.api_key
        body = json.loads(request.content)
        parts = body["contents"][0]["parts"]
        assert parts[0]["text"] == EDIT_PROMPT_TEMPLATE.format(prompt="make it blue")
        assert parts[1]["inline_data"] == {"mime_type": "image/jpeg", "data": "aGVsbG8="}
        assert body["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]

class TestGeminiRetries:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        script = ScriptedTransport(httpx.Response(200, json=gemini_image_response()))
        data = await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert "candidates" in data
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        script = ScriptedTransport(
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json=gemini_image_response()),
        )
        await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_transport_error_then_success(self):
        script = ScriptedTransport(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json=gemini_image_response()),
        )
        await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        script = ScriptedTransport(
            httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}}),
            httpx.Response(200, json=gemini_image_response()),
        )
        await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        script = ScriptedTransport(httpx.Response(400, json={"error": {"message": "bad request"}}))
        with pytest.raises(GeminiAPIError) as exc_info:
            await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "GEMINI_API_ERROR"
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self):
        """max_retries=2 means three attempts in total."""
        script = ScriptedTransport(httpx.Response(500, text="boom"))
        with pytest.raises(GeminiAPIError):
            await _client(script, max_retries=2).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_candidates_raise_invalid_response(self):
        script = ScriptedTransport(httpx.Response(200, json={"promptFeedback": {}}))
        with pytest.raises(GeminiAPIError) as exc_info:
            await _client(script, max_retries=1).edit_image("p", "aGVsbG8=", "image/png")
        assert exc_info.value.code == "INVALID_RESPONSE"
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_text_only_response_is_retried_then_returned(self):
        script = ScriptedTransport(httpx.Response(200, json=gemini_text_response("no can do")))
        data = await _client(script, max_retries=1).edit_image("p", "aGVsbG8=", "image/png")
        assert data["candidates"][0]["content"]["parts"][0]["text"] == "no can do"
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_text_then_image(self):
        script = ScriptedTransport(
            httpx.Response(200, json=gemini_text_response()),
            httpx.Response(200, json=gemini_image_response()),
        )
        data = await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert "inlineData" in data["candidates"][0]["content"]["parts"][1]
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_empty_inline_data_is_retried(self):
        script = ScriptedTransport(
            httpx.Response(200, json={"candidates": [{"content": {"parts": [{"inlineData": {"data": ""}}]}}]}),
            httpx.Response(200, json=gemini_image_response()),
        )
        data = await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 2
        assert parse_gemini_response(data).has_image

    @pytest.mark.asyncio
    async def test_undecodable_data_url_is_retried(self):
        script = ScriptedTransport(
            httpx.Response(200, json=gemini_text_response("data:image/png;base64,abcde")),
            httpx.Response(200, json=gemini_image_response()),
        )
        data = await _client(script).edit_image("p", "aGVsbG8=", "image/png")
        assert len(script.requests) == 2
        assert parse_gemini_response(data).has_image

    @pytest.mark.asyncio
    async def test_missing_candidates_then_server_error(self):
        """The error code follows the last failure, not an earlier one."""
        script = ScriptedTransport(
            httpx.Response(200, json={"promptFeedback": {}}),
            httpx.Response(500, text="boom"),
        )
        with pytest.raises(GeminiAPIError) as exc_info:
            await _client(script, max_retries=1).edit_image("p", "aGVsbG8=", "image/png")
        assert exc_info.value.code == "GEMINI_API_ERROR"

class TestGeminiBackoff:
    @pytest.fixture
    def sleeps(self, monkeypatch):
        recorded = []

        async def fake_sleep(delay):
            recorded.append(delay)

        monkeypatch.setattr(gemini_client_module.asyncio, "sleep", fake_sleep)
        return recorded

    @pytest.mark.asyncio
    async def test_rate_limit_delay_grows_with_attempt(self, sleeps):
        script = ScriptedTransport(
            httpx.Response(429, text="rate limit"),
            httpx.Response(429, text="rate limit"),
            httpx.Response(200, json=gemini_image_response()),
        )
        client = GeminiClient(transport=httpx.MockTransport(script.handler), max_retries=2, retry_delay=1.5)
        await client.edit_image("p", "aGVsbG8=", "image/png")
        assert sleeps == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_server_error_delay_is_flat(self, sleeps):
        script = ScriptedTransport(
            httpx.Response(503, text="unavailable"),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, json=gemini_image_response()),
        )
        client = GeminiClient(transport=httpx.MockTransport(script.handler), max_retries=2, retry_delay=1.5)
        await client.edit_image("p", "aGVsbG8=", "image/png")
        assert sleeps == [1.5, 1.5]
