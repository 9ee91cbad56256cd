import base64
import json

import httpx
import pytest

from app.ai_clients.gemini_response import NO_IMAGE_TEXT
from app.errors import TaskProcessingError
from app.schemas.edit_schemas import TaskError
import app.task_manager as task_manager

from test_helpers import gemini_text_response, get_image_size

class TestTaskLifecycle:
    @pytest.mark.asyncio
    async def test_create_and_get(self, task_store):
        task = await task_manager.create_edit_task("img_v3_src", "make it blue", image_url="https://open.feishu.cn/x")
        assert task.status == "pending"
        assert task.created_at > 0

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.original_image_id == "img_v3_src"
        assert loaded.prompt == "make it blue"
        assert loaded.completed_at is None

    @pytest.mark.asyncio
    async def test_get_unknown_or_empty(self, task_store):
        assert await task_manager.get_task_by_id("nope") is None
        assert await task_manager.get_task_by_id("") is None

    @pytest.mark.asyncio
    async def test_update_merges_data(self, task_store):
        task = await task_manager.create_edit_task("img_v3_src", "p")
        assert await task_manager.update_task_status(task.id, "processing", text_response="hi") is True

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.status == "processing"
        assert loaded.text_response == "hi"
        assert loaded.completed_at is None

    @pytest.mark.asyncio
    async def test_final_status_sets_completed_at(self, task_store):
        task = await task_manager.create_edit_task("img_v3_src", "p")
        error = TaskError(code="X", message="broken")
        await task_manager.update_task_status(task.id, "failed", error=error)

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.status == "failed"
        assert loaded.error.code == "X"
        assert loaded.completed_at >= loaded.created_at

    @pytest.mark.asyncio
    async def test_update_unknown_task(self, task_store):
        assert await task_manager.update_task_status("nope", "processing") is False

    def test_error_from_exception(self):
        try:
            raise TaskProcessingError("NO_IMAGE_GENERATED", "nothing came back")
        except TaskProcessingError as e:
            error = task_manager.task_error_from_exception(e)
        assert error.code == "NO_IMAGE_GENERATED"
        assert error.message == "nothing came back"
        assert "Traceback" in error.details

        error = task_manager.task_error_from_exception(RuntimeError("boom"), default_code="SAVE_ERROR")
        assert error.code == "SAVE_ERROR"

class TestRunEdit:
    @pytest.mark.asyncio
    async def test_run_edit_returns_image(self, task_store, fake_feishu, fake_gemini):
        result = await task_manager.run_edit("img_v3_src", "make it blue")
        assert result.mime_type == "image/png"
        assert base64.b64decode(result.image_data)
        assert result.text_response == "Here is the edited image"
        assert result.image_record.file_token == "img_v3_src"

    @pytest.mark.asyncio
    async def test_large_source_is_downscaled(self, task_store, fake_feishu, fake_gemini, monkeypatch):
        monkeypatch.setattr(task_manager.settings, "MAX_INPUT_DIMENSION", 32)
        await task_manager.run_edit("img_v3_src", "p")

        body = json.loads(fake_gemini.requests[0].content)
        inline = body["contents"][0]["parts"][1]["inline_data"]
        assert max(get_image_size(base64.b64decode(inline["data"]))) == 32

    @pytest.mark.asyncio
    async def test_no_image_raises(self, task_store, fake_feishu, fake_gemini):
        fake_gemini.queue(httpx.Response(200, json=gemini_text_response("cannot comply")))
        with pytest.raises(TaskProcessingError) as exc_info:
            await task_manager.run_edit("img_v3_src", "p")
        assert exc_info.value.code == "NO_IMAGE_GENERATED"
        assert NO_IMAGE_TEXT in str(exc_info.value)
        assert "cannot comply" in str(exc_info.value)

class TestProcessEditTask:
    @pytest.mark.asyncio
    async def test_success(self, task_store, fake_feishu, fake_gemini):
        task = await task_manager.create_edit_task("img_v3_src", "make it blue")
        await task_manager.process_edit_task(task.id)

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.status == "completed"
        assert loaded.result_image_url.endswith("/images/img_v3_saved_1")
        assert loaded.result_image_id == fake_feishu.created_records[0]["id"]
        assert fake_feishu.created_records[0]["parentId"] == "img_v3_src"
        assert loaded.completed_at is not None

    @pytest.mark.asyncio
    async def test_gemini_failure_marks_task_failed(self, task_store, fake_feishu, fake_gemini):
        fake_gemini.queue(httpx.Response(400, json={"error": {"message": "bad"}}))
        task = await task_manager.create_edit_task("img_v3_src", "p")
        await task_manager.process_edit_task(task.id)

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.status == "failed"
        assert loaded.error.code == "GEMINI_API_ERROR"
        assert fake_feishu.uploads == []

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_task_failed(self, task_store, fake_feishu, fake_gemini):
        task = await task_manager.create_edit_task("unknown-record", "p")
        await task_manager.process_edit_task(task.id)

        loaded = await task_manager.get_task_by_id(task.id)
        assert loaded.status == "failed"
        assert loaded.error.code == "IMAGE_NOT_FOUND"
        assert fake_gemini.requests == []

    @pytest.mark.asyncio
    async def test_missing_task_is_ignored(self, task_store, fake_feishu, fake_gemini):
        await task_manager.process_edit_task("does-not-exist")
        assert fake_gemini.requests == []

    @pytest.mark.asyncio
    async def test_cleanup(self, task_store):
        task = await task_manager.create_edit_task("img_v3_src", "p")
        task_store._tasks[task.id]["created_at"] = 0
        assert await task_manager.cleanup_expired_tasks() == 1
