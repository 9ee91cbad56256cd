import os

# Set test environment variables BEFORE importing any app modules
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("FEISHU_APP_ID", "cli_test_app")
os.environ.setdefault("FEISHU_APP_SECRET", "test-secret")
os.environ.setdefault("FEISHU_BITABLE_APP_TOKEN", "bascnTestApp")
os.environ.setdefault("FEISHU_BITABLE_TABLE_ID", "tblTestTable")
os.environ.setdefault("RATE_LIMIT", "1000")

import httpx
import pytest

from app.config import settings
from app.database.base import StoreConfig
from app.database.providers.memory_provider import MemoryTaskStore
from app.database.store import set_task_store
from app.feishu_client import feishu_client
from app.ai_clients.gemini_client import gemini_client

from test_helpers import FakeFeishu, FakeGemini

@pytest.fixture
def task_store():
    store = MemoryTaskStore(StoreConfig(provider="memory", expiry_seconds=settings.TASK_EXPIRY_SECONDS))
    set_task_store(store)
    yield store
    set_task_store(None)

@pytest.fixture
def fake_feishu(monkeypatch):
    fake = FakeFeishu()
    monkeypatch.setattr(feishu_client, "transport", httpx.MockTransport(fake.handler))
    feishu_client.invalidate_token()
    yield fake
    feishu_client.invalidate_token()

@pytest.fixture
def fake_gemini(monkeypatch):
    fake = FakeGemini()
    monkeypatch.setattr(gemini_client, "transport", httpx.MockTransport(fake.handler))
    monkeypatch.setattr(gemini_client, "retry_delay", 0)
    monkeypatch.setattr(gemini_client, "max_retries", 2)
    return fake

@pytest.fixture
def client(task_store, fake_feishu, fake_gemini, monkeypatch):
    from fastapi.testclient import TestClient
    from app.api import app

    monkeypatch.setattr(settings, "TASK_RUNNER", "background")
    monkeypatch.setattr(settings, "EDIT_LEGACY_POLL_INTERVAL_SECONDS", 0.05)
    return TestClient(app)
