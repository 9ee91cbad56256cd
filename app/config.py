from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    gemini_api_key: str
    feishu_app_id: str
    feishu_app_secret: str
    redis_url: str = "redis://localhost:6379/0" # Used by the redis task store and Celery
    log_level: str = "INFO"

    # Gemini Configuration
    GEMINI_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MAX_RETRIES: int = 3 # Retries after the first attempt
    GEMINI_RETRY_DELAY_SECONDS: float = 2.0
    GEMINI_TIMEOUT_SECONDS: float = 120.0
    GEMINI_TEMPERATURE: float = 1.0
    GEMINI_TOP_P: float = 0.95
    GEMINI_TOP_K: int = 40

    # Feishu Configuration
    FEISHU_BASE_URL: str = "https://open.feishu.cn"
    FEISHU_BITABLE_APP_TOKEN: Optional[str] = None # Record table; records are skipped when unset
    FEISHU_BITABLE_TABLE_ID: Optional[str] = None
    FEISHU_TIMEOUT_SECONDS: float = 10.0
    FEISHU_TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # Task manager
    TASK_STORE_BACKEND: Literal["memory", "file", "redis"] = "memory"
    TASK_STORE_DIR: str = "./data/tasks"
    TASK_EXPIRY_SECONDS: int = 24 * 60 * 60
    TASK_CLEANUP_INTERVAL_SECONDS: int = 60 * 60
    TASK_RUNNER: Literal["background", "celery"] = "background" # celery needs the file or redis store

    # Legacy synchronous /api/edit endpoint
    EDIT_LEGACY_POLL_INTERVAL_SECONDS: float = 2.0
    EDIT_LEGACY_MAX_POLLS: int = 4

    # API Rate Limiting for edit and upload endpoints
    RATE_LIMIT: int = 10
    RATE_LIMIT_WINDOW_MS: int = 60000
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Images
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    MAX_INPUT_DIMENSION: int = 2048 # Longer side above this is downscaled before the model call
    PLACEHOLDER_IMAGE_PATH: str = "app/static/placeholder-image.svg"
    IMAGE_PROXY_CACHE_SECONDS: int = 86400
    IMAGE_PROXY_ERROR_CACHE_SECONDS: int = 3600
    PROXY_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    @property
    def rate_limit_string(self) -> str:
        window_seconds = max(1, self.RATE_LIMIT_WINDOW_MS // 1000)
        return f"{self.RATE_LIMIT} per {window_seconds} seconds"

    @property
    def bitable_configured(self) -> bool:
        return bool(self.FEISHU_BITABLE_APP_TOKEN and self.FEISHU_BITABLE_TABLE_ID)

settings = Settings()
