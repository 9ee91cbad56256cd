from slowapi import Limiter
from slowapi.util import get_remote_address
from app.config import settings

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.RATE_LIMIT_STORAGE_URI)

# Shared limit for the endpoints that end up calling Gemini or uploading to Feishu
EDIT_RATE_LIMIT = settings.rate_limit_string
