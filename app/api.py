import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

# Import routers - edit, task status, upload and the image proxies
from app.routers import edit, task_status, upload, image_proxy
from app.config import settings
from app.errors import (
    ApiError,
    api_error_handler,
    validation_error_handler,
    rate_limit_exceeded_handler,
    unhandled_error_handler,
)
from app.limiter import limiter
from app.database.store import get_task_store
import app.task_manager as task_manager

logger = logging.getLogger(__name__)

async def _cleanup_loop(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await task_manager.cleanup_expired_tasks()
            if removed:
                logger.info(f"Removed {removed} expired edit tasks")
        except Exception as e:
            logger.error(f"Expired task cleanup failed: {e}", exc_info=True)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting image edit API (task store: {settings.TASK_STORE_BACKEND}, runner: {settings.TASK_RUNNER})")
    cleanup_task = asyncio.create_task(_cleanup_loop(settings.TASK_CLEANUP_INTERVAL_SECONDS))
    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await get_task_store().close()

# Create FastAPI app
app = FastAPI(
    title="Image Edit API",
    description="Edits images stored in Feishu with Gemini",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiter and JSON error envelope
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# Include routers
app.include_router(edit.router, prefix="/api/edit", tags=["edit"])
app.include_router(task_status.router, prefix="/api/task", tags=["tasks"])
app.include_router(upload.router, prefix="/api", tags=["upload"])
app.include_router(image_proxy.router, prefix="/api", tags=["image-proxy"])

@app.get("/")
async def root():
    """Root endpoint - returns API information."""
    return {
        "message": "Image Edit API",
        "version": "1.0.0",
        "endpoints": {
            "edit": "/api/edit",
            "task_status": "/api/task/status",
            "upload": "/api/upload",
            "image_proxy": "/api/image-proxy",
        }
    }

@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy"}
