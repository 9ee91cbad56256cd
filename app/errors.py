"""
Error types and JSON envelope handlers for the image edit API.

Every JSON response is shaped as
``{"success": bool, "data": {...}}`` or
``{"success": false, "error": {"code": ..., "message": ..., "details": ...}}``.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

class ApiError(Exception):
    """Raised by routers; rendered as an error envelope."""
    def __init__(self, code: str, message: str, status_code: int = 400, details: Any = None, extra: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.extra = extra or {}

class TaskProcessingError(Exception):
    """Failure inside the edit pipeline. `code` ends up in the task's error record."""
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code

def success_response(data: Any = None, status_code: int = 200) -> JSONResponse:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    return JSONResponse(content=body, status_code=status_code)

def error_body(code: str, message: str, details: Any = None, **extra) -> dict:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    error.update(extra)
    return {"success": False, "error": error}

def error_response(code: str, message: str, status_code: int = 400, details: Any = None, **extra) -> JSONResponse:
    return JSONResponse(content=error_body(code, message, details, **extra), status_code=status_code)

async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return error_response(exc.code, exc.message, exc.status_code, exc.details, **exc.extra)

async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return error_response("INVALID_REQUEST", "Request body or parameters are invalid", 400, details=str(exc.errors()))

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {request.client.host if request.client else 'unknown'} on {request.url.path}")
    return error_response(
        "RATE_LIMIT_EXCEEDED",
        "API rate limit exceeded, please wait a few minutes and try again",
        429,
        details=str(exc.detail),
    )

async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response("SERVER_ERROR", "Internal server error", 500, details=str(exc))
