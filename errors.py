"""
Error taxonomy and the failure envelope.

Every failure leaving the API has the shape
{timestamp, path, status, code, message, details}.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    INVALID_BODY = (400, "Request body is invalid")
    INVALID_OBJECT_ID = (400, "Invalid ObjectId format")
    UNAUTHORIZED = (401, "Authentication required")
    FORBIDDEN = (403, "Access denied")
    RESOURCE_NOT_FOUND = (404, "Resource not found")
    METHOD_NOT_ALLOWED = (405, "Method not allowed")
    DUPLICATE_RESOURCE = (409, "Resource already exists")
    VALIDATION_ERROR = (422, "Validation failed")
    INTERNAL_ERROR = (500, "Internal server error")

    def __init__(self, status: int, default_message: str):
        self.status = status
        self.default_message = default_message


class ApiError(Exception):
    def __init__(self, error: ErrorCode, message: Optional[str] = None, details: Optional[List[dict]] = None):
        super().__init__(message or error.default_message)
        self.error = error
        self.message = message or error.default_message
        self.details = details


def error_response(request: Request, error: ErrorCode, message: Optional[str] = None,
                   details: Optional[Any] = None) -> JSONResponse:
    status = error.status
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return JSONResponse(
        status_code=status,
        content={
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "path": path,
            "status": status,
            "code": error.name,
            "message": message or error.default_message,
            "details": details,
        },
    )


def _validation_details(exc: RequestValidationError) -> List[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({
            "field": ".".join(loc) if loc else "body",
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        })
    return details


def _is_unreadable_body(exc: RequestValidationError) -> bool:
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            return True
        if err.get("type") == "missing" and tuple(err.get("loc", ())) == ("body",):
            return True
    return False


_HTTP_STATUS_ERRORS = {
    400: ErrorCode.INVALID_BODY,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.RESOURCE_NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
    409: ErrorCode.DUPLICATE_RESOURCE,
    422: ErrorCode.VALIDATION_ERROR,
}


async def api_error_handler(request: Request, exc: ApiError):
    return error_response(request, exc.error, exc.message, exc.details)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _is_unreadable_body(exc):
        return error_response(request, ErrorCode.INVALID_BODY)
    return error_response(request, ErrorCode.VALIDATION_ERROR, details=_validation_details(exc))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = _HTTP_STATUS_ERRORS.get(exc.status_code)
    if error is None:
        error = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_BODY
    if error.status != exc.status_code:
        return error_response(request, error)
    return error_response(request, error, str(exc.detail) if exc.detail else None)


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.info("Duplicate key on %s: %s", request.url.path, exc.details)
    return error_response(request, ErrorCode.DUPLICATE_RESOURCE)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(request, ErrorCode.INTERNAL_ERROR)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
