"""
Error envelope for the marketplace API

All error responses share one body shape:

    {
        "ok": false,
        "error_code": "NOT_FOUND",
        "message": "App not found: notes",
        "details": {...},
        "timestamp": "2026-01-31T12:34:56.789012Z",
        "reason_code": "NOT_FOUND"
    }

``hint`` is copied to the top level when ``details`` carries one. The 404
for an unknown install session is the one deliberate exception; it keeps
the plain ``{"sessionId", "status": "not_found", "message"}`` body that
pollers already understand.
"""

import logging
import os
import traceback
from typing import Any, Dict, Optional, Tuple, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from deskmarket.core.locks import LockTimeout
from deskmarket.core.marketplace.exceptions import (
    AlreadyInstalledError,
    AppNotFoundError,
    JobNotFoundError,
    MarketplaceError,
)
from deskmarket.core.time import utc_now_iso

logger = logging.getLogger(__name__)

STATUS_ERROR_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    500: "INTERNAL_ERROR",
}

# First match wins; anything else derived from MarketplaceError is a 400
MARKETPLACE_ERROR_STATUS: Tuple[Tuple[Type[MarketplaceError], int], ...] = (
    (AppNotFoundError, 404),
    (JobNotFoundError, 404),
    (AlreadyInstalledError, 409),
)


def error_body(error_code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the envelope body"""
    details = details or {}
    body = {
        "ok": False,
        "error_code": error_code,
        "message": message,
        "details": details,
        "timestamp": utc_now_iso(),
        "reason_code": error_code,
    }
    if "hint" in details:
        body["hint"] = details["hint"]
    return body


def error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(error_code, message, details))


class APIError(Exception):
    """
    Error raised by route handlers and rendered as an envelope

    Example:
        raise APIError("INVALID_APP_ID", "Invalid app ID", {"appId": app_id})
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 400,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details
        self.status_code = status_code


class ValidationError(APIError):
    """400 VALIDATION_ERROR"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details, status_code=400)


class NotFoundError(APIError):
    """404 NOT_FOUND for a named resource"""

    def __init__(self, resource: str, identifier: str):
        super().__init__("NOT_FOUND", f"{resource} not found: {identifier}", status_code=404)


def marketplace_status(exc: MarketplaceError) -> int:
    for exc_type, status_code in MARKETPLACE_ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 400


def _debug_enabled() -> bool:
    return os.getenv("DESKMARKET_DEBUG", "false").lower() == "true"


def register_error_handlers(app: FastAPI) -> None:
    """Install the exception handlers that render every error as an envelope"""

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        # Body/query validation is a client error: 400, not FastAPI's 422
        errors = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning(f"Rejected {request.method} {request.url.path}: {errors}")
        return error_response(400, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})

    @app.exception_handler(APIError)
    async def on_api_error(request: Request, exc: APIError):
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}: {exc.message}")
        return error_response(exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(MarketplaceError)
    async def on_marketplace_error(request: Request, exc: MarketplaceError):
        status_code = marketplace_status(exc)
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return error_response(
            status_code,
            STATUS_ERROR_CODES[status_code],
            str(exc),
            {"type": type(exc).__name__},
        )

    @app.exception_handler(LockTimeout)
    async def on_lock_timeout(request: Request, exc: LockTimeout):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return error_response(
            409,
            "CONFLICT",
            str(exc),
            {"lockKey": exc.key, "hint": "Another operation on this app is still running, retry later"},
        )

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
        return error_response(
            exc.status_code,
            STATUS_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            str(exc.detail) if exc.detail else "An error occurred",
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}", exc_info=exc)

        if not _debug_enabled():
            return error_response(
                500,
                "INTERNAL_ERROR",
                "Internal server error",
                {"hint": "An unexpected error occurred. Check server logs for details."},
            )

        return error_response(
            500,
            "INTERNAL_ERROR",
            f"{type(exc).__name__}: {exc}",
            {
                "hint": "DESKMARKET_DEBUG is on; see traceback",
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            },
        )
