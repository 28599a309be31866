"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        TrackblockError,
        NotFoundError,
        ValidationError,
        DispatchError,
        PersistenceError,
        register_error_handlers,
    )

    raise NotFoundError("Device", device_id="D1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class TrackblockError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(TrackblockError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(TrackblockError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class AuthorizationError(TrackblockError):
    """Admin key missing or wrong (403)."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
        )


class DispatchError(TrackblockError):
    """SMS or voice call could not be handed to the provider (502)."""

    def __init__(self, kind: str, recipient: Optional[str], message: str = "", **details: Any):
        super().__init__(
            message=f"{kind} dispatch to {recipient} failed: {message}",
            status_code=502,
            error_code="DISPATCH_ERROR",
            details={"kind": kind, "recipient": recipient, **details},
        )


class PersistenceError(TrackblockError):
    """Event store write or read failed (500)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Event store {operation} failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, **details},
        )



# ═══════════════════════════════════════════════════════════════════════════
# Error Envelope
# ═══════════════════════════════════════════════════════════════════════════
#
#   {"error": {"code": "NOT_FOUND", "message": "...", "status": 404,
#              "details": {...}, "path": "/device/x/reset", "method": "POST"}}
#
# path / method are omitted in production.

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {
        "code": error_code,
        "message": message,
        "status": status_code,
    }
    if details:
        error["details"] = details
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(status_code=status_code, content={"error": error})


def _request_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Pydantic's error list, trimmed to what a device developer needs."""
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(TrackblockError)
    async def handle_trackblock_error(request: Request, exc: TrackblockError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s] %s %s: %s",
            exc.error_code, request.method, request.url.path, exc.message,
            extra={"status_code": exc.status_code, "device_id": exc.details.get("device_id")},
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message, exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _request_errors(exc)
        logger.warning(
            "Rejected %s %s: %d invalid field(s)",
            request.method, request.url.path, len(errors),
            extra={"status_code": 422},
        )
        return _build_error_response(
            422, "VALIDATION_ERROR", "Request body could not be parsed",
            {"errors": errors}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception on %s %s: %s\n%s",
            request.method, request.url.path, exc, traceback.format_exc(),
        )
        if settings.DEBUG:
            message = str(exc)
            details = {"type": type(exc).__name__}
        else:
            message, details = "Internal server error", None
        return _build_error_response(500, "INTERNAL_ERROR", message, details, request)
