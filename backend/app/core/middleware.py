"""
Request middleware — access log, timing, correlation IDs.

Every response carries ``X-Request-ID`` (the caller's, when it sent one)
and ``X-Process-Time``.  Trackers post every few seconds, so:

    • successful probe / docs hits are not logged at all
    • successful ``POST /event`` is logged at DEBUG (the engine already
      logs one INFO line per event)
    • anything ≥ 400 is logged at WARNING

Requests under ``/device/{device_id}/...`` bind ``device_id`` to the log
context for the duration of the request.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import reset_request_context, set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_CHATTY_PATHS = frozenset({"/event"})
_DEVICE_PATH = re.compile(r"^/device/([^/]+)/")


def _device_from_path(path: str) -> Optional[str]:
    match = _DEVICE_PATH.match(path)
    return match.group(1) if match else None


def _access_level(path: str, status_code: int) -> Optional[int]:
    if status_code >= 400:
        return logging.WARNING
    if path.startswith(_QUIET_PREFIXES):
        return None
    if path in _CHATTY_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        context = {
            "request_id": request_id,
            "client_ip": client_ip,
            "endpoint": path,
            "method": request.method,
        }
        device_id = _device_from_path(path)
        if device_id:
            context["device_id"] = device_id
        token = set_request_context(**context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s → unhandled error (%.1fms) [%s]",
                request.method, path, (time.perf_counter() - start) * 1000, client_ip,
                extra={"status_code": 500, "endpoint": path},
            )
            reset_request_context(token)
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        level = _access_level(path, response.status_code)
        if level is not None:
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": round(duration_ms, 1),
                    "status_code": response.status_code,
                    "endpoint": path,
                    "device_id": device_id,
                },
            )
        reset_request_context(token)
        return response
