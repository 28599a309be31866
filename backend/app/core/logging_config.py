"""
Structured logging configuration.

Provides:
    • JSON lines for production, coloured console lines for development
    • Request-scoped context (request_id, client_ip, endpoint, device_id)
    • Device / call fields lifted from ``extra=`` into the JSON record
    • Phone-number masking: alert recipients are personal numbers and end
      up in dispatcher log lines

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Event accepted", extra={"device_id": "D1", "mode": "chase"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import Settings, settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Fields copied from ``extra=`` into the JSON record
_EXTRA_FIELDS = (
    "device_id", "mode", "call_sid", "call_status", "channel",
    "duration_ms", "status_code", "endpoint",
)

# E.164-ish: "+" and 8-15 digits; keep the last three
_PHONE_RE = re.compile(r"\+\d{5,12}(\d{3})\b")


def set_request_context(**kwargs: Any) -> Token:
    """Bind request-scoped log fields; returns the token for ``reset``."""
    return _request_context.set(kwargs)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def mask_phone_numbers(text: str) -> str:
    """'+61400123456' → '+********456'."""
    return _PHONE_RE.sub(lambda m: "+" + "*" * (len(m.group(0)) - 4) + m.group(1), text)


class PhoneRedactionFilter(logging.Filter):
    """Rewrites the rendered message so formatters never see full numbers."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_phone_numbers(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx

        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """``12:00:01 WARNING  [a1b2c3d4] <TB-01> logger: message``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%H:%M:%S")
        level = f"{record.levelname:8s}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        tags = ""
        request_id = get_request_context().get("request_id")
        if request_id:
            tags += f" [{request_id[:8]}]"
        device = getattr(record, "device_id", None) or get_request_context().get("device_id")
        if device:
            tags += f" <{device}>"

        line = f"{ts} {level}{tags} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def _use_json(config: Settings) -> bool:
    fmt = config.LOG_FORMAT.lower()
    if fmt == "json":
        return True
    if fmt == "pretty":
        return False
    return config.is_production


def setup_logging(config: Optional[Settings] = None) -> None:
    """Install one stdout handler on the root logger."""
    config = config or settings
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_trackblock", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._trackblock = True  # type: ignore[attr-defined]
    if _use_json(config):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(PrettyFormatter(color=sys.stdout.isatty()))
    if config.LOG_REDACT_PHONES:
        handler.addFilter(PhoneRedactionFilter())
    root.addHandler(handler)

    # Quieten noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
