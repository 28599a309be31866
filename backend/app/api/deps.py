"""
Shared FastAPI dependencies.

The alert engine, call listener and event store are built once per app in
``main.lifespan`` and stored on ``app.state.services``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Query, Request

from backend.app.alerts.alert_engine import AlertEngine
from backend.app.alerts.call_outcome import CallOutcomeListener
from backend.app.core.config import Settings
from backend.app.core.errors import AuthorizationError
from backend.app.events.store import EventStore


@dataclass
class Services:
    config: Settings
    engine: AlertEngine
    listener: CallOutcomeListener
    event_store: EventStore


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    key: Optional[str] = Query(None, description="Shared admin key"),
    services: Services = Depends(get_services),
) -> None:
    if not key or key != services.config.ADMIN_KEY:
        raise AuthorizationError()
