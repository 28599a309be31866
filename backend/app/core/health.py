"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Event store reachability (memory or PostgreSQL)
    • Telephony configuration (provider, call targets)
    • Alert engine (tracked devices, dispatches in flight)

Any UNHEALTHY component makes /health/ready answer 503.  A missing call
configuration is only DEGRADED: events are still accepted and SMS still go
out, calls are skipped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.errors import PersistenceError

if TYPE_CHECKING:
    from backend.app.api.deps import Services

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    version: str
    environment: str
    status: HealthStatus = HealthStatus.HEALTHY
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_event_store(services: "Services") -> ComponentHealth:
    store = services.event_store
    comp = ComponentHealth(name="event_store", details={"backend": store.backend})
    start = time.monotonic()
    try:
        comp.details["events"] = await store.count()
        comp.message = "Event store reachable"
    except PersistenceError as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = e.message
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_telephony(services: "Services") -> ComponentHealth:
    config = services.config
    comp = ComponentHealth(
        name="telephony",
        details={
            "provider": services.engine.dispatcher.name,
            "alert_phone_set": bool(config.ALERT_PHONE),
            "from_number_set": bool(config.TWILIO_FROM),
            "voice_url_set": bool(config.TWIML_VOICE_URL),
            "status_callback_set": bool(config.TWILIO_STATUS_CALLBACK_URL),
        },
    )
    if services.engine.config.call_ready:
        comp.message = "Call engine ready"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Call engine prerequisites missing — calls disabled"
    return comp


async def check_alert_engine(services: "Services") -> ComponentHealth:
    engine = services.engine
    return ComponentHealth(
        name="alert_engine",
        message="Running",
        details={
            "tracked_devices": len(engine.store),
            "pending_dispatches": engine.pending_dispatches(),
            "max_call_attempts": engine.config.max_call_attempts,
            "lock_scope": services.listener.rule.lock_scope,
        },
    )


async def run_health_check(services: "Services") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        version=services.config.APP_VERSION,
        environment=services.config.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_event_store, check_telephony, check_alert_engine):
        report.components.append(await check(services))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.debug("Health: %s", report.status.value)
    return report
