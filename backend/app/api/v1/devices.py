"""
FastAPI routes: device telemetry, status and reset.

Paths are fixed by deployed tracker firmware and the dashboard:
    POST /event                      — device posts one event
    GET  /status                     — latest merged status of every device
    GET  /device/{device_id}/events  — full event history of one device
    POST /device/{device_id}/reset   — start a new arming session (admin key)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from backend.app.api.deps import Services, get_services, require_admin
from backend.app.api.schemas import DeviceEventIn, EventAck, ResetResponse
from backend.app.core.errors import PersistenceError
from backend.app.events.store import EventStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["devices"])

# Alert-state fields overlaid on the merged event in /status
_STATUS_FIELDS = ("mode", "sms_sent", "call_attempts", "call_lock", "chase_session_id")


async def _persist(store: EventStore, record: Dict[str, Any]) -> bool:
    """Best-effort write; a failure is logged and never reaches the device."""
    try:
        await store.append(record)
    except PersistenceError as exc:
        logger.error(
            "%s", exc.message,
            extra={"device_id": record.get("device_id")},
        )
        return False
    return True


@router.post(
    "/event",
    response_model=EventAck,
    summary="Ingest one device event",
    description=(
        "Runs the alert engine, then appends the event to the history. "
        "Any event with a device_id is acknowledged, whatever the engine decided."
    ),
)
async def ingest_event(
    event: DeviceEventIn,
    services: Services = Depends(get_services),
):
    payload = event.model_dump(exclude_unset=True)

    outcome = await run_in_threadpool(
        services.engine.handle_event, payload.get("device_id"), payload,
    )

    record = {
        **payload,
        "device_id": outcome.device_id,
        "last_seen": datetime.now(timezone.utc).isoformat(),
        "chase_session_id": outcome.chase_session_id,
    }
    await _persist(services.event_store, record)

    logger.info(
        "EVENT: %s %s", outcome.device_id, payload.get("event_type"),
        extra={"device_id": outcome.device_id, "mode": outcome.mode.value},
    )
    return EventAck(
        device_id=outcome.device_id,
        mode=outcome.mode.value,
        rearmed=outcome.rearmed,
        sms_dispatched=outcome.sms_dispatched,
        call_placed=outcome.call_placed,
        call_attempts=outcome.call_attempts,
        call_lock=outcome.call_lock,
        chase_session_id=outcome.chase_session_id,
    )


@router.get("/status", summary="Latest status of all devices")
async def device_status(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    latest = await services.event_store.latest()
    states = services.engine.snapshot()

    merged: List[Dict[str, Any]] = []
    for device_id, event in latest.items():
        entry = dict(event)
        state = states.get(device_id)
        if state is not None:
            state_dict = state.to_dict()
            entry.update({k: state_dict[k] for k in _STATUS_FIELDS})
        merged.append(entry)
    return merged


@router.get("/device/{device_id}/events", summary="Event history for one device")
async def device_events(
    device_id: str,
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.event_store.history(device_id)


@router.post(
    "/device/{device_id}/reset",
    response_model=ResetResponse,
    summary="Reset the alert engine for one device",
    dependencies=[Depends(require_admin)],
)
async def reset_device(
    device_id: str,
    services: Services = Depends(get_services),
):
    state = await run_in_threadpool(services.engine.reset_device, device_id)
    return ResetResponse(device_id=device_id, state=state.to_dict())
