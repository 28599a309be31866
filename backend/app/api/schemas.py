"""
Pydantic schemas for the device and telephony API.

Device firmware has sent several shapes of the same event over time, so
the inbound event model is deliberately loose (``Any`` fields, extra keys
kept).  Real normalisation happens in ``alerts.ingest``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class DeviceEventIn(BaseModel):
    """One telemetry event as posted by a tracker."""

    model_config = ConfigDict(extra="allow")

    device_id: Any = Field(None, examples=["TB-0001"])
    latitude: Any = Field(None, examples=[-33.8688])
    longitude: Any = Field(None, examples=[151.2093])
    timestamp: Any = Field(
        None, examples=["2025-01-01T10:00:00Z"],
        description="Epoch seconds / milliseconds or ISO-8601",
    )
    event_type: Any = Field(None, examples=["movement"])
    state: Any = Field(None, examples=["demo_armed"])
    movement_confirmed: Any = Field(
        None, examples=[True],
        description='true, 1, "true" and "1" count as confirmed',
    )
    battery_voltage: Any = Field(None, examples=[12.4])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class EventAck(BaseModel):
    """Always returned for an accepted event, whatever the engine decided."""
    ok: bool = True
    device_id: str
    mode: str
    rearmed: bool = False
    sms_dispatched: bool = False
    call_placed: bool = False
    call_attempts: int = 0
    call_lock: bool = False
    chase_session_id: Optional[str] = None


class ResetResponse(BaseModel):
    ok: bool = True
    device_id: str
    state: Dict[str, Any]


class CallCallbackAck(BaseModel):
    ok: bool = True
    human_answer: bool
    locked_devices: List[str] = Field(default_factory=list)
