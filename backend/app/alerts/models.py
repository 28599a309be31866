"""
models.py — Shared data structures for the device alert engine.

Defines:
    • DeviceMode       — OFFLINE / HEARTBEAT / CHASE classification
    • DeliveryKind     — SMS or voice call
    • DeliveryStatus   — outcome of one dispatch attempt
    • DeviceAlertState — per-device escalation bookkeeping
    • DeliveryAttempt  — single SMS / call attempt record
    • EventOutcome     — what the engine did with one event
    • CallOutcome      — what the listener did with one provider callback

═══════════════════════════════════════════════════════════════════════════
ESCALATION SESSION
═══════════════════════════════════════════════════════════════════════════

An arming session runs from one reset (or device re-arm) to the next:

    Flag            Start     Transition                 Cleared by
    ──────────      ─────     ─────────────────────      ─────────────────
    sms_sent        False     → True on first movement   reset / re-arm
    call_attempts   0         +1 per placed call (≤ MAX) reset / re-arm
    call_lock       False     → True on cap or answer    reset / re-arm

``low_battery_sent`` and the last fix are not part of the session: they
survive resets and follow the telemetry.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class DeviceMode(str, Enum):
    """Movement / connectivity classification of a device."""
    OFFLINE   = "offline"     # last event older than the staleness window
    HEARTBEAT = "heartbeat"   # reporting, not moving
    CHASE     = "chase"       # moved ≥ threshold since the previous fix


class DeliveryKind(str, Enum):
    SMS  = "sms"
    CALL = "call"


class DeliveryStatus(str, Enum):
    """Dispatch outcome — provider acceptance, not handset delivery."""
    SENDING = "sending"   # handed to the dispatcher
    SENT    = "sent"      # provider accepted the request
    FAILED  = "failed"    # provider rejected or errored
    SKIPPED = "skipped"   # nothing to do (no recipient configured)


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_chase_session_id() -> str:
    return f"CHS-{uuid.uuid4().hex[:12].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class DeviceAlertState:
    """
    Mutable escalation record for one device.

    Owned by the state store; only mutate it while holding the device's
    lock (see ``DeviceStateStore.locked``).
    """
    device_id: str
    mode: DeviceMode = DeviceMode.OFFLINE
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_event_time: Optional[datetime] = None
    sms_sent: bool = False
    call_attempts: int = 0
    call_lock: bool = False
    low_battery_sent: bool = False
    chase_session_id: Optional[str] = None
    last_battery_voltage: Optional[float] = None
    last_call_sid: Optional[str] = None

    @property
    def has_fix(self) -> bool:
        return self.last_latitude is not None and self.last_longitude is not None

    def reset_session(self) -> None:
        """Clear the escalation flags for a new arming session."""
        self.sms_sent = False
        self.call_attempts = 0
        self.call_lock = False
        self.chase_session_id = None

    def copy(self) -> "DeviceAlertState":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "mode": self.mode.value,
            "last_latitude": self.last_latitude,
            "last_longitude": self.last_longitude,
            "last_event_time": _iso(self.last_event_time),
            "sms_sent": self.sms_sent,
            "call_attempts": self.call_attempts,
            "call_lock": self.call_lock,
            "low_battery_sent": self.low_battery_sent,
            "chase_session_id": self.chase_session_id,
            "last_battery_voltage": self.last_battery_voltage,
            "last_call_sid": self.last_call_sid,
        }


@dataclass
class DeliveryAttempt:
    """Record of one SMS or call request to the telephony provider."""
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    kind: DeliveryKind = DeliveryKind.SMS
    recipient: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.SENDING
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    provider_sid: Optional[str] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SENT


@dataclass
class EventOutcome:
    """What ``AlertEngine.handle_event`` decided for one event."""
    device_id: str
    mode: DeviceMode
    rearmed: bool = False
    has_fix: bool = False
    stale: bool = False
    distance_m: Optional[float] = None
    movement_event: bool = False
    sms_dispatched: bool = False
    call_placed: bool = False
    cap_reached: bool = False
    low_battery_alert: bool = False
    call_attempts: int = 0
    call_lock: bool = False
    chase_session_id: Optional[str] = None


@dataclass
class CallOutcome:
    """What ``CallOutcomeListener.handle_call_callback`` decided."""
    call_status: Optional[str]
    duration_seconds: int
    call_sid: Optional[str] = None
    answered_by: Optional[str] = None
    human_answer: bool = False
    locked_devices: List[str] = field(default_factory=list)
