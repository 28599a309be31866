"""
call_outcome.py — Twilio call-status callbacks → call lock.

A call counts as a **real human answer** when:

    CallStatus == "completed"
    and CallDuration ≥ CALL_ANSWER_MIN_DURATION      (default 2 s)
    and, if CALL_REQUIRE_HUMAN_ANSWER, AnsweredBy == "human"

Earlier deployments used 0 s and 5 s thresholds and some relied on
``AnsweredBy`` alone, hence the settings.

Lock scope (``CALL_LOCK_SCOPE``):

    global   every tracked device is locked (long-standing behaviour: one
             answered call silences all devices)
    device   only the device whose call has this CallSid is locked

Every other callback is logged and ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from backend.app.alerts.models import CallOutcome
from backend.app.alerts.state_store import DeviceStateStore
from backend.app.core.config import Settings

logger = logging.getLogger(__name__)

LOCK_SCOPES = ("global", "device")


def parse_duration(value: Any) -> int:
    """Whole seconds from a callback field; missing or garbage → 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(int(float(str(value).strip())), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class AnswerRule:
    min_duration_seconds: int = 2
    require_human: bool = False
    lock_scope: str = "global"

    def __post_init__(self) -> None:
        if self.lock_scope not in LOCK_SCOPES:
            raise ValueError(f"lock_scope must be one of {LOCK_SCOPES}, got {self.lock_scope!r}")

    @classmethod
    def from_settings(cls, config: Settings) -> "AnswerRule":
        return cls(
            min_duration_seconds=config.CALL_ANSWER_MIN_DURATION,
            require_human=config.CALL_REQUIRE_HUMAN_ANSWER,
            lock_scope=config.CALL_LOCK_SCOPE.lower(),
        )

    def is_human_answer(
        self,
        call_status: Optional[str],
        duration_seconds: int,
        answered_by: Optional[str] = None,
    ) -> bool:
        if call_status != "completed" or duration_seconds < self.min_duration_seconds:
            return False
        if self.require_human:
            return (answered_by or "").lower() == "human"
        return True


class CallOutcomeListener:
    """Applies the answer rule to provider callbacks."""

    def __init__(self, store: DeviceStateStore, rule: Optional[AnswerRule] = None):
        self.store = store
        self.rule = rule or AnswerRule()

    def handle_call_callback(
        self,
        call_status: Optional[str],
        call_duration_seconds: Any,
        call_sid: Optional[str] = None,
        answered_by: Optional[str] = None,
    ) -> CallOutcome:
        duration = parse_duration(call_duration_seconds)
        outcome = CallOutcome(
            call_status=call_status,
            duration_seconds=duration,
            call_sid=call_sid,
            answered_by=answered_by,
        )
        logger.info(
            "CALL CALLBACK: status=%s duration=%ss sid=%s answered_by=%s",
            call_status, duration, call_sid, answered_by,
            extra={"call_sid": call_sid, "call_status": call_status},
        )

        if not self.rule.is_human_answer(call_status, duration, answered_by):
            return outcome

        outcome.human_answer = True
        if self.rule.lock_scope == "device":
            targets = self._device_targets(call_sid)
        else:
            targets = self.store.device_ids()

        outcome.locked_devices = self._lock(targets)
        logger.warning(
            "REAL HUMAN ANSWER DETECTED — call engine locked for %d device(s)",
            len(outcome.locked_devices),
            extra={"call_sid": call_sid},
        )
        return outcome

    def _device_targets(self, call_sid: Optional[str]) -> List[str]:
        device_id = self.store.device_for_call(call_sid)
        if device_id is None:
            logger.warning(
                "Answered call %s is not linked to any device — nothing locked", call_sid,
                extra={"call_sid": call_sid},
            )
            return []
        return [device_id]

    def _lock(self, device_ids: List[str]) -> List[str]:
        newly_locked: List[str] = []
        for device_id in device_ids:
            with self.store.locked(device_id) as state:
                if not state.call_lock:
                    state.call_lock = True
                    newly_locked.append(device_id)
        return newly_locked
