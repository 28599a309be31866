"""
alert_engine.py — Device alert state machine and SMS / call escalation.

This is the central coordinator that, for every telemetry event:
    1. Looks up (or creates) the device's DeviceAlertState under its lock
    2. Handles device re-arm signals
    3. Classifies the device OFFLINE / HEARTBEAT / CHASE
    4. Applies the low-battery hysteresis
    5. Escalates confirmed movement: one SMS per session, bounded calls
    6. Hands SMS / call requests to the dispatcher without waiting

═══════════════════════════════════════════════════════════════════════════
EVENT FLOW
═══════════════════════════════════════════════════════════════════════════

    event ──► re-arm? ──yes──► reset session flags ──► done
                │no
                ▼
          last_event_time = event time
                │
          valid fix? ──no──► done (heartbeat only)
                │yes
          older than window? ──yes──► mode = OFFLINE ──► done
                │no
          distance from last fix ≥ threshold ? CHASE : HEARTBEAT
                │
          battery < low  and not sent  → low-battery SMS
          battery ≥ recovery and sent  → re-enable battery alert
                │
          movement confirmed and not call_lock?
                ├── sms_sent false → SMS, sms_sent = True
                └── calls configured, attempts < MAX
                        → attempts += 1, place call
                        → attempts == MAX → call_lock = True

═══════════════════════════════════════════════════════════════════════════
DISPATCH POLICY
═══════════════════════════════════════════════════════════════════════════

    • Flags are set before the request is submitted: a failed send still
      counts (at most one SMS attempt per session, attempts count requests).
    • Requests run on a ThreadPoolExecutor, after the device lock has been
      released; the triggering request never waits for them.
    • Failures are logged, never retried inline, never raised to the device.

Defaults (all overridable through settings):

    Parameter                 Default
    ──────────────────────    ───────
    staleness window          20 s
    movement threshold        10 m
    low battery               12.0 V
    battery recovery          12.5 V
    max call attempts         10
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from backend.app.alerts.channels.base import (
    NotificationDispatcher,
    format_low_battery_sms,
    format_movement_sms,
)
from backend.app.alerts.ingest import TelemetryEvent
from backend.app.alerts.models import (
    DeliveryAttempt,
    DeliveryKind,
    DeliveryStatus,
    DeviceAlertState,
    DeviceMode,
    EventOutcome,
    new_chase_session_id,
)
from backend.app.alerts.state_store import DeviceStateStore
from backend.app.core.config import Settings
from backend.app.core.errors import DispatchError
from backend.app.spatial.distance import haversine_m, is_valid_fix

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Event markers
# ═══════════════════════════════════════════════════════════════════════════

REARM_STATES = frozenset({"demo_armed", "armed"})
REARM_EVENT_TYPES = frozenset({"armed", "rearm"})
CHASE_STATES = frozenset({"demo_chase", "chase"})
MOVEMENT_EVENT_TYPES = frozenset({"movement"})


def is_rearm(event: TelemetryEvent) -> bool:
    return event.state in REARM_STATES or event.event_type in REARM_EVENT_TYPES


def is_movement_event(event: TelemetryEvent) -> bool:
    return (
        event.movement_confirmed
        or event.event_type in MOVEMENT_EVENT_TYPES
        or event.state in CHASE_STATES
    )


# ═══════════════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EngineConfig:
    """Thresholds and telephony targets used by the engine."""
    staleness_window_seconds: float = 20.0
    movement_threshold_m: float = 10.0
    low_battery_volts: float = 12.0
    battery_recovery_volts: float = 12.5
    max_call_attempts: int = 10
    alert_phone: Optional[str] = None
    from_number: Optional[str] = None
    voice_url: Optional[str] = None
    status_callback_url: Optional[str] = None
    dispatch_workers: int = 4

    @property
    def call_ready(self) -> bool:
        return bool(self.alert_phone and self.from_number and self.voice_url)

    @classmethod
    def from_settings(cls, config: Settings) -> "EngineConfig":
        return cls(
            staleness_window_seconds=config.STALENESS_WINDOW_SECONDS,
            movement_threshold_m=config.MOVEMENT_THRESHOLD_METERS,
            low_battery_volts=config.LOW_BATTERY_VOLTS,
            battery_recovery_volts=config.BATTERY_RECOVERY_VOLTS,
            max_call_attempts=config.MAX_CALL_ATTEMPTS,
            alert_phone=config.ALERT_PHONE,
            from_number=config.TWILIO_FROM,
            voice_url=config.TWIML_VOICE_URL,
            status_callback_url=config.TWILIO_STATUS_CALLBACK_URL,
            dispatch_workers=config.DISPATCH_WORKERS,
        )


# (kind, device_id, callable, args)
_Job = Tuple[DeliveryKind, str, Callable[..., DeliveryAttempt], Tuple[Any, ...]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class AlertEngine:
    """
    Consumes device events and drives per-device escalation.

    Parameters
    ----------
    store : DeviceStateStore
        Owner of all DeviceAlertState records.
    dispatcher : NotificationDispatcher
        SMS / call backend.
    config : EngineConfig
    executor : Executor | None
        Where dispatch requests run. A private thread pool by default.
    clock : callable | None
        Returns the current aware UTC datetime (tests pin it).
    """

    def __init__(
        self,
        store: DeviceStateStore,
        dispatcher: NotificationDispatcher,
        config: Optional[EngineConfig] = None,
        *,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.dispatch_workers,
            thread_name_prefix="dispatch",
        )
        self._clock = clock or _utcnow
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    # ── Public operations ──

    def handle_event(self, device_id: Any, fields: Mapping[str, Any]) -> EventOutcome:
        """
        Process one telemetry event and return what was decided.

        Raises
        ------
        ValidationError
            If the device id is missing. No state is touched.
        """
        event = TelemetryEvent.from_fields(device_id, fields)
        jobs: List[_Job] = []

        with self.store.locked(event.device_id) as state:
            outcome = self._evaluate(state, event, jobs)

        for job in jobs:
            self._submit(*job)

        logger.info(
            "Event %s: mode=%s sms=%s call=%s attempts=%d lock=%s",
            outcome.device_id, outcome.mode.value,
            outcome.sms_dispatched, outcome.call_placed,
            outcome.call_attempts, outcome.call_lock,
            extra={"device_id": outcome.device_id, "mode": outcome.mode.value},
        )
        return outcome

    def reset_device(self, device_id: str) -> DeviceAlertState:
        """
        Start a new arming session for a known device.

        Raises
        ------
        NotFoundError
            If the device has never reported.
        """
        with self.store.locked(device_id, create=False) as state:
            state.reset_session()
            snapshot = state.copy()
        logger.info("Alert engine reset for %s", device_id, extra={"device_id": device_id})
        return snapshot

    def snapshot(self, device_id: Optional[str] = None) -> Dict[str, DeviceAlertState]:
        return self.store.snapshot(device_id)

    def pending_dispatches(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for submitted dispatches. True if none are left running."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        self.drain(timeout)
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ── State machine ──

    def _evaluate(
        self,
        state: DeviceAlertState,
        event: TelemetryEvent,
        jobs: List[_Job],
    ) -> EventOutcome:
        cfg = self.config
        now = self._clock()

        if is_rearm(event):
            state.reset_session()
            logger.info(
                "Device %s re-armed — escalation flags cleared", state.device_id,
                extra={"device_id": state.device_id},
            )
            return self._outcome(state, rearmed=True)

        event_time = event.timestamp or now
        state.last_event_time = event_time
        if event.battery_voltage is not None:
            state.last_battery_voltage = event.battery_voltage

        if not is_valid_fix(event.latitude, event.longitude):
            return self._outcome(state)

        if (now - event_time) > timedelta(seconds=cfg.staleness_window_seconds):
            state.mode = DeviceMode.OFFLINE
            logger.info(
                "Device %s event is %.0fs old — OFFLINE",
                state.device_id, (now - event_time).total_seconds(),
                extra={"device_id": state.device_id, "mode": state.mode.value},
            )
            return self._outcome(state, has_fix=True, stale=True)

        distance: Optional[float] = None
        if state.has_fix:
            distance = haversine_m(
                (state.last_latitude, state.last_longitude),
                (event.latitude, event.longitude),
            )
        moved = distance is not None and distance >= cfg.movement_threshold_m
        state.mode = DeviceMode.CHASE if moved else DeviceMode.HEARTBEAT
        state.last_latitude = event.latitude
        state.last_longitude = event.longitude

        outcome = self._outcome(state, has_fix=True)
        outcome.distance_m = distance

        outcome.low_battery_alert = self._check_battery(state, event, jobs)

        movement = is_movement_event(event)
        outcome.movement_event = movement
        if (moved or movement) and state.chase_session_id is None:
            state.chase_session_id = new_chase_session_id()
            logger.info(
                "Chase session %s opened for %s", state.chase_session_id, state.device_id,
                extra={"device_id": state.device_id},
            )

        if movement:
            self._escalate(state, outcome, jobs)

        outcome.call_attempts = state.call_attempts
        outcome.call_lock = state.call_lock
        outcome.chase_session_id = state.chase_session_id
        return outcome

    def _check_battery(
        self,
        state: DeviceAlertState,
        event: TelemetryEvent,
        jobs: List[_Job],
    ) -> bool:
        volts = event.battery_voltage
        if volts is None:
            return False

        cfg = self.config
        if volts < cfg.low_battery_volts and not state.low_battery_sent:
            state.low_battery_sent = True
            body = format_low_battery_sms(state.device_id, volts)
            jobs.append((
                DeliveryKind.SMS, state.device_id, self.dispatcher.send_sms,
                (cfg.alert_phone, cfg.from_number, body),
            ))
            logger.warning(
                "Low battery on %s: %.2fV", state.device_id, volts,
                extra={"device_id": state.device_id},
            )
            return True

        if volts >= cfg.battery_recovery_volts and state.low_battery_sent:
            state.low_battery_sent = False
            logger.info(
                "Battery recovered on %s: %.2fV", state.device_id, volts,
                extra={"device_id": state.device_id},
            )
        return False

    def _escalate(self, state: DeviceAlertState, outcome: EventOutcome, jobs: List[_Job]) -> None:
        cfg = self.config

        if state.call_lock:
            logger.info(
                "Movement on %s ignored — escalation locked", state.device_id,
                extra={"device_id": state.device_id},
            )
            return

        logger.warning(
            "MOVEMENT EVENT for %s", state.device_id,
            extra={"device_id": state.device_id, "mode": state.mode.value},
        )

        if not state.sms_sent:
            state.sms_sent = True
            body = format_movement_sms(state.device_id, state.last_latitude, state.last_longitude)
            jobs.append((
                DeliveryKind.SMS, state.device_id, self.dispatcher.send_sms,
                (cfg.alert_phone, cfg.from_number, body),
            ))
            outcome.sms_dispatched = True

        if not cfg.call_ready:
            logger.info("Call engine prerequisites missing — skip calls")
            return

        if state.call_attempts >= cfg.max_call_attempts:
            state.call_lock = True
            outcome.cap_reached = True
            return

        state.call_attempts += 1
        jobs.append((
            DeliveryKind.CALL, state.device_id, self.dispatcher.place_call,
            (cfg.alert_phone, cfg.from_number, cfg.voice_url, cfg.status_callback_url),
        ))
        outcome.call_placed = True
        logger.info(
            "Placing call %d/%d for %s",
            state.call_attempts, cfg.max_call_attempts, state.device_id,
            extra={"device_id": state.device_id},
        )

        if state.call_attempts >= cfg.max_call_attempts:
            state.call_lock = True
            outcome.cap_reached = True
            logger.warning(
                "Max call attempts reached for %s — call engine locked", state.device_id,
                extra={"device_id": state.device_id},
            )

    @staticmethod
    def _outcome(state: DeviceAlertState, **flags: Any) -> EventOutcome:
        return EventOutcome(
            device_id=state.device_id,
            mode=state.mode,
            call_attempts=state.call_attempts,
            call_lock=state.call_lock,
            chase_session_id=state.chase_session_id,
            **flags,
        )

    # ── Dispatch ──

    def _submit(
        self,
        kind: DeliveryKind,
        device_id: str,
        fn: Callable[..., DeliveryAttempt],
        args: Tuple[Any, ...],
    ) -> None:
        try:
            future = self._executor.submit(self._run_job, kind, device_id, fn, args)
        except RuntimeError as exc:
            # executor already shut down
            error = DispatchError(kind.value, args[0], str(exc))
            logger.error("%s", error.message, extra={"device_id": device_id})
            return

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _run_job(
        self,
        kind: DeliveryKind,
        device_id: str,
        fn: Callable[..., DeliveryAttempt],
        args: Tuple[Any, ...],
    ) -> Optional[DeliveryAttempt]:
        """Worker-side: send, log the result, remember the call SID."""
        try:
            attempt = fn(*args)
        except Exception as exc:
            error = DispatchError(kind.value, args[0], str(exc))
            logger.error(
                "%s", error.message,
                extra={"device_id": device_id, "channel": kind.value},
            )
            return None

        if attempt.status == DeliveryStatus.FAILED:
            logger.error(
                "%s for %s failed: %s", kind.value.upper(), device_id, attempt.error_message,
                extra={"device_id": device_id, "channel": kind.value},
            )
        elif kind == DeliveryKind.CALL and attempt.provider_sid:
            self.store.remember_call(attempt.provider_sid, device_id)
            with self.store.locked(device_id) as state:
                state.last_call_sid = attempt.provider_sid
        return attempt
