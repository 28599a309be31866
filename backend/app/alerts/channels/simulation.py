"""
simulation.py — Log-only dispatcher for development.

Every request is accepted and logged; nothing leaves the process.  The most
recent ``max_history`` attempts are kept so a developer (or a test) can see
exactly what would have been sent; older ones are dropped.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from backend.app.alerts.channels.base import NotificationDispatcher
from backend.app.alerts.models import DeliveryAttempt, DeliveryKind, DeliveryStatus

logger = logging.getLogger(__name__)

DEFAULT_HISTORY = 500


class SimulationDispatcher(NotificationDispatcher):
    name = "simulation"

    def __init__(self, max_history: int = DEFAULT_HISTORY) -> None:
        self._lock = threading.Lock()
        self._history: Deque[DeliveryAttempt] = deque(maxlen=max_history)

    @property
    def attempts(self) -> List[DeliveryAttempt]:
        """Retained attempts, oldest first."""
        with self._lock:
            return list(self._history)

    def _record(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        attempt.completed_at = datetime.now(timezone.utc)
        with self._lock:
            self._history.append(attempt)
        return attempt

    def _skip(self, attempt: DeliveryAttempt, reason: str) -> DeliveryAttempt:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.error_message = reason
        return self._record(attempt)

    def send_sms(self, to: Optional[str], from_: Optional[str], body: str) -> DeliveryAttempt:
        attempt = DeliveryAttempt(kind=DeliveryKind.SMS, recipient=to)
        if not to:
            return self._skip(attempt, "No destination number configured")

        attempt.provider_sid = f"SM-SIM-{uuid.uuid4().hex[:10]}"
        attempt.status = DeliveryStatus.SENT
        attempt.provider_response = {
            "mode": "simulated",
            "from": from_,
            "body": body,
            "message_length": len(body),
        }
        logger.info("[SMS/sim] → %s: '%s'", to, body)
        return self._record(attempt)

    def place_call(
        self,
        to: Optional[str],
        from_: Optional[str],
        voice_url: Optional[str],
        callback_url: Optional[str] = None,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(kind=DeliveryKind.CALL, recipient=to)
        if not to:
            return self._skip(attempt, "No destination number configured")

        attempt.provider_sid = f"CA-SIM-{uuid.uuid4().hex[:10]}"
        attempt.status = DeliveryStatus.SENT
        attempt.provider_response = {
            "mode": "simulated",
            "from": from_,
            "url": voice_url,
            "status_callback": callback_url,
        }
        logger.info(
            "[CALL/sim] → %s (twiml=%s, callback=%s)",
            to, voice_url, callback_url,
            extra={"call_sid": attempt.provider_sid},
        )
        return self._record(attempt)

    def by_kind(self, kind: DeliveryKind) -> List[DeliveryAttempt]:
        with self._lock:
            return [a for a in self._history if a.kind == kind]
