"""
twilio_gateway.py — SMS and voice calls through the Twilio REST API.

    App  →  twilio.rest.Client  →  Twilio  →  Carrier  →  Handset
                                      │
                                      └── POST /twilio/voice-status
                                          (CallStatus, CallDuration,
                                           CallSid, AnsweredBy)

Calls are placed with a status callback on ``completed`` and answering
machine detection enabled, so the callback carries ``AnsweredBy``.

The SDK is synchronous; the engine only ever calls this from its
dispatch worker pool.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from backend.app.alerts.channels.base import NotificationDispatcher
from backend.app.alerts.models import DeliveryAttempt, DeliveryKind, DeliveryStatus
from backend.app.core.errors import DispatchError

logger = logging.getLogger(__name__)


class TwilioDispatcher(NotificationDispatcher):
    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        *,
        client: Optional[Client] = None,
    ):
        if client is None:
            if not (account_sid and auth_token):
                raise ValueError("Twilio account SID and auth token are required")
            client = Client(account_sid, auth_token)
        self.client = client
        logger.info("Twilio client initialised")

    def _fail(self, attempt: DeliveryAttempt, exc: Exception) -> DeliveryAttempt:
        details: Dict[str, Any] = {}
        if isinstance(exc, TwilioRestException):
            details = {"twilio_code": exc.code, "http_status": exc.status}
        error = DispatchError(attempt.kind.value, attempt.recipient, str(exc), **details)
        logger.error("[%s/Twilio] %s", attempt.kind.value.upper(), error.message)
        attempt.status = DeliveryStatus.FAILED
        attempt.error_message = error.message
        attempt.provider_response = error.details
        attempt.completed_at = datetime.now(timezone.utc)
        return attempt

    def send_sms(self, to: Optional[str], from_: Optional[str], body: str) -> DeliveryAttempt:
        attempt = DeliveryAttempt(kind=DeliveryKind.SMS, recipient=to)
        if not (to and from_):
            attempt.status = DeliveryStatus.SKIPPED
            attempt.error_message = "SMS destination or sender number missing"
            attempt.completed_at = datetime.now(timezone.utc)
            return attempt

        try:
            message = self.client.messages.create(body=body, from_=from_, to=to)
        except Exception as exc:
            return self._fail(attempt, exc)

        attempt.status = DeliveryStatus.SENT
        attempt.provider_sid = message.sid
        attempt.provider_response = {"status": str(message.status)}
        attempt.completed_at = datetime.now(timezone.utc)
        logger.info("[SMS/Twilio] → %s sid=%s", to, message.sid)
        return attempt

    def place_call(
        self,
        to: Optional[str],
        from_: Optional[str],
        voice_url: Optional[str],
        callback_url: Optional[str] = None,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(kind=DeliveryKind.CALL, recipient=to)
        if not (to and from_ and voice_url):
            attempt.status = DeliveryStatus.SKIPPED
            attempt.error_message = "Call destination, sender or TwiML URL missing"
            attempt.completed_at = datetime.now(timezone.utc)
            return attempt

        params: Dict[str, Any] = {
            "to": to,
            "from_": from_,
            "url": voice_url,
            "machine_detection": "Enable",
        }
        if callback_url:
            params["status_callback"] = callback_url
            params["status_callback_event"] = ["completed"]

        try:
            call = self.client.calls.create(**params)
        except Exception as exc:
            return self._fail(attempt, exc)

        attempt.status = DeliveryStatus.SENT
        attempt.provider_sid = call.sid
        attempt.provider_response = {"status": str(call.status)}
        attempt.completed_at = datetime.now(timezone.utc)
        logger.info("[CALL/Twilio] → %s sid=%s", to, call.sid, extra={"call_sid": call.sid})
        return attempt
