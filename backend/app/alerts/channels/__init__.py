"""
channels — Telephony backends for SMS and voice calls.

Each backend is a ``NotificationDispatcher`` exposing:
    send_sms(to, from_, body)                      → DeliveryAttempt
    place_call(to, from_, voice_url, callback_url) → DeliveryAttempt

Backends are stateless towards the engine. Session bookkeeping lives in
alert_engine.
"""

from __future__ import annotations

from backend.app.alerts.channels.base import NotificationDispatcher
from backend.app.alerts.channels.simulation import SimulationDispatcher
from backend.app.core.config import Settings


def build_dispatcher(config: Settings) -> NotificationDispatcher:
    """Pick the backend named by ``TELEPHONY_PROVIDER``."""
    provider = config.TELEPHONY_PROVIDER.lower()
    if provider == "simulation":
        return SimulationDispatcher()
    if provider == "twilio":
        from backend.app.alerts.channels.twilio_gateway import TwilioDispatcher

        return TwilioDispatcher(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
    raise ValueError(f"Unknown telephony provider: {config.TELEPHONY_PROVIDER}")
