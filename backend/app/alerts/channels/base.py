"""
base.py — Dispatcher interface and message templates.

A dispatcher exposes two calls, both returning a ``DeliveryAttempt``:

    send_sms(to, from_, body)
    place_call(to, from_, voice_url, callback_url)

Dispatchers never raise for provider failures: the failure is recorded on
the attempt (status FAILED, ``error_message``) and logged.  The engine
submits them to a worker pool and does not wait for the result.

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATES (≤160 chars, GSM 7-bit)
═══════════════════════════════════════════════════════════════════════════

    Movement:
        "[TRACKBLOCK] Movement detected on {device}. Map: {maps_url}"

    Low battery:
        "[TRACKBLOCK] Low battery on {device}: {volts:.1f}V"
"""

from __future__ import annotations

from typing import Optional

from backend.app.alerts.models import DeliveryAttempt

SMS_MAX_GSM7 = 160
SMS_PREFIX = "[TRACKBLOCK] "
MAPS_URL = "https://maps.google.com/?q={lat:.6f},{lon:.6f}"


def _fit(text: str) -> str:
    if len(text) <= SMS_MAX_GSM7:
        return text
    return text[: SMS_MAX_GSM7 - 3] + "..."


def format_movement_sms(
    device_id: str,
    latitude: Optional[float],
    longitude: Optional[float],
) -> str:
    """Movement alert body, with a map link when a fix is known."""
    if latitude is not None and longitude is not None:
        where = "Map: " + MAPS_URL.format(lat=latitude, lon=longitude)
    else:
        where = "Location not available."
    return _fit(f"{SMS_PREFIX}Movement detected on {device_id}. {where}")


def format_low_battery_sms(device_id: str, volts: float) -> str:
    return _fit(f"{SMS_PREFIX}Low battery on {device_id}: {volts:.1f}V")


class NotificationDispatcher:
    """Base class for telephony backends."""

    name = "base"

    def send_sms(self, to: Optional[str], from_: Optional[str], body: str) -> DeliveryAttempt:
        raise NotImplementedError

    def place_call(
        self,
        to: Optional[str],
        from_: Optional[str],
        voice_url: Optional[str],
        callback_url: Optional[str] = None,
    ) -> DeliveryAttempt:
        raise NotImplementedError
