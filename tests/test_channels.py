"""
test_channels.py — Tests for the telephony backends.

Covers:
    • Message templates (movement, low battery, 160-char limit)
    • Simulation dispatcher (recording, skipped sends)
    • Twilio dispatcher against a mocked REST client
    • Backend selection from settings

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from backend.app.alerts.channels import build_dispatcher
from backend.app.alerts.channels.base import (
    SMS_MAX_GSM7,
    format_low_battery_sms,
    format_movement_sms,
)
from backend.app.alerts.channels.simulation import SimulationDispatcher
from backend.app.alerts.channels.twilio_gateway import TwilioDispatcher
from backend.app.alerts.models import DeliveryKind, DeliveryStatus
from backend.app.core.config import Settings


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Templates
# ═══════════════════════════════════════════════════════════════════════════

class TestTemplates:

    def test_movement_with_fix(self):
        body = format_movement_sms("TB-01", -33.8688, 151.2093)
        assert body == (
            "[TRACKBLOCK] Movement detected on TB-01. "
            "Map: https://maps.google.com/?q=-33.868800,151.209300"
        )

    def test_movement_without_fix(self):
        body = format_movement_sms("TB-01", None, None)
        assert body.endswith("Location not available.")

    def test_low_battery(self):
        assert format_low_battery_sms("TB-01", 11.46) == "[TRACKBLOCK] Low battery on TB-01: 11.5V"

    def test_truncated_to_single_segment(self):
        body = format_movement_sms("X" * 300, 0.0, 0.0)
        assert len(body) == SMS_MAX_GSM7
        assert body.endswith("...")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Simulation
# ═══════════════════════════════════════════════════════════════════════════

class TestSimulationDispatcher:

    def test_sms_recorded(self):
        d = SimulationDispatcher()
        attempt = d.send_sms("+1555", "+1666", "hello")
        assert attempt.ok
        assert attempt.provider_sid.startswith("SM-SIM-")
        assert attempt.provider_response["body"] == "hello"
        assert d.attempts == [attempt]

    def test_call_recorded(self):
        d = SimulationDispatcher()
        attempt = d.place_call("+1555", "+1666", "https://x/twiml", "https://x/cb")
        assert attempt.ok
        assert attempt.kind == DeliveryKind.CALL
        assert attempt.provider_sid.startswith("CA-SIM-")
        assert attempt.provider_response["status_callback"] == "https://x/cb"

    def test_no_recipient_is_skipped(self):
        d = SimulationDispatcher()
        attempt = d.send_sms(None, "+1666", "hello")
        assert attempt.status == DeliveryStatus.SKIPPED
        assert attempt.provider_sid is None
        assert not attempt.ok

    def test_by_kind(self):
        d = SimulationDispatcher()
        d.send_sms("+1", None, "a")
        d.place_call("+1", None, None)
        d.send_sms("+1", None, "b")
        assert len(d.by_kind(DeliveryKind.SMS)) == 2
        assert len(d.by_kind(DeliveryKind.CALL)) == 1

    def test_history_is_bounded(self):
        d = SimulationDispatcher(max_history=3)
        for n in range(5):
            d.send_sms("+1", None, f"msg {n}")
        bodies = [a.provider_response["body"] for a in d.attempts]
        assert bodies == ["msg 2", "msg 3", "msg 4"]

    def test_attempts_is_a_copy(self):
        d = SimulationDispatcher()
        d.send_sms("+1", None, "a")
        d.attempts.clear()
        assert len(d.attempts) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Twilio
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client():
    mock = MagicMock()
    mock.messages.create.return_value = MagicMock(sid="SM123", status="queued")
    mock.calls.create.return_value = MagicMock(sid="CA123", status="queued")
    return mock


class TestTwilioDispatcher:

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            TwilioDispatcher(None, None)

    def test_builds_client_from_credentials(self):
        with patch("backend.app.alerts.channels.twilio_gateway.Client") as client_cls:
            TwilioDispatcher("ACxxx", "token")
        client_cls.assert_called_once_with("ACxxx", "token")

    def test_send_sms(self, client):
        d = TwilioDispatcher(client=client)
        attempt = d.send_sms("+1555", "+1666", "hello")

        client.messages.create.assert_called_once_with(body="hello", from_="+1666", to="+1555")
        assert attempt.ok
        assert attempt.provider_sid == "SM123"

    def test_sms_missing_sender_skipped(self, client):
        attempt = TwilioDispatcher(client=client).send_sms("+1555", None, "hello")
        assert attempt.status == DeliveryStatus.SKIPPED
        client.messages.create.assert_not_called()

    def test_place_call_with_callback(self, client):
        d = TwilioDispatcher(client=client)
        attempt = d.place_call("+1555", "+1666", "https://x/twiml", "https://x/cb")

        client.calls.create.assert_called_once_with(
            to="+1555",
            from_="+1666",
            url="https://x/twiml",
            machine_detection="Enable",
            status_callback="https://x/cb",
            status_callback_event=["completed"],
        )
        assert attempt.ok
        assert attempt.provider_sid == "CA123"

    def test_place_call_without_callback(self, client):
        TwilioDispatcher(client=client).place_call("+1555", "+1666", "https://x/twiml")
        kwargs = client.calls.create.call_args.kwargs
        assert "status_callback" not in kwargs
        assert "status_callback_event" not in kwargs

    def test_call_missing_voice_url_skipped(self, client):
        attempt = TwilioDispatcher(client=client).place_call("+1555", "+1666", None)
        assert attempt.status == DeliveryStatus.SKIPPED
        client.calls.create.assert_not_called()

    def test_rest_exception_becomes_failed_attempt(self, client):
        client.messages.create.side_effect = TwilioRestException(
            status=400, uri="/Messages", msg="bad number", code=21211,
        )
        attempt = TwilioDispatcher(client=client).send_sms("+1555", "+1666", "hello")

        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.provider_response["twilio_code"] == 21211
        assert attempt.provider_response["http_status"] == 400
        assert "sms dispatch to +1555 failed" in attempt.error_message

    def test_network_error_becomes_failed_attempt(self, client):
        client.calls.create.side_effect = ConnectionError("reset by peer")
        attempt = TwilioDispatcher(client=client).place_call("+1555", "+1666", "https://x/t")

        assert attempt.status == DeliveryStatus.FAILED
        assert "reset by peer" in attempt.error_message
        assert attempt.completed_at is not None


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Backend selection
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildDispatcher:

    def test_simulation_default(self):
        assert isinstance(build_dispatcher(Settings()), SimulationDispatcher)

    def test_twilio(self):
        config = Settings(
            TELEPHONY_PROVIDER="twilio",
            TWILIO_ACCOUNT_SID="ACxxx",
            TWILIO_AUTH_TOKEN="token",
        )
        with patch("backend.app.alerts.channels.twilio_gateway.Client"):
            dispatcher = build_dispatcher(config)
        assert isinstance(dispatcher, TwilioDispatcher)

    def test_twilio_without_credentials(self):
        with pytest.raises(ValueError):
            build_dispatcher(Settings(
                TELEPHONY_PROVIDER="twilio",
                TWILIO_ACCOUNT_SID=None,
                TWILIO_AUTH_TOKEN=None,
            ))

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown telephony provider"):
            build_dispatcher(Settings(TELEPHONY_PROVIDER="pigeon"))
