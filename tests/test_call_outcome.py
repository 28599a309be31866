"""
test_call_outcome.py — Tests for the call-status callback listener.

Covers:
    • Duration parsing
    • Human-answer rule (threshold, AnsweredBy requirement)
    • Global vs per-device lock scope
    • Interaction with the alert engine (locked devices stop escalating)

Run with:
    pytest tests/test_call_outcome.py -v
"""

from __future__ import annotations

from concurrent.futures import Executor, Future
from datetime import datetime, timezone

import pytest

from backend.app.alerts.alert_engine import AlertEngine, EngineConfig
from backend.app.alerts.call_outcome import AnswerRule, CallOutcomeListener, parse_duration
from backend.app.alerts.channels.simulation import SimulationDispatcher
from backend.app.alerts.models import DeliveryKind
from backend.app.alerts.state_store import DeviceStateStore
from backend.app.core.config import Settings

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

CALL_CONFIG = EngineConfig(
    alert_phone="+61400000001",
    from_number="+61400000999",
    voice_url="https://example.com/twiml/alarm.xml",
)


class InlineExecutor(Executor):
    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


def _store_with(*device_ids: str) -> DeviceStateStore:
    store = DeviceStateStore()
    for did in device_ids:
        with store.locked(did):
            pass
    return store


def _locks(store: DeviceStateStore):
    return {did: s.call_lock for did, s in store.snapshot().items()}


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Parsing and the answer rule
# ═══════════════════════════════════════════════════════════════════════════

class TestParseDuration:

    @pytest.mark.parametrize("value, expected", [
        ("3", 3), (3, 3), ("0", 0), (" 12 ", 12), ("4.7", 4),
        (None, 0), ("", 0), ("abc", 0), ("-5", 0), (True, 0),
    ])
    def test_values(self, value, expected):
        assert parse_duration(value) == expected


class TestAnswerRule:

    def test_default_threshold(self):
        rule = AnswerRule()
        assert rule.is_human_answer("completed", 2)
        assert rule.is_human_answer("completed", 30)
        assert not rule.is_human_answer("completed", 1)
        assert not rule.is_human_answer("completed", 0)

    @pytest.mark.parametrize("status", ["no-answer", "busy", "failed", "canceled", None])
    def test_other_statuses(self, status):
        assert not AnswerRule().is_human_answer(status, 60)

    def test_require_human(self):
        rule = AnswerRule(require_human=True)
        assert rule.is_human_answer("completed", 10, "human")
        assert rule.is_human_answer("completed", 10, "Human")
        assert not rule.is_human_answer("completed", 10, "machine_start")
        assert not rule.is_human_answer("completed", 10, None)

    def test_custom_threshold(self):
        rule = AnswerRule(min_duration_seconds=5)
        assert not rule.is_human_answer("completed", 4)
        assert rule.is_human_answer("completed", 5)

    def test_invalid_scope(self):
        with pytest.raises(ValueError):
            AnswerRule(lock_scope="fleet")

    def test_from_settings(self):
        rule = AnswerRule.from_settings(Settings(
            CALL_ANSWER_MIN_DURATION=0,
            CALL_REQUIRE_HUMAN_ANSWER=True,
            CALL_LOCK_SCOPE="DEVICE",
        ))
        assert rule.min_duration_seconds == 0
        assert rule.require_human is True
        assert rule.lock_scope == "device"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Listener
# ═══════════════════════════════════════════════════════════════════════════

class TestGlobalScope:

    def test_answered_call_locks_every_device(self):
        store = _store_with("A", "B", "C")
        listener = CallOutcomeListener(store)

        outcome = listener.handle_call_callback("completed", "3", "CA123")

        assert outcome.human_answer is True
        assert sorted(outcome.locked_devices) == ["A", "B", "C"]
        assert _locks(store) == {"A": True, "B": True, "C": True}

    def test_zero_duration_changes_nothing(self):
        store = _store_with("A", "B")
        listener = CallOutcomeListener(store)

        outcome = listener.handle_call_callback("completed", "0")

        assert outcome.human_answer is False
        assert outcome.locked_devices == []
        assert _locks(store) == {"A": False, "B": False}

    def test_unanswered_call_changes_nothing(self):
        store = _store_with("A")
        outcome = CallOutcomeListener(store).handle_call_callback("no-answer", "0")
        assert outcome.human_answer is False
        assert _locks(store) == {"A": False}

    def test_already_locked_not_reported(self):
        store = _store_with("A", "B")
        with store.locked("A") as state:
            state.call_lock = True
        outcome = CallOutcomeListener(store).handle_call_callback("completed", 9)
        assert outcome.locked_devices == ["B"]

    def test_no_devices(self):
        outcome = CallOutcomeListener(DeviceStateStore()).handle_call_callback("completed", 5)
        assert outcome.human_answer is True
        assert outcome.locked_devices == []

    def test_outcome_fields(self):
        store = _store_with("A")
        outcome = CallOutcomeListener(store).handle_call_callback(
            "completed", "4", "CA9", "human",
        )
        assert outcome.duration_seconds == 4
        assert outcome.call_sid == "CA9"
        assert outcome.answered_by == "human"
        assert outcome.locked_devices == ["A"]


class TestDeviceScope:

    def test_only_linked_device_locked(self):
        store = _store_with("A", "B")
        store.remember_call("CA-A", "A")
        listener = CallOutcomeListener(store, AnswerRule(lock_scope="device"))

        outcome = listener.handle_call_callback("completed", "3", "CA-A")

        assert outcome.locked_devices == ["A"]
        assert _locks(store) == {"A": True, "B": False}

    def test_unknown_sid_locks_nothing(self):
        store = _store_with("A")
        listener = CallOutcomeListener(store, AnswerRule(lock_scope="device"))

        outcome = listener.handle_call_callback("completed", "3", "CA-UNKNOWN")

        assert outcome.human_answer is True
        assert outcome.locked_devices == []
        assert _locks(store) == {"A": False}


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: With the engine
# ═══════════════════════════════════════════════════════════════════════════

class TestWithEngine:

    def _engine(self):
        store = DeviceStateStore()
        dispatcher = SimulationDispatcher()
        engine = AlertEngine(
            store, dispatcher, CALL_CONFIG,
            executor=InlineExecutor(), clock=lambda: NOW,
        )
        return engine, store, dispatcher

    def test_answer_stops_further_calls(self):
        engine, store, dispatcher = self._engine()
        listener = CallOutcomeListener(store)
        moving = {"latitude": 0.0, "longitude": 0.0, "movement_confirmed": True}

        engine.handle_event("D1", moving)
        engine.handle_event("D1", moving)
        listener.handle_call_callback("completed", "3")
        outcome = engine.handle_event("D1", moving)

        assert outcome.call_placed is False
        assert len(dispatcher.by_kind(DeliveryKind.CALL)) == 2
        assert store.snapshot("D1")["D1"].call_attempts == 2

    def test_device_scope_uses_placed_call_sid(self):
        engine, store, dispatcher = self._engine()
        listener = CallOutcomeListener(store, AnswerRule(lock_scope="device"))
        moving = {"latitude": 0.0, "longitude": 0.0, "movement_confirmed": True}

        engine.handle_event("D1", moving)
        engine.handle_event("D2", moving)
        sid_d2 = store.snapshot("D2")["D2"].last_call_sid

        outcome = listener.handle_call_callback("completed", "7", sid_d2)

        assert outcome.locked_devices == ["D2"]
        assert engine.handle_event("D1", moving).call_placed is True
        assert engine.handle_event("D2", moving).call_placed is False

    def test_reset_after_answer_restores_escalation(self):
        engine, store, dispatcher = self._engine()
        listener = CallOutcomeListener(store)
        moving = {"latitude": 0.0, "longitude": 0.0, "movement_confirmed": True}

        engine.handle_event("D1", moving)
        listener.handle_call_callback("completed", "3")
        engine.reset_device("D1")
        outcome = engine.handle_event("D1", moving)

        assert outcome.sms_dispatched is True
        assert outcome.call_placed is True
