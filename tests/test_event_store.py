"""
test_event_store.py — Tests for the event history backends.

Covers:
    • In-memory append / history / latest merge / count
    • SQL record mapping from loose payloads
    • SQLAlchemy failures surfacing as PersistenceError
    • Backend selection

Run with:
    pytest tests/test_event_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from backend.app.core.errors import PersistenceError
from backend.app.events.store import (
    InMemoryEventStore,
    SqlEventStore,
    build_event_store,
)


def _run(coro):
    return asyncio.run(coro)


class _BrokenSession:
    """Async context manager whose every operation raises like a dead pool."""

    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("refused"))

    async def __aexit__(self, *exc):
        return False


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: In-memory
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryEventStore:

    def test_history_in_order(self):
        store = InMemoryEventStore()

        async def scenario():
            await store.append({"device_id": "A", "n": 1})
            await store.append({"device_id": "B", "n": 2})
            await store.append({"device_id": "A", "n": 3})
            return await store.history("A")

        assert [e["n"] for e in _run(scenario())] == [1, 3]

    def test_unknown_device_history_empty(self):
        assert _run(InMemoryEventStore().history("nobody")) == []

    def test_latest_merges_later_keys(self):
        store = InMemoryEventStore()

        async def scenario():
            await store.append({"device_id": "A", "latitude": 1.0, "battery_voltage": 12.4})
            await store.append({"device_id": "A", "latitude": 2.0})
            await store.append({"device_id": "B", "latitude": 9.0})
            return await store.latest()

        latest = _run(scenario())
        assert latest["A"] == {"device_id": "A", "latitude": 2.0, "battery_voltage": 12.4}
        assert latest["B"]["latitude"] == 9.0

    def test_stored_payload_is_a_copy(self):
        store = InMemoryEventStore()
        payload = {"device_id": "A", "n": 1}
        _run(store.append(payload))
        payload["n"] = 99
        assert _run(store.history("A"))[0]["n"] == 1

    def test_count(self):
        store = InMemoryEventStore()

        async def scenario():
            for i in range(4):
                await store.append({"device_id": "A", "n": i})
            return await store.count()

        assert _run(scenario()) == 4


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: SQL
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlEventStore:

    def test_record_mapping(self):
        record = SqlEventStore._to_record({
            "device_id": 42,
            "event_type": "movement",
            "state": "demo_chase",
            "latitude": "-33.5",
            "longitude": 151.0,
            "battery_voltage": "12.2",
            "movement_confirmed": "1",
            "timestamp": "2025-01-01T10:00:00Z",
            "last_seen": "2025-01-01T10:00:01+00:00",
            "chase_session_id": "CHS-ABC",
        })
        assert record.device_id == "42"
        assert record.latitude == -33.5
        assert record.battery_voltage == 12.2
        assert record.movement_confirmed is True
        assert record.chase_session_id == "CHS-ABC"
        assert record.event_time == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert record.received_at == datetime(2025, 1, 1, 10, 0, 1, tzinfo=timezone.utc)
        assert record.payload["state"] == "demo_chase"

    def test_record_mapping_loose_payload(self):
        record = SqlEventStore._to_record({"device_id": "A", "latitude": "north"})
        assert record.latitude is None
        assert record.event_time is None
        assert record.received_at is not None
        assert record.movement_confirmed is False

    def test_long_event_type_truncated(self):
        record = SqlEventStore._to_record({"device_id": "A", "event_type": "x" * 200})
        assert len(record.event_type) == 64

    @pytest.mark.parametrize("operation, call", [
        ("append", lambda s: s.append({"device_id": "A"})),
        ("read", lambda s: s.history("A")),
        ("read", lambda s: s.latest()),
        ("count", lambda s: s.count()),
    ])
    def test_database_errors_wrapped(self, operation, call):
        store = SqlEventStore(session_factory=_BrokenSession)
        with pytest.raises(PersistenceError) as exc_info:
            _run(call(store))
        assert exc_info.value.details["operation"] == operation
        assert exc_info.value.status_code == 500


class TestBuildEventStore:

    def test_memory(self):
        assert isinstance(build_event_store("memory"), InMemoryEventStore)

    def test_memory_case_insensitive(self):
        assert build_event_store("MEMORY").backend == "memory"

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_event_store("mongo")
