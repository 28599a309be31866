"""
store.py — Event history backends.

Both backends store the raw device payload plus two server fields:

    last_seen          ISO-8601 receive time
    chase_session_id   session the engine had open when the event arrived

and answer three queries:

    append(payload)        → None
    history(device_id)     → payloads, oldest first
    latest()               → {device_id: merged payload}   (later keys win)

Failures surface as ``PersistenceError``; callers log them and carry on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.app.alerts.ingest import (
    normalize_flag,
    parse_coordinate,
    parse_timestamp,
    parse_voltage,
)
from backend.app.core.database import close_db, get_session_factory
from backend.app.core.errors import PersistenceError
from backend.app.events.orm import DeviceEventRecord


def _merge_latest(payloads: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    latest: Dict[str, Dict[str, Any]] = {}
    for payload in payloads:
        device_id = str(payload.get("device_id"))
        latest[device_id] = {**latest.get(device_id, {}), **payload}
    return latest


class EventStore:
    """Interface shared by the backends."""

    backend = "base"

    async def append(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def history(self, device_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def latest(self) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def count(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryEventStore(EventStore):
    """Process-local list. Lost on restart, like the alert state."""

    backend = "memory"

    def __init__(self) -> None:
        self._events: List[Dict[str, Any]] = []

    async def append(self, payload: Dict[str, Any]) -> None:
        self._events.append(dict(payload))

    async def history(self, device_id: str) -> List[Dict[str, Any]]:
        return [dict(e) for e in self._events if str(e.get("device_id")) == device_id]

    async def latest(self) -> Dict[str, Dict[str, Any]]:
        return _merge_latest(self._events)

    async def count(self) -> int:
        return len(self._events)


class SqlEventStore(EventStore):
    """PostgreSQL ``device_events`` table through async SQLAlchemy."""

    backend = "postgres"

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session_factory()

    @staticmethod
    def _to_record(payload: Dict[str, Any]) -> DeviceEventRecord:
        received = parse_timestamp(payload.get("last_seen")) or datetime.now(timezone.utc)
        return DeviceEventRecord(
            device_id=str(payload.get("device_id")),
            event_type=_short(payload.get("event_type")),
            state=_short(payload.get("state")),
            latitude=parse_coordinate(payload.get("latitude")),
            longitude=parse_coordinate(payload.get("longitude")),
            battery_voltage=parse_voltage(payload.get("battery_voltage")),
            movement_confirmed=normalize_flag(payload.get("movement_confirmed")),
            chase_session_id=payload.get("chase_session_id"),
            event_time=parse_timestamp(payload.get("timestamp")),
            received_at=received,
            payload=payload,
        )

    async def append(self, payload: Dict[str, Any]) -> None:
        try:
            async with self._session_factory() as session:
                session.add(self._to_record(payload))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError("append", str(exc), device_id=payload.get("device_id")) from exc

    async def _payloads(self, device_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(DeviceEventRecord.payload).order_by(DeviceEventRecord.id)
        if device_id is not None:
            stmt = stmt.where(DeviceEventRecord.device_id == device_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [dict(p) for p in result.scalars().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError("read", str(exc), device_id=device_id) from exc

    async def history(self, device_id: str) -> List[Dict[str, Any]]:
        return await self._payloads(device_id)

    async def latest(self) -> Dict[str, Dict[str, Any]]:
        return _merge_latest(await self._payloads())

    async def count(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(func.count(DeviceEventRecord.id)))
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError("count", str(exc)) from exc

    async def close(self) -> None:
        await close_db()


def _short(value: Any, limit: int = 64) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:limit]


def build_event_store(backend: str) -> EventStore:
    backend = backend.lower()
    if backend == "memory":
        return InMemoryEventStore()
    if backend == "postgres":
        return SqlEventStore()
    raise ValueError(f"Unknown event store backend: {backend}")
