"""
state_store.py — Keyed store of DeviceAlertState with per-device locking.

FastAPI runs the engine in its worker threads, so two events for the same
device can be in flight together.  Each device id owns a
``threading.Lock``; every read-modify-write of that device's state happens
inside ``store.locked(device_id)``.  The store-wide guard is held only long
enough to look up or create an entry, so different devices never wait on
each other.

Snapshots copy each state while holding its lock and never hold more than
one device lock at a time.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from backend.app.alerts.models import DeviceAlertState
from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)


class DeviceStateStore:
    """In-process map ``device_id → DeviceAlertState``."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, Tuple[threading.Lock, DeviceAlertState]] = {}
        self._call_index: Dict[str, str] = {}

    def _entry(self, device_id: str, create: bool) -> Tuple[threading.Lock, DeviceAlertState]:
        with self._guard:
            entry = self._entries.get(device_id)
            if entry is None:
                if not create:
                    raise NotFoundError("Device", device_id=device_id)
                entry = (threading.Lock(), DeviceAlertState(device_id=device_id))
                self._entries[device_id] = entry
                logger.info("Tracking new device %s", device_id, extra={"device_id": device_id})
            return entry

    @contextmanager
    def locked(self, device_id: str, *, create: bool = True) -> Iterator[DeviceAlertState]:
        """
        Hold the device's lock and yield its live state.

        Raises
        ------
        NotFoundError
            If ``create`` is False and the device has never been seen.
        """
        lock, state = self._entry(device_id, create)
        with lock:
            yield state

    def device_ids(self) -> List[str]:
        with self._guard:
            return list(self._entries)

    def snapshot(self, device_id: Optional[str] = None) -> Dict[str, DeviceAlertState]:
        """
        Point-in-time copies of device states.

        Each copy is consistent on its own; copies of different devices may
        be taken a few microseconds apart.
        """
        ids = [device_id] if device_id is not None else self.device_ids()
        result: Dict[str, DeviceAlertState] = {}
        for did in ids:
            with self._guard:
                entry = self._entries.get(did)
            if entry is None:
                continue
            lock, state = entry
            with lock:
                result[did] = state.copy()
        return result

    def remember_call(self, call_sid: str, device_id: str) -> None:
        """Map a provider call SID to the device that placed it."""
        with self._guard:
            self._call_index[call_sid] = device_id

    def device_for_call(self, call_sid: Optional[str]) -> Optional[str]:
        if not call_sid:
            return None
        with self._guard:
            return self._call_index.get(call_sid)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
            self._call_index.clear()

    def __contains__(self, device_id: object) -> bool:
        with self._guard:
            return device_id in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
