"""
ingest.py — Normalisation of raw device payload values.

Device firmware has shipped several encodings for the same field over
time.  Everything is converted here, once, so the engine only ever sees
typed values.

``movement_confirmed`` truth table
----------------------------------

    Raw value                       Result
    ─────────────────────────       ──────
    True                            True
    1            (int)              True
    "true"  / "1"  (any case,       True
    surrounding whitespace ignored)
    anything else                   False
    (False, 0, 1.0, "yes", None…)

Timestamps
----------

    • int/float   → epoch seconds, or epoch milliseconds when > 1e11
    • str         → numeric string as above, else ISO-8601 ("Z" allowed)
    • naive datetimes are taken as UTC
    • missing / unparsable → None (caller substitutes processing time)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

_EPOCH_MS_CUTOFF = 1e11
_TRUE_STRINGS = frozenset({"true", "1"})


def normalize_flag(value: Any) -> bool:
    """Apply the ``movement_confirmed`` truth table (see module docstring)."""
    if value is True:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return result


def parse_coordinate(value: Any) -> Optional[float]:
    """Numeric (or numeric string) coordinate, else None."""
    return _to_float(value)


def parse_voltage(value: Any) -> Optional[float]:
    """Finite numeric battery voltage, else None."""
    volts = _to_float(value)
    if volts is None or not math.isfinite(volts):
        return None
    return volts


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a device timestamp into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    numeric = _to_float(value)
    if numeric is not None:
        if not math.isfinite(numeric):
            return None
        if numeric > _EPOCH_MS_CUTOFF:
            numeric /= 1000.0
        try:
            return datetime.fromtimestamp(numeric, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Unparsable event timestamp %r — using receive time", value)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TelemetryEvent:
    """A device event after normalisation."""
    device_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[datetime] = None
    event_type: Optional[str] = None
    state: Optional[str] = None
    movement_confirmed: bool = False
    battery_voltage: Optional[float] = None

    @classmethod
    def from_fields(cls, device_id: Any, fields: Mapping[str, Any]) -> "TelemetryEvent":
        """
        Build an event from a raw field mapping.

        Raises
        ------
        ValidationError
            If ``device_id`` is missing or blank.
        """
        clean_id = _clean_text(device_id)
        if clean_id is None:
            raise ValidationError("device_id is required", field="device_id")

        return cls(
            device_id=clean_id,
            latitude=parse_coordinate(fields.get("latitude")),
            longitude=parse_coordinate(fields.get("longitude")),
            timestamp=parse_timestamp(fields.get("timestamp")),
            event_type=_clean_text(fields.get("event_type")),
            state=_clean_text(fields.get("state")),
            movement_confirmed=normalize_flag(fields.get("movement_confirmed")),
            battery_voltage=parse_voltage(fields.get("battery_voltage")),
        )
