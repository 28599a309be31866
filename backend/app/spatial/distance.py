"""
distance.py — Great-circle distance between two GPS fixes.

All distances are in **metres**. Coordinates are in **decimal degrees**.

Haversine Formula
=================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

with R = 6 371 000 m (mean Earth radius).

At the 10 m movement threshold used by the alert engine the spherical
error is far below GPS noise, so nothing more precise is needed.
"""

from __future__ import annotations

import math
from typing import Any, Tuple

EARTH_RADIUS_M: float = 6_371_000.0

LatLon = Tuple[float, float]


def haversine_m(a: LatLon, b: LatLon) -> float:
    """
    Distance in metres between two (lat, lon) pairs.

    No validation: NaN in either input propagates to the result.

    Examples
    --------
    >>> haversine_m((0.0, 0.0), (0.0, 0.0))
    0.0
    >>> round(haversine_m((0.0, 0.0), (0.0, 1.0)))
    111195
    """
    lat1, lon1 = a
    lat2, lon2 = b

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    h = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def is_valid_fix(latitude: Any, longitude: Any) -> bool:
    """True if both values are finite numbers inside the lat/lon ranges."""
    for value in (latitude, longitude):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0
