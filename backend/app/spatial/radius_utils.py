"""
radius_utils.py — Great-circle distance helpers for region resolution.

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where φ is latitude and λ longitude in radians, R ≈ 6,371 km.

Haversine is accurate to ~0.5%, far below the size of a district, which
is the only granularity the alert engine cares about.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, TypeVar


EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius

T = TypeVar("T")


@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


def haversine(p1: Coordinate, p2: Coordinate) -> float:
    """
    Great-circle distance between two coordinates in km.

    >>> ktm = Coordinate(27.7172, 85.324)
    >>> round(haversine(ktm, ktm), 3)
    0.0
    """
    dlat = p2.lat_rad - p1.lat_rad
    dlon = p2.lon_rad - p1.lon_rad

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(p1.lat_rad) * math.cos(p2.lat_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def nearest(
    origin: Coordinate,
    candidates: Iterable[Tuple[T, Coordinate]],
    *,
    max_km: Optional[float] = None,
) -> Optional[Tuple[T, float]]:
    """
    Return (item, distance_km) of the candidate closest to origin.

    Candidates farther than max_km are ignored. None if nothing qualifies.
    """
    best: Optional[Tuple[T, float]] = None
    for item, coord in candidates:
        dist = haversine(origin, coord)
        if max_km is not None and dist > max_km:
            continue
        if best is None or dist < best[1]:
            best = (item, dist)
    return best
