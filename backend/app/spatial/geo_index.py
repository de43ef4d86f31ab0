"""
geo_index.py — District reference table and user → region resolution.

A Region is the unit both the weather job and the outbreak detector scope
by. A farmer resolves to a Region by district name (case-insensitive), or,
when only a coordinate is on file, by snapping to the nearest district
centre within GEO_MAX_SNAP_KM.

Users that resolve nowhere have "no location on file": the weather job
skips them and the outbreak detector no-ops for their observations.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from backend.app.alerts.models import FarmerProfile, Region
from backend.app.core.config import settings
from backend.app.spatial.radius_utils import Coordinate, nearest

logger = logging.getLogger(__name__)

_TZ = "Asia/Kathmandu"


# ═══════════════════════════════════════════════════════════════════════════
# Reference data
# ═══════════════════════════════════════════════════════════════════════════

NEPAL_DISTRICTS: Dict[str, Region] = {
    r.name.lower(): r
    for r in (
        Region("Kathmandu",      "Bagmati",       27.7172, 85.3240, _TZ, "काठमाडौं"),
        Region("Lalitpur",       "Bagmati",       27.6588, 85.3247, _TZ, "ललितपुर"),
        Region("Bhaktapur",      "Bagmati",       27.6712, 85.4298, _TZ, "भक्तपुर"),
        Region("Chitwan",        "Bagmati",       27.5291, 84.3542, _TZ, "चितवन"),
        Region("Pokhara",        "Gandaki",       28.2096, 83.9856, _TZ, "पोखरा"),
        Region("Lamjung",        "Gandaki",       28.2833, 84.4167, _TZ, "लमजुङ"),
        Region("Jhapa",          "Koshi",         26.6333, 87.8833, _TZ, "झापा"),
        Region("Morang",         "Koshi",         26.6500, 87.4667, _TZ, "मोरङ"),
        Region("Sunsari",        "Koshi",         26.6667, 87.1667, _TZ, "सुनसरी"),
        Region("Kaski",          "Gandaki",       28.3000, 84.0000, _TZ, "कास्की"),
        Region("Rupandehi",      "Lumbini",       27.5000, 83.4167, _TZ, "रुपन्देही"),
        Region("Bara",           "Madhesh",       27.0667, 85.0500, _TZ, "बारा"),
        Region("Parsa",          "Madhesh",       27.1500, 84.9667, _TZ, "पर्सा"),
        Region("Makwanpur",      "Bagmati",       27.4167, 85.0333, _TZ, "मकवानपुर"),
        Region("Dhading",        "Bagmati",       27.8667, 84.9167, _TZ, "धादिङ"),
        Region("Nuwakot",        "Bagmati",       27.9167, 85.1667, _TZ, "नुवाकोट"),
        Region("Sindhupalchok",  "Bagmati",       27.9500, 85.6833, _TZ, "सिन्धुपाल्चोक"),
        Region("Dolakha",        "Bagmati",       27.8000, 86.0667, _TZ, "दोलखा"),
        Region("Ramechhap",      "Bagmati",       27.3333, 86.0833, _TZ, "रामेछाप"),
        Region("Kavrepalanchok", "Bagmati",       27.5333, 85.5333, _TZ, "काभ्रेपलाञ्चोक"),
    )
}


def get_region(name: Optional[str]) -> Optional[Region]:
    """Look up a district by English or Nepali name, case-insensitive."""
    if not name:
        return None
    key = name.strip().lower()
    region = NEPAL_DISTRICTS.get(key)
    if region is not None:
        return region
    for candidate in NEPAL_DISTRICTS.values():
        if candidate.name_local and candidate.name_local == name.strip():
            return candidate
    return None


def all_regions() -> List[Region]:
    return list(NEPAL_DISTRICTS.values())


# ═══════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════

def snap_to_region(
    latitude: float,
    longitude: float,
    *,
    max_km: Optional[float] = None,
) -> Optional[Tuple[Region, float]]:
    """
    Nearest district centre to a coordinate.

    Returns (region, distance_km) or None when nothing lies within max_km
    (defaults to settings.GEO_MAX_SNAP_KM).
    """
    limit = settings.GEO_MAX_SNAP_KM if max_km is None else max_km
    try:
        origin = Coordinate(latitude, longitude)
    except ValueError:
        logger.warning("Ignoring invalid coordinate (%s, %s)", latitude, longitude)
        return None
    return nearest(
        origin,
        ((r, r.coordinate) for r in NEPAL_DISTRICTS.values()),
        max_km=limit,
    )


def resolve_region(profile: FarmerProfile) -> Optional[Region]:
    """
    Resolve a profile to its Region.

    District name wins; a coordinate is only consulted when the district is
    missing or unknown. None means no usable location on file.
    """
    region = get_region(profile.district)
    if region is not None:
        return region

    if profile.latitude is not None and profile.longitude is not None:
        snapped = snap_to_region(profile.latitude, profile.longitude)
        if snapped is not None:
            region, dist = snapped
            logger.debug(
                "Snapped user %s to %s (%.1f km)",
                profile.user_id, region.name, dist,
                extra={"recipient_id": profile.user_id, "region": region.name},
            )
            return region

    return None


def group_by_region(
    profiles: Iterable[FarmerProfile],
) -> Tuple["OrderedDict[str, List[FarmerProfile]]", List[FarmerProfile]]:
    """
    Group profiles by resolved region name.

    Returns
    -------
    (groups, unresolved)
        groups maps region name → profiles in first-seen order;
        unresolved lists profiles with no location on file.
    """
    groups: "OrderedDict[str, List[FarmerProfile]]" = OrderedDict()
    unresolved: List[FarmerProfile] = []
    for profile in profiles:
        region = resolve_region(profile)
        if region is None:
            unresolved.append(profile)
            continue
        groups.setdefault(region.name, []).append(profile)
    return groups, unresolved
