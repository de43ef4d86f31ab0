"""
rules.py — Fixed weather threshold rules.

═══════════════════════════════════════════════════════════════════════════
THRESHOLDS
═══════════════════════════════════════════════════════════════════════════

    Rule            Condition (next day)
    ─────────────   ──────────────────────────────────────────────────────
    heavy_rain      precipitation ≥ 25 mm  OR  probability ≥ 80 %
    heat_stress     max temperature ≥ 35 °C
    cold_stress     min temperature ≤ 5 °C
    spray_window    probability < 20 %  AND  max wind < 8 km/h
                    AND ≥ 6 consecutive hourly slots with
                    probability < 20 % AND wind < 8 km/h

Thresholds are module constants and are not read from settings.

Rules are independent: one region/day may raise several candidates (heavy
rain together with cold stress, for example). Each satisfied rule yields
exactly one candidate with its own typed payload.

An hourly slot with a missing probability or wind value breaks a spray run.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from backend.app.alerts.messages import render
from backend.app.alerts.models import (
    AlertPayload,
    ColdStressPayload,
    HeatStressPayload,
    HeavyRainPayload,
    Region,
    SprayWindowPayload,
    WeatherAlertCandidate,
)
from backend.app.ingestion.weather_service import DailySummary, ForecastResult, HourlySlot

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

HEAVY_RAIN_MM = 25.0
HEAVY_RAIN_PROBABILITY = 80.0
HEAT_STRESS_TEMP_C = 35.0
COLD_STRESS_TEMP_C = 5.0
SPRAY_MAX_RAIN_PROBABILITY = 20.0   # strictly below
SPRAY_MAX_WIND_KMH = 8.0            # strictly below
SPRAY_MIN_CONSECUTIVE_HOURS = 6


# ═══════════════════════════════════════════════════════════════════════════
# Individual rules
# ═══════════════════════════════════════════════════════════════════════════

def _is_sprayable(slot: HourlySlot) -> bool:
    if slot.precipitation_probability is None or slot.wind_kmh is None:
        return False
    return (
        slot.precipitation_probability < SPRAY_MAX_RAIN_PROBABILITY
        and slot.wind_kmh < SPRAY_MAX_WIND_KMH
    )


def longest_spray_window(hourly: Sequence[HourlySlot]) -> Tuple[int, Optional[str]]:
    """
    Longest run of consecutive sprayable hours.

    Returns (length, start time of that run). Ties keep the earliest run.
    """
    best_len, best_start = 0, None
    run_len, run_start = 0, None
    for slot in hourly:
        if _is_sprayable(slot):
            if run_len == 0:
                run_start = slot.time
            run_len += 1
            if run_len > best_len:
                best_len, best_start = run_len, run_start
        else:
            run_len, run_start = 0, None
    return best_len, best_start


def check_heavy_rain(day: DailySummary) -> Optional[HeavyRainPayload]:
    if (
        day.precipitation_mm >= HEAVY_RAIN_MM
        or day.precipitation_probability >= HEAVY_RAIN_PROBABILITY
    ):
        return HeavyRainPayload(
            rain_mm=day.precipitation_mm,
            probability=day.precipitation_probability,
        )
    return None


def check_heat_stress(day: DailySummary) -> Optional[HeatStressPayload]:
    if day.temp_max >= HEAT_STRESS_TEMP_C:
        return HeatStressPayload(temp_max=day.temp_max)
    return None


def check_cold_stress(day: DailySummary) -> Optional[ColdStressPayload]:
    if day.temp_min <= COLD_STRESS_TEMP_C:
        return ColdStressPayload(temp_min=day.temp_min)
    return None


def check_spray_window(
    day: DailySummary,
    hourly: Sequence[HourlySlot],
) -> Optional[SprayWindowPayload]:
    if day.precipitation_probability >= SPRAY_MAX_RAIN_PROBABILITY:
        return None
    if day.wind_max_kmh >= SPRAY_MAX_WIND_KMH:
        return None
    hours, start = longest_spray_window(hourly)
    if hours < SPRAY_MIN_CONSECUTIVE_HOURS:
        return None
    return SprayWindowPayload(
        rain_probability=day.precipitation_probability,
        wind_kmh=day.wind_max_kmh,
        window_start=start,
        window_hours=hours,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Evaluator
# ═══════════════════════════════════════════════════════════════════════════

def evaluate(
    region: Region,
    day: DailySummary,
    hourly: Sequence[HourlySlot] = (),
) -> List[WeatherAlertCandidate]:
    """
    Apply every rule to a region's next-day forecast.

    Candidates come back in a fixed order: heavy_rain, heat_stress,
    cold_stress, spray_window.
    """
    payloads: List[AlertPayload] = [
        p for p in (
            check_heavy_rain(day),
            check_heat_stress(day),
            check_cold_stress(day),
            check_spray_window(day, hourly),
        )
        if p is not None
    ]

    candidates = []
    for payload in payloads:
        title, message = render(payload, "en")
        candidates.append(WeatherAlertCandidate(
            region=region.name,
            alert_type=payload.ALERT_TYPE,
            title=title,
            message=message,
            payload=payload,
            target_day=day.day,
        ))
    return candidates


def evaluate_forecast(region: Region, forecast: ForecastResult) -> List[WeatherAlertCandidate]:
    """
    Evaluate a fetch result. An unavailable forecast yields no candidates.
    """
    if not forecast.success or forecast.summary is None:
        logger.warning(
            "Forecast unavailable for %s (%s): %s",
            region.name, forecast.status.value, forecast.error_message,
            extra={"region": region.name},
        )
        return []
    return evaluate(region, forecast.summary, forecast.hourly)
