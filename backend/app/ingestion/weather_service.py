"""
weather_service.py — Open-Meteo short-range forecast fetcher.

Fetches a 3-day forecast for a region's representative coordinate and
reduces it to what the rule evaluator consumes:

    • DailySummary  — next-day max/min temperature, precipitation total,
                      precipitation probability, max wind
    • HourlySlot[]  — the next day's 24 hourly slots (probability, wind)

Open-Meteo API Reference:
    https://open-meteo.com/en/docs

Indexing
========
The request asks for the region's local timezone, so daily index 0 is
"today" and index 1 is "tomorrow" in local time. Hourly slots are selected
by matching their timestamp date to daily index 1, which for a 3-day
request is hourly indexes 24…47.

Error Handling Strategy
=======================
The weather job treats an unavailable forecast as "skip this region", so
fetch() never raises. Every failure becomes a ForecastResult with
success=False:

    Transport error / DNS / refused    → NETWORK_ERROR
    Timeout (FORECAST_FETCH_TIMEOUT)   → TIMEOUT
    Non-2xx response                   → API_ERROR
    Invalid JSON, missing arrays,
    missing next-day values            → MALFORMED

There is no retry within a run. The next scheduled run is the retry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from backend.app.alerts.models import Region
from backend.app.core.cache import cache_get, cache_set
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

HOURLY_VARIABLES = [
    "temperature_2m",
    "precipitation",
    "precipitation_probability",
    "wind_speed_10m",
]

DAILY_VARIABLES = [
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "precipitation_probability_max",
    "wind_speed_10m_max",
]

NEXT_DAY_INDEX = 1


class FetchStatus(str, Enum):
    """Outcome of a forecast fetch."""
    SUCCESS = "success"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    MALFORMED = "malformed"
    INVALID_INPUT = "invalid_input"


# ═══════════════════════════════════════════════════════════════════════════
# Data structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DailySummary:
    """Next-day aggregates, in °C, mm, % and km/h."""
    day: date
    temp_max: float
    temp_min: float
    precipitation_mm: float
    precipitation_probability: float
    wind_max_kmh: float


@dataclass(frozen=True)
class HourlySlot:
    """One hour of the next-day window. Values may be None (gap)."""
    time: str
    precipitation_probability: Optional[float]
    wind_kmh: Optional[float]
    temperature: Optional[float] = None
    precipitation_mm: Optional[float] = None


@dataclass
class ForecastResult:
    """
    Result of one forecast fetch.

    Callers check `success` before touching `summary`/`hourly`.
    """
    success: bool
    status: FetchStatus
    region: str
    latitude: float
    longitude: float
    summary: Optional[DailySummary] = None
    hourly: List[HourlySlot] = field(default_factory=list)
    error_message: str = ""
    fetch_duration_ms: int = 0
    from_cache: bool = False

    @classmethod
    def unavailable(
        cls,
        region: Region,
        status: FetchStatus,
        message: str,
        duration_ms: int = 0,
    ) -> "ForecastResult":
        return cls(
            success=False,
            status=status,
            region=region.name,
            latitude=region.latitude,
            longitude=region.longitude,
            error_message=message,
            fetch_duration_ms=duration_ms,
        )


class MalformedForecast(ValueError):
    """Raised internally when a payload lacks the next-day data."""


# ═══════════════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════════════

def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _required_next_day(daily: Dict[str, Any], key: str) -> float:
    values = daily.get(key)
    if not isinstance(values, list) or len(values) <= NEXT_DAY_INDEX:
        raise MalformedForecast(f"daily.{key} has no next-day entry")
    value = _opt_float(values[NEXT_DAY_INDEX])
    if value is None:
        raise MalformedForecast(f"daily.{key} next-day value missing")
    return value


def _hourly_array(hourly: Dict[str, Any], key: str) -> List[Any]:
    values = hourly.get(key)
    if values is None:
        return []
    if not isinstance(values, list):
        raise MalformedForecast(f"hourly.{key} is not an array")
    return values


def parse_forecast(data: Dict[str, Any]) -> Tuple[DailySummary, List[HourlySlot]]:
    """
    Reduce a raw Open-Meteo payload to the next-day summary and hourly slots.

    Raises MalformedForecast if any next-day daily value is missing.
    A missing hourly block yields an empty slot list.
    """
    if not isinstance(data, dict):
        raise MalformedForecast("payload is not an object")

    daily = data.get("daily")
    if not isinstance(daily, dict):
        raise MalformedForecast("payload has no daily block")

    times = daily.get("time")
    if not isinstance(times, list) or len(times) <= NEXT_DAY_INDEX:
        raise MalformedForecast("daily.time has no next-day entry")
    try:
        target_day = date.fromisoformat(str(times[NEXT_DAY_INDEX]))
    except ValueError as exc:
        raise MalformedForecast(f"bad daily.time value: {exc}") from exc

    summary = DailySummary(
        day=target_day,
        temp_max=_required_next_day(daily, "temperature_2m_max"),
        temp_min=_required_next_day(daily, "temperature_2m_min"),
        precipitation_mm=_required_next_day(daily, "precipitation_sum"),
        precipitation_probability=_required_next_day(daily, "precipitation_probability_max"),
        wind_max_kmh=_required_next_day(daily, "wind_speed_10m_max"),
    )

    hourly_raw = data.get("hourly") or {}
    if not isinstance(hourly_raw, dict):
        raise MalformedForecast("hourly block is not an object")
    stamps = _hourly_array(hourly_raw, "time")
    prob = _hourly_array(hourly_raw, "precipitation_probability")
    wind = _hourly_array(hourly_raw, "wind_speed_10m")
    temp = _hourly_array(hourly_raw, "temperature_2m")
    precip = _hourly_array(hourly_raw, "precipitation")

    def _at(values: List[Any], i: int) -> Optional[float]:
        return _opt_float(values[i]) if i < len(values) else None

    prefix = target_day.isoformat()
    hourly = [
        HourlySlot(
            time=str(ts),
            precipitation_probability=_at(prob, i),
            wind_kmh=_at(wind, i),
            temperature=_at(temp, i),
            precipitation_mm=_at(precip, i),
        )
        for i, ts in enumerate(stamps)
        if str(ts).startswith(prefix)
    ]
    return summary, hourly


# ═══════════════════════════════════════════════════════════════════════════
# Fetcher
# ═══════════════════════════════════════════════════════════════════════════

class ForecastFetcher:
    """
    Fetches next-day forecasts per region.

    Usage:
        with ForecastFetcher() as fetcher:
            result = fetcher.fetch(region)
            if result.success:
                print(result.summary.temp_max)

    A custom `client` (e.g. one built on httpx.MockTransport) may be
    injected; the fetcher then does not close it.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        forecast_days: Optional[int] = None,
        client: Optional[httpx.Client] = None,
        cache_enabled: Optional[bool] = None,
    ):
        self.base_url = base_url or settings.OPEN_METEO_BASE_URL
        self.timeout = timeout or settings.FORECAST_FETCH_TIMEOUT
        self.forecast_days = forecast_days or settings.FORECAST_DAYS
        self.cache_enabled = (
            settings.FORECAST_CACHE_ENABLED if cache_enabled is None else cache_enabled
        )
        self._http_client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.Client:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.Client(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            self._http_client.close()

    def __enter__(self) -> "ForecastFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _cache_key(self, region: Region) -> str:
        return f"forecast:{region.latitude:.2f},{region.longitude:.2f}:{region.timezone}:{self.forecast_days}"

    def _params(self, region: Region) -> Dict[str, Any]:
        return {
            "latitude": region.latitude,
            "longitude": region.longitude,
            "hourly": ",".join(HOURLY_VARIABLES),
            "daily": ",".join(DAILY_VARIABLES),
            "forecast_days": self.forecast_days,
            "timezone": region.timezone,
        }

    def _request(self, region: Region) -> Dict[str, Any]:
        response = self._get_client().get(
            self.base_url, params=self._params(region), timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def fetch(self, region: Region) -> ForecastResult:
        """
        Fetch and parse the next-day forecast for a region.

        Never raises: failures come back as success=False results.
        """
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        from_cache = False
        data: Optional[Dict[str, Any]] = None
        cache_key = self._cache_key(region)

        if self.cache_enabled:
            data = cache_get(cache_key)
            from_cache = data is not None
            if from_cache:
                logger.debug("Forecast cache HIT for %s", region.name, extra={"region": region.name})

        if data is None:
            try:
                data = self._request(region)
            except httpx.TimeoutException as e:
                return ForecastResult.unavailable(
                    region, FetchStatus.TIMEOUT, f"Timed out after {self.timeout}s: {e}", _elapsed(),
                )
            except httpx.HTTPStatusError as e:
                return ForecastResult.unavailable(
                    region, FetchStatus.API_ERROR,
                    f"Provider returned {e.response.status_code}", _elapsed(),
                )
            except httpx.HTTPError as e:
                return ForecastResult.unavailable(
                    region, FetchStatus.NETWORK_ERROR, str(e) or type(e).__name__, _elapsed(),
                )
            except ValueError as e:
                return ForecastResult.unavailable(
                    region, FetchStatus.MALFORMED, f"Invalid JSON: {e}", _elapsed(),
                )

        try:
            summary, hourly = parse_forecast(data)
        except MalformedForecast as e:
            return ForecastResult.unavailable(region, FetchStatus.MALFORMED, str(e), _elapsed())

        if self.cache_enabled and not from_cache:
            cache_set(cache_key, data, ttl=settings.REDIS_FORECAST_TTL)

        return ForecastResult(
            success=True,
            status=FetchStatus.SUCCESS,
            region=region.name,
            latitude=region.latitude,
            longitude=region.longitude,
            summary=summary,
            hourly=hourly,
            fetch_duration_ms=_elapsed(),
            from_cache=from_cache,
        )
