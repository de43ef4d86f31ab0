"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Alert store connectivity (PostgreSQL or in-memory)
    • Cache connectivity (Redis, optional)
    • Forecast provider configuration
    • Freshness of the last weather run

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Scheduler pre-flight checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core import cache
from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError

logger = logging.getLogger(__name__)

WEATHER_RUN_MAX_AGE = timedelta(hours=36)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def _redact(url: Optional[str]) -> str:
    if not url:
        return ""
    return url.split("@")[-1]


def check_store(store) -> ComponentHealth:
    """Check that the alert store answers."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    comp.details = {"backend": type(store).__name__}
    if store.ping():
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Store unreachable"
        comp.details["url"] = _redact(settings.DATABASE_URL)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_redis() -> ComponentHealth:
    """Redis is optional; unreachable only degrades forecast caching."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if not settings.REDIS_URL or not settings.FORECAST_CACHE_ENABLED:
        comp.message = "Forecast cache disabled"
    elif cache.ping():
        comp.message = "Cache available"
        comp.details = {"url": _redact(settings.REDIS_URL)}
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache unreachable, forecasts fetched uncached"
        comp.details = {"url": _redact(settings.REDIS_URL)}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_forecast_provider() -> ComponentHealth:
    comp = ComponentHealth(name="forecast_provider")
    comp.message = "Open-Meteo configured"
    comp.details = {
        "url": settings.OPEN_METEO_BASE_URL,
        "timeout_s": settings.FORECAST_FETCH_TIMEOUT,
        "forecast_days": settings.FORECAST_DAYS,
    }
    return comp


def check_last_weather_run(store, now: Optional[datetime] = None) -> ComponentHealth:
    """Degraded when the daily weather run has not completed recently."""
    from backend.app.alerts.engine import WEATHER_CHECKPOINT

    comp = ComponentHealth(name="weather_run")
    start = time.monotonic()
    now = now or datetime.now(timezone.utc)
    try:
        last = store.get_checkpoint(WEATHER_CHECKPOINT)
    except PersistenceError as e:
        logger.warning("Could not read weather run checkpoint: %s", e.message)
        comp.status = HealthStatus.DEGRADED
        comp.message = e.message
        comp.latency_ms = (time.monotonic() - start) * 1000
        return comp

    if last is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No weather run recorded"
    else:
        age = now - last
        comp.details = {
            "last_run": last.isoformat(),
            "age_hours": round(age.total_seconds() / 3600, 1),
        }
        if age > WEATHER_RUN_MAX_AGE:
            comp.status = HealthStatus.DEGRADED
            comp.message = "Last weather run is stale"
        else:
            comp.message = "Weather run up to date"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def run_health_check(store=None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    if store is None:
        from backend.app.store import get_store
        store = get_store()

    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(check_store(store))
    report.components.append(check_redis())
    report.components.append(check_forecast_provider())
    report.components.append(check_last_weather_run(store))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
