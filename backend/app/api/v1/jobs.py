"""
FastAPI routes: scheduler-invoked jobs.

    POST /api/v1/jobs/weather-alerts     — daily weather run
    POST /api/v1/jobs/outbreak-check     — on each new reporter observation
    POST /api/v1/jobs/outbreak-scan      — batch check since last scan
    POST /api/v1/jobs/outbreak-sweep     — deactivate quiet outbreaks
    POST /api/v1/jobs/deliveries/retry   — re-attempt due push/email tasks

All routes require the shared service credential.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.app.alerts.alert_service import retry_pending_deliveries
from backend.app.alerts.engine import run_weather_alerts
from backend.app.alerts.outbreak import (
    check_observation,
    deactivate_stale_outbreaks,
    record_observation,
    scan_new_observations,
)
from backend.app.api.dependencies import get_alert_store, get_forecast_fetcher, require_service_token
from backend.app.api.schemas import OutbreakCheckRequest, SweepRequest, WeatherRunRequest
from backend.app.ingestion.weather_service import ForecastFetcher
from backend.app.store import AlertStore

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_service_token)],
)


@router.post("/weather-alerts")
def weather_alerts(
    body: Optional[WeatherRunRequest] = None,
    store: AlertStore = Depends(get_alert_store),
    fetcher: ForecastFetcher = Depends(get_forecast_fetcher),
) -> Dict[str, Any]:
    """Evaluate tomorrow's forecast for every monitored region and notify."""
    summary = run_weather_alerts(store, fetcher, workers=body.workers if body else None)
    return summary.to_dict()


@router.post("/outbreak-check")
def outbreak_check(
    body: OutbreakCheckRequest,
    store: AlertStore = Depends(get_alert_store),
) -> Dict[str, Any]:
    """
    Record one new observation and check it against the outbreak cluster rule.

    Re-posting an observation id already stored overwrites that row.
    """
    observation = body.observation.to_model()
    record_observation(store, observation)
    result = check_observation(
        store,
        observation,
        severity=body.severity.value if body.severity else None,
    )
    return result.to_dict()


@router.post("/outbreak-scan")
def outbreak_scan(store: AlertStore = Depends(get_alert_store)) -> Dict[str, Any]:
    return scan_new_observations(store)


@router.post("/outbreak-sweep")
def outbreak_sweep(
    body: Optional[SweepRequest] = None,
    store: AlertStore = Depends(get_alert_store),
) -> Dict[str, Any]:
    count = deactivate_stale_outbreaks(store, stale_hours=body.stale_hours if body else None)
    return {"deactivated": count}


@router.post("/deliveries/retry")
def deliveries_retry(store: AlertStore = Depends(get_alert_store)) -> Dict[str, Any]:
    return retry_pending_deliveries(store)
