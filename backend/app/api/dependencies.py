"""
Shared FastAPI dependencies: service credential, store, forecast fetcher.
"""

from __future__ import annotations

import hmac
from typing import Iterator, Optional

from fastapi import Header

from backend.app.core.config import settings
from backend.app.core.errors import AuthenticationError
from backend.app.ingestion.weather_service import ForecastFetcher
from backend.app.store import AlertStore, get_store


def require_service_token(authorization: Optional[str] = Header(None)) -> None:
    """Accept only `Authorization: Bearer <SERVICE_TOKEN>`."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Missing bearer token")
    if not hmac.compare_digest(token.strip().encode(), settings.SERVICE_TOKEN.encode()):
        raise AuthenticationError()


def get_alert_store() -> AlertStore:
    return get_store()


def get_forecast_fetcher() -> Iterator[ForecastFetcher]:
    with ForecastFetcher() as fetcher:
        yield fetcher
