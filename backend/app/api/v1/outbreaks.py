"""
FastAPI route: outbreak dashboard.

    GET /api/v1/outbreaks?district=&active_only=

Ordered by reporter count, with the given district's outbreaks first.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.outbreak import list_outbreaks_for_dashboard
from backend.app.api.dependencies import get_alert_store, require_service_token
from backend.app.api.schemas import OutbreakListResponse, OutbreakOut
from backend.app.store import AlertStore

router = APIRouter(
    prefix="/api/v1/outbreaks",
    tags=["outbreaks"],
    dependencies=[Depends(require_service_token)],
)


@router.get("", response_model=OutbreakListResponse)
def list_outbreaks(
    district: Optional[str] = Query(None, examples=["Chitwan"]),
    active_only: bool = Query(True),
    store: AlertStore = Depends(get_alert_store),
) -> OutbreakListResponse:
    records = list_outbreaks_for_dashboard(store, district=district, active_only=active_only)
    return OutbreakListResponse(
        district=district,
        count=len(records),
        outbreaks=[OutbreakOut.from_model(r) for r in records],
    )
