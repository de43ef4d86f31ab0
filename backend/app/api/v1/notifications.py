"""
FastAPI routes: the UI's read-and-acknowledge view of notifications.

    GET  /api/v1/notifications?user_id=&since=&limit=   — newest first
    POST /api/v1/notifications/{id}/read                 — mark one read
    POST /api/v1/notifications/read-all                  — mark all read
    GET  /api/v1/notifications/{id}/deliveries           — push/email task state

The UI never writes outbreak records or delivered-alert markers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.dependencies import get_alert_store, require_service_token
from backend.app.api.schemas import (
    DeliveryListResponse,
    DeliveryTaskOut,
    MarkReadRequest,
    NotificationListResponse,
    NotificationOut,
)
from backend.app.core.errors import NotFoundError
from backend.app.store import AlertStore

router = APIRouter(
    prefix="/api/v1/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_service_token)],
)


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    user_id: str = Query(..., min_length=1),
    since: Optional[datetime] = Query(None, description="Only notifications created after this time"),
    limit: int = Query(50, ge=1, le=200),
    store: AlertStore = Depends(get_alert_store),
) -> NotificationListResponse:
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    rows = store.list_notifications(user_id, since=since, limit=limit)
    return NotificationListResponse(
        user_id=user_id,
        count=len(rows),
        unread=sum(1 for n in rows if not n.read),
        notifications=[NotificationOut.from_model(n) for n in rows],
    )


@router.post("/read-all")
def mark_all_read(
    body: MarkReadRequest,
    store: AlertStore = Depends(get_alert_store),
) -> Dict[str, Any]:
    return {"user_id": body.user_id, "updated": store.mark_all_read(body.user_id)}


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: str,
    body: MarkReadRequest,
    store: AlertStore = Depends(get_alert_store),
) -> Dict[str, Any]:
    if not store.mark_read(notification_id, body.user_id):
        raise NotFoundError("notification", notification_id=notification_id, user_id=body.user_id)
    return {"notification_id": notification_id, "read": True}


@router.get("/{notification_id}/deliveries", response_model=DeliveryListResponse)
def list_deliveries(
    notification_id: str,
    store: AlertStore = Depends(get_alert_store),
) -> DeliveryListResponse:
    """Push/email tasks behind one notification, oldest first."""
    tasks = store.list_delivery_tasks(notification_id)
    return DeliveryListResponse(
        notification_id=notification_id,
        count=len(tasks),
        deliveries=[DeliveryTaskOut.from_model(t) for t in tasks],
    )
