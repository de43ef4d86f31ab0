"""
Pydantic schemas for the alert engine API.

Separated from the route handlers so they are reusable across the
codebase (scheduler clients, tests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.alerts.models import DeliveryTask, Notification, OutbreakRecord, ReporterObservation


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ObservationInput(BaseModel):
    """
    A reporter observation as written by the diagnosis flow.

    `region` may be omitted; the reporter's profile district is used then.
    """
    observation_id: Optional[str] = Field(None, examples=["OBS-1A2B3C4D5E6F"])
    user_id: str = Field(..., min_length=1, examples=["farmer-042"])
    condition_label: str = Field(..., min_length=1, max_length=255, examples=["Rice Blast"])
    observed_at: Optional[datetime] = Field(
        None, description="Defaults to the time of the request",
    )
    severity: Optional[Severity] = Field(None, examples=["high"])
    region: Optional[str] = Field(None, examples=["Chitwan"])

    @field_validator("condition_label")
    @classmethod
    def _strip_label(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("condition_label must not be blank")
        return v

    @field_validator("observed_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_model(self) -> ReporterObservation:
        kwargs: Dict[str, Any] = {
            "user_id": self.user_id,
            "condition_label": self.condition_label,
            "observed_at": self.observed_at or datetime.now(timezone.utc),
            "severity": self.severity.value if self.severity else None,
            "region": self.region,
        }
        if self.observation_id:
            kwargs["observation_id"] = self.observation_id
        return ReporterObservation(**kwargs)


class OutbreakCheckRequest(BaseModel):
    """Body for POST /api/v1/jobs/outbreak-check."""
    observation: ObservationInput
    severity: Optional[Severity] = Field(
        None, description="Severity for a newly created outbreak record",
    )


class WeatherRunRequest(BaseModel):
    """Optional body for POST /api/v1/jobs/weather-alerts."""
    workers: Optional[int] = Field(None, ge=1, le=16, description="Region parallelism")


class SweepRequest(BaseModel):
    stale_hours: Optional[int] = Field(None, ge=1, le=24 * 90)


class MarkReadRequest(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["farmer-042"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class NotificationOut(BaseModel):
    notification_id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any]
    read: bool
    created_at: datetime

    @classmethod
    def from_model(cls, n: Notification) -> "NotificationOut":
        return cls(**n.to_dict())


class NotificationListResponse(BaseModel):
    user_id: str
    count: int
    unread: int
    notifications: List[NotificationOut]


class OutbreakOut(BaseModel):
    outbreak_id: str
    region: str
    state: Optional[str] = None
    condition_label: str
    first_seen_at: datetime
    last_seen_at: datetime
    detection_count: int
    severity: str
    is_active: bool

    @classmethod
    def from_model(cls, r: OutbreakRecord) -> "OutbreakOut":
        return cls(**r.to_dict())


class OutbreakListResponse(BaseModel):
    district: Optional[str] = None
    count: int
    outbreaks: List[OutbreakOut]


class DeliveryTaskOut(BaseModel):
    task_id: str
    channel: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, t: DeliveryTask) -> "DeliveryTaskOut":
        return cls(
            task_id=t.task_id,
            channel=t.channel.value,
            status=t.status.value,
            attempts=t.attempts,
            max_attempts=t.max_attempts,
            next_attempt_at=t.next_attempt_at,
            last_error=t.last_error,
            created_at=t.created_at,
            completed_at=t.completed_at,
        )


class DeliveryListResponse(BaseModel):
    notification_id: str
    count: int
    deliveries: List[DeliveryTaskOut]
