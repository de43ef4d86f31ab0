"""
models.py — Shared data structures for the farm alert engine.

Defines:
    • AlertType / AlertCategory — what an alert is about
    • AlertChannel / DeliveryStatus — how and whether it was delivered
    • Typed payload variants, one per AlertType
    • Region, FarmerProfile, ReporterObservation — engine inputs
    • OutbreakRecord, DeliveredAlertMarker, DeliveryTask — durable state
    • Notification, NotificationPreference — engine output / input
    • FanoutReport, RunSummary, OutbreakCheckResult — job reports

═══════════════════════════════════════════════════════════════════════════
ALERT TYPES AND CATEGORIES
═══════════════════════════════════════════════════════════════════════════

    Alert Type       Category    Payload
    ──────────────   ─────────   ───────────────────────────────────────
    heavy_rain       weather     rain_mm, probability
    heat_stress      weather     temp_max
    cold_stress      weather     temp_min
    spray_window     weather     rain_probability, wind_kmh, window_*
    outbreak_alert   outbreak    outbreak_id, disease, district, count

The category decides which preference flag gates push/email delivery.
The in-app notification row is written regardless of category flags.

═══════════════════════════════════════════════════════════════════════════
PAYLOADS
═══════════════════════════════════════════════════════════════════════════

Payloads are frozen dataclasses, one per alert type. They are stored as a
plain dict and parsed back with parse_payload(alert_type, data), so every
consumer gets a typed structure instead of an open bag of fields.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from backend.app.core.errors import ValidationError
from backend.app.spatial.radius_utils import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    """Kinds of alert the engine produces."""
    HEAVY_RAIN     = "heavy_rain"
    HEAT_STRESS    = "heat_stress"
    COLD_STRESS    = "cold_stress"
    SPRAY_WINDOW   = "spray_window"
    OUTBREAK_ALERT = "outbreak_alert"


class AlertCategory(str, Enum):
    """Preference category an alert type belongs to."""
    WEATHER  = "weather"
    OUTBREAK = "outbreak"


ALERT_CATEGORY: Dict[AlertType, AlertCategory] = {
    AlertType.HEAVY_RAIN:     AlertCategory.WEATHER,
    AlertType.HEAT_STRESS:    AlertCategory.WEATHER,
    AlertType.COLD_STRESS:    AlertCategory.WEATHER,
    AlertType.SPRAY_WINDOW:   AlertCategory.WEATHER,
    AlertType.OUTBREAK_ALERT: AlertCategory.OUTBREAK,
}


class AlertChannel(str, Enum):
    """Delivery channels. IN_APP is the persisted Notification row."""
    IN_APP = "in_app"
    PUSH   = "push"
    EMAIL  = "email"


class DeliveryStatus(str, Enum):
    """Delivery state per recipient per channel."""
    PENDING         = "pending"          # queued, not yet attempted
    DELIVERED       = "delivered"        # provider accepted the message
    RETRY_SCHEDULED = "retry_scheduled"  # failed, another attempt is due later
    FAILED          = "failed"           # attempts exhausted
    SKIPPED         = "skipped"          # channel not applicable (no token/address)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Typed Payloads
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HeavyRainPayload:
    ALERT_TYPE: ClassVar[AlertType] = AlertType.HEAVY_RAIN
    rain_mm: float
    probability: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HeatStressPayload:
    ALERT_TYPE: ClassVar[AlertType] = AlertType.HEAT_STRESS
    temp_max: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ColdStressPayload:
    ALERT_TYPE: ClassVar[AlertType] = AlertType.COLD_STRESS
    temp_min: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SprayWindowPayload:
    ALERT_TYPE: ClassVar[AlertType] = AlertType.SPRAY_WINDOW
    rain_probability: float
    wind_kmh: float
    window_start: Optional[str] = None  # local ISO hour the best window opens
    window_hours: int = 0               # length of the longest qualifying run

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OutbreakPayload:
    ALERT_TYPE: ClassVar[AlertType] = AlertType.OUTBREAK_ALERT
    outbreak_id: str
    disease: str
    district: str
    detection_count: int
    severity: str = "medium"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AlertPayload = Union[
    HeavyRainPayload,
    HeatStressPayload,
    ColdStressPayload,
    SprayWindowPayload,
    OutbreakPayload,
]

PAYLOAD_TYPES: Dict[AlertType, Type] = {
    AlertType.HEAVY_RAIN:     HeavyRainPayload,
    AlertType.HEAT_STRESS:    HeatStressPayload,
    AlertType.COLD_STRESS:    ColdStressPayload,
    AlertType.SPRAY_WINDOW:   SprayWindowPayload,
    AlertType.OUTBREAK_ALERT: OutbreakPayload,
}


def parse_payload(alert_type: Union[AlertType, str], data: Dict[str, Any]) -> AlertPayload:
    """
    Rebuild the typed payload for an alert type from its stored dict.

    Raises ValidationError for an unknown alert type or missing fields.
    """
    try:
        kind = AlertType(alert_type)
    except ValueError:
        raise ValidationError(f"Unknown alert type '{alert_type}'", field="alert_type") from None
    payload_cls = PAYLOAD_TYPES[kind]
    try:
        return payload_cls(**data)
    except TypeError as exc:
        raise ValidationError(f"Invalid {kind.value} payload: {exc}", field="payload") from exc


# ═══════════════════════════════════════════════════════════════════════════
# Reference data and inputs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Region:
    """A district-equivalent with a representative coordinate."""
    name: str
    state: str
    latitude: float
    longitude: float
    timezone: str = "Asia/Kathmandu"
    name_local: str = ""

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass
class FarmerProfile:
    """
    A user the engine can notify.

    Attributes
    ----------
    user_id : str
        Farmer profile identifier (the recipient id on notifications).
    district, state : str | None
        Coarse location used to resolve the Region.
    preferred_language : str
        "en" or "ne"; selects the message template.
    timezone : str | None
        IANA zone for the idempotency day. Falls back to the region's zone.
    email : str | None
        Resolved address for the email channel.
    push_token : str | None
        Device token for the push channel.
    latitude, longitude : float | None
        Optional precise location, snapped to the nearest district when
        the district is missing.
    """
    user_id: str
    name: str = ""
    district: Optional[str] = None
    state: Optional[str] = None
    preferred_language: str = "en"
    timezone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class ReporterObservation:
    """One user's report of a condition, created by the diagnosis flow."""
    user_id: str
    condition_label: str
    observed_at: datetime
    severity: Optional[str] = None
    region: Optional[str] = None
    observation_id: str = field(default_factory=lambda: _generate_id("OBS"))
    checked_at: Optional[datetime] = None


@dataclass
class NotificationPreference:
    """
    Per-user channel and category switches.

    Defaults mirror the row the settings screen creates on first visit.
    """
    user_id: str
    in_app_enabled: bool = True
    push_enabled: bool = True
    email_enabled: bool = True
    outbreak_alerts: bool = True
    weather_alerts: bool = True

    def allows(self, category: AlertCategory) -> bool:
        if category == AlertCategory.WEATHER:
            return self.weather_alerts
        return self.outbreak_alerts


# ═══════════════════════════════════════════════════════════════════════════
# Durable engine state
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class OutbreakRecord:
    """A detected cluster of independent reports in one region."""
    region: str
    condition_label: str
    first_seen_at: datetime
    last_seen_at: datetime
    detection_count: int
    severity: str = "medium"
    state: Optional[str] = None
    is_active: bool = True
    outbreak_id: str = field(default_factory=lambda: _generate_id("OBK"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outbreak_id": self.outbreak_id,
            "region": self.region,
            "state": self.state,
            "condition_label": self.condition_label,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
            "detection_count": self.detection_count,
            "severity": self.severity,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class DeliveredAlertMarker:
    """Existence means (subject, alert_type) was already alerted on `day`."""
    subject_id: str
    alert_type: AlertType
    day: date

    @property
    def key(self) -> tuple:
        return (self.subject_id, self.alert_type.value, self.day.isoformat())


@dataclass
class Notification:
    """One persisted in-app alert for one recipient."""
    user_id: str
    alert_type: AlertType
    title: str
    message: str
    payload: AlertPayload
    read: bool = False
    created_at: datetime = field(default_factory=_now)
    notification_id: str = field(default_factory=lambda: _generate_id("NTF"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "type": self.alert_type.value,
            "title": self.title,
            "message": self.message,
            "data": self.payload.to_dict(),
            "read": self.read,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryAttempt:
    """Result of a single send to one recipient via one channel."""
    channel: AlertChannel
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class DeliveryTask:
    """
    An explicit outbound push/email send with retry state.

    Created for every push/email attempt so that a failed send is visible
    and can be retried by a later invocation instead of being lost.
    """
    notification_id: str
    user_id: str
    channel: AlertChannel
    alert_type: AlertType
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    task_id: str = field(default_factory=lambda: _generate_id("DLV"))

    @property
    def is_open(self) -> bool:
        return self.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRY_SCHEDULED)


# ═══════════════════════════════════════════════════════════════════════════
# Candidates and reports
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class WeatherAlertCandidate:
    """An alert the rule evaluator wants to raise for a region's next day."""
    region: str
    alert_type: AlertType
    title: str
    message: str
    payload: AlertPayload
    target_day: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "type": self.alert_type.value,
            "title": self.title,
            "message": self.message,
            "data": self.payload.to_dict(),
            "target_day": self.target_day.isoformat() if self.target_day else None,
        }


@dataclass
class RecipientDeliveryRecord:
    """What happened for one recipient of one alert event."""
    recipient_id: str
    notification_id: Optional[str] = None
    channels_attempted: List[AlertChannel] = field(default_factory=list)
    channels_delivered: List[AlertChannel] = field(default_factory=list)
    channels_failed: List[AlertChannel] = field(default_factory=list)
    stopped_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def persisted(self) -> bool:
        return self.notification_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "notification_id": self.notification_id,
            "channels_attempted": [c.value for c in self.channels_attempted],
            "channels_delivered": [c.value for c in self.channels_delivered],
            "channels_failed": [c.value for c in self.channels_failed],
            "stopped_reason": self.stopped_reason,
            "error": self.error,
        }


@dataclass
class FanoutReport:
    """Delivery summary for one alert event across its recipients."""
    alert_type: AlertType
    total_recipients: int = 0
    notifications_created: int = 0
    persistence_failures: int = 0
    push_sent: int = 0
    push_failed: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    records: List[RecipientDeliveryRecord] = field(default_factory=list)

    def add(self, record: RecipientDeliveryRecord) -> None:
        """Tally one recipient's outcome."""
        self.records.append(record)
        self.total_recipients += 1
        if record.persisted:
            self.notifications_created += 1
        else:
            self.persistence_failures += 1
        self.push_sent += AlertChannel.PUSH in record.channels_delivered
        self.push_failed += AlertChannel.PUSH in record.channels_failed
        self.emails_sent += AlertChannel.EMAIL in record.channels_delivered
        self.emails_failed += AlertChannel.EMAIL in record.channels_failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "total_recipients": self.total_recipients,
            "notifications_created": self.notifications_created,
            "persistence_failures": self.persistence_failures,
            "push_sent": self.push_sent,
            "push_failed": self.push_failed,
            "emails_sent": self.emails_sent,
            "emails_failed": self.emails_failed,
            "records": [r.to_dict() for r in self.records],
        }


@dataclass
class RunSummary:
    """Counters reported by a weather run instead of failing atomically."""
    run_id: str = field(default_factory=lambda: _generate_id("RUN"))
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    regions_processed: int = 0
    regions_skipped: List[Dict[str, str]] = field(default_factory=list)
    users_without_location: int = 0
    candidates: int = 0
    alerts_created: int = 0
    duplicates_suppressed: int = 0
    push_sent: int = 0
    push_failed: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    def absorb(self, report: FanoutReport) -> None:
        """Add a fan-out report's counters to this run."""
        self.alerts_created += report.notifications_created
        self.push_sent += report.push_sent
        self.push_failed += report.push_failed
        self.emails_sent += report.emails_sent
        self.emails_failed += report.emails_failed
        for record in report.records:
            if record.error:
                self.failures.append({
                    "unit": f"recipient:{record.recipient_id}",
                    "error": record.error,
                })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "regions_processed": self.regions_processed,
            "regions_skipped": self.regions_skipped,
            "users_without_location": self.users_without_location,
            "candidates": self.candidates,
            "alerts_created": self.alerts_created,
            "duplicates_suppressed": self.duplicates_suppressed,
            "push_sent": self.push_sent,
            "push_failed": self.push_failed,
            "emails_sent": self.emails_sent,
            "emails_failed": self.emails_failed,
            "failures": self.failures,
        }


class OutbreakAction(str, Enum):
    CREATED         = "created"
    UPDATED         = "updated"
    BELOW_THRESHOLD = "below_threshold"
    SKIPPED         = "skipped"


@dataclass
class OutbreakCheckResult:
    """Outcome of evaluating one observation against the cluster rule."""
    action: OutbreakAction
    detection_count: int = 0
    threshold: int = 0
    region: Optional[str] = None
    condition_label: Optional[str] = None
    outbreak: Optional[OutbreakRecord] = None
    fanout: Optional[FanoutReport] = None
    reason: Optional[str] = None

    @property
    def outbreak_detected(self) -> bool:
        return self.action in (OutbreakAction.CREATED, OutbreakAction.UPDATED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "outbreak_detected": self.outbreak_detected,
            "detection_count": self.detection_count,
            "threshold": self.threshold,
            "region": self.region,
            "condition_label": self.condition_label,
            "outbreak": self.outbreak.to_dict() if self.outbreak else None,
            "fanout": self.fanout.to_dict() if self.fanout else None,
            "reason": self.reason,
        }
