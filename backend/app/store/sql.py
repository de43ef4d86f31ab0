"""
Relational AlertStore — SQLAlchemy 2.0 ORM.

Invariants enforced by the schema:

    • delivered_alert_markers: UNIQUE (subject_id, alert_type, day)
    • outbreak_records: partial UNIQUE (region, condition_key) WHERE is_active

Both are the store-side half of the check-then-write guards; an
IntegrityError on insert is reported as False, not as an error.

All timestamps are stored as UTC. SQLite drops tzinfo on the way back, so
UTCDateTime re-attaches it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.types import TypeDecorator

from backend.app.alerts.models import (
    AlertChannel,
    AlertType,
    DeliveredAlertMarker,
    DeliveryStatus,
    DeliveryTask,
    FarmerProfile,
    Notification,
    NotificationPreference,
    OutbreakRecord,
    ReporterObservation,
    parse_payload,
)
from backend.app.core.database import Base, build_session_factory, get_engine
from backend.app.core.errors import PersistenceError
from backend.app.store.base import AlertStore

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime normalised to UTC in both directions."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _condition_key(label: str) -> str:
    return label.strip().lower()


# ═══════════════════════════════════════════════════════════════════════════
# ORM tables
# ═══════════════════════════════════════════════════════════════════════════

class FarmerProfileRow(Base):
    __tablename__ = "farmer_profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    district: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    state: Mapped[Optional[str]] = mapped_column(String(100))
    preferred_language: Mapped[str] = mapped_column(String(8), default="en")
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    email: Mapped[Optional[str]] = mapped_column(String(320))
    push_token: Mapped[Optional[str]] = mapped_column(String(255))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)


class NotificationPreferenceRow(Base):
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    outbreak_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    weather_alerts: Mapped[bool] = mapped_column(Boolean, default=True)


class ReporterObservationRow(Base):
    __tablename__ = "reporter_observations"

    observation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    region: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    condition_label: Mapped[str] = mapped_column(String(255))
    severity: Mapped[Optional[str]] = mapped_column(String(20))
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    checked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class OutbreakRecordRow(Base):
    __tablename__ = "outbreak_records"
    __table_args__ = (
        Index(
            "uq_outbreak_active_region_condition",
            "region", "condition_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    outbreak_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    region: Mapped[str] = mapped_column(String(100), index=True)
    state: Mapped[Optional[str]] = mapped_column(String(100))
    condition_label: Mapped[str] = mapped_column(String(255))
    condition_key: Mapped[str] = mapped_column(String(255))
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    detection_count: Mapped[int] = mapped_column(Integer)
    severity: Mapped[str] = mapped_column(String(20), default="medium")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DeliveredAlertMarkerRow(Base):
    __tablename__ = "delivered_alert_markers"
    __table_args__ = (
        UniqueConstraint("subject_id", "alert_type", "day", name="uq_marker_subject_type_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(64))
    alert_type: Mapped[str] = mapped_column(String(32))
    day: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class NotificationRow(Base):
    __tablename__ = "notifications"

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    alert_type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class DeliveryTaskRow(Base):
    __tablename__ = "delivery_tasks"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    notification_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    channel: Mapped[str] = mapped_column(String(16))
    alert_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(20), index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


class RunCheckpointRow(Base):
    __tablename__ = "run_checkpoints"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_checked_at: Mapped[datetime] = mapped_column(UTCDateTime)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ model conversion
# ═══════════════════════════════════════════════════════════════════════════

def _profile(row: FarmerProfileRow) -> FarmerProfile:
    return FarmerProfile(
        user_id=row.user_id,
        name=row.name or "",
        district=row.district,
        state=row.state,
        preferred_language=row.preferred_language or "en",
        timezone=row.timezone,
        email=row.email,
        push_token=row.push_token,
        latitude=row.latitude,
        longitude=row.longitude,
    )


def _preference(row: NotificationPreferenceRow) -> NotificationPreference:
    return NotificationPreference(
        user_id=row.user_id,
        in_app_enabled=row.in_app_enabled,
        push_enabled=row.push_enabled,
        email_enabled=row.email_enabled,
        outbreak_alerts=row.outbreak_alerts,
        weather_alerts=row.weather_alerts,
    )


def _observation(row: ReporterObservationRow) -> ReporterObservation:
    return ReporterObservation(
        observation_id=row.observation_id,
        user_id=row.user_id,
        region=row.region,
        condition_label=row.condition_label,
        severity=row.severity,
        observed_at=row.observed_at,
        checked_at=row.checked_at,
    )


def _outbreak(row: OutbreakRecordRow) -> OutbreakRecord:
    return OutbreakRecord(
        outbreak_id=row.outbreak_id,
        region=row.region,
        state=row.state,
        condition_label=row.condition_label,
        first_seen_at=row.first_seen_at,
        last_seen_at=row.last_seen_at,
        detection_count=row.detection_count,
        severity=row.severity,
        is_active=row.is_active,
    )


def _notification(row: NotificationRow) -> Notification:
    return Notification(
        notification_id=row.notification_id,
        user_id=row.user_id,
        alert_type=AlertType(row.alert_type),
        title=row.title,
        message=row.message,
        payload=parse_payload(row.alert_type, row.payload),
        read=row.read,
        created_at=row.created_at,
    )


def _task(row: DeliveryTaskRow) -> DeliveryTask:
    return DeliveryTask(
        task_id=row.task_id,
        notification_id=row.notification_id,
        user_id=row.user_id,
        channel=AlertChannel(row.channel),
        alert_type=AlertType(row.alert_type),
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_attempt_at=row.next_attempt_at,
        last_error=row.last_error,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def _apply_task(row: DeliveryTaskRow, task: DeliveryTask) -> None:
    row.status = task.status.value
    row.attempts = task.attempts
    row.max_attempts = task.max_attempts
    row.next_attempt_at = task.next_attempt_at
    row.last_error = task.last_error
    row.completed_at = task.completed_at


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):
    """
    AlertStore over a SQLAlchemy engine.

    Each method runs in its own short transaction. SQLAlchemyError is
    re-raised as PersistenceError carrying the entity name.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.engine = engine or get_engine()
        self._session_factory = session_factory or build_session_factory(self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self, entity: str, *, conflict_ok: bool = False) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            if conflict_ok:
                raise
            raise PersistenceError(entity, str(e.orig)) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Store error on %s: %s", entity, e)
            raise PersistenceError(entity, str(e)) from e
        finally:
            session.close()

    # ── Profiles & preferences ──

    def list_profiles(self) -> List[FarmerProfile]:
        with self._session("farmer_profile") as s:
            rows = s.scalars(select(FarmerProfileRow).order_by(FarmerProfileRow.user_id)).all()
            return [_profile(r) for r in rows]

    def get_profile(self, user_id: str) -> Optional[FarmerProfile]:
        with self._session("farmer_profile") as s:
            row = s.get(FarmerProfileRow, user_id)
            return _profile(row) if row else None

    def upsert_profile(self, profile: FarmerProfile) -> None:
        with self._session("farmer_profile") as s:
            s.merge(FarmerProfileRow(
                user_id=profile.user_id,
                name=profile.name,
                district=profile.district,
                state=profile.state,
                preferred_language=profile.preferred_language,
                timezone=profile.timezone,
                email=profile.email,
                push_token=profile.push_token,
                latitude=profile.latitude,
                longitude=profile.longitude,
            ))

    def get_preference(self, user_id: str) -> Optional[NotificationPreference]:
        with self._session("notification_preference") as s:
            row = s.get(NotificationPreferenceRow, user_id)
            return _preference(row) if row else None

    def save_preference(self, preference: NotificationPreference) -> None:
        with self._session("notification_preference") as s:
            s.merge(NotificationPreferenceRow(
                user_id=preference.user_id,
                in_app_enabled=preference.in_app_enabled,
                push_enabled=preference.push_enabled,
                email_enabled=preference.email_enabled,
                outbreak_alerts=preference.outbreak_alerts,
                weather_alerts=preference.weather_alerts,
            ))

    # ── Observations ──

    def add_observation(self, observation: ReporterObservation) -> None:
        with self._session("reporter_observation") as s:
            s.merge(ReporterObservationRow(
                observation_id=observation.observation_id,
                user_id=observation.user_id,
                region=observation.region,
                condition_label=observation.condition_label,
                severity=observation.severity,
                observed_at=observation.observed_at,
                checked_at=observation.checked_at,
            ))

    def observations_in_region(self, region: str, since: datetime) -> List[ReporterObservation]:
        stmt = (
            select(ReporterObservationRow)
            .where(ReporterObservationRow.region.ilike(region))
            .where(ReporterObservationRow.observed_at >= since)
        )
        with self._session("reporter_observation") as s:
            return [_observation(r) for r in s.scalars(stmt).all()]

    def observations_between(
        self, after: Optional[datetime], until: datetime,
    ) -> List[ReporterObservation]:
        stmt = select(ReporterObservationRow).where(ReporterObservationRow.observed_at <= until)
        if after is not None:
            stmt = stmt.where(ReporterObservationRow.observed_at > after)
        stmt = stmt.order_by(ReporterObservationRow.observed_at)
        with self._session("reporter_observation") as s:
            return [_observation(r) for r in s.scalars(stmt).all()]

    def mark_observation_checked(self, observation_id: str, at: datetime) -> None:
        stmt = (
            update(ReporterObservationRow)
            .where(ReporterObservationRow.observation_id == observation_id)
            .values(checked_at=at)
        )
        with self._session("reporter_observation") as s:
            s.execute(stmt)

    # ── Outbreaks ──

    def list_active_outbreaks(self, region: Optional[str] = None) -> List[OutbreakRecord]:
        return self.list_outbreaks(region, active_only=True)

    def list_outbreaks(
        self, region: Optional[str] = None, active_only: bool = True,
    ) -> List[OutbreakRecord]:
        stmt = select(OutbreakRecordRow)
        if active_only:
            stmt = stmt.where(OutbreakRecordRow.is_active.is_(True))
        if region is not None:
            stmt = stmt.where(OutbreakRecordRow.region.ilike(region))
        with self._session("outbreak_record") as s:
            return [_outbreak(r) for r in s.scalars(stmt).all()]

    def create_outbreak(self, record: OutbreakRecord) -> bool:
        try:
            with self._session("outbreak_record", conflict_ok=True) as s:
                s.add(OutbreakRecordRow(
                    outbreak_id=record.outbreak_id,
                    region=record.region,
                    state=record.state,
                    condition_label=record.condition_label,
                    condition_key=_condition_key(record.condition_label),
                    first_seen_at=record.first_seen_at,
                    last_seen_at=record.last_seen_at,
                    detection_count=record.detection_count,
                    severity=record.severity,
                    is_active=record.is_active,
                ))
        except IntegrityError:
            logger.info(
                "Active outbreak already exists for (%s, %s)",
                record.region, record.condition_label,
                extra={"region": record.region},
            )
            return False
        return True

    def update_outbreak(self, record: OutbreakRecord) -> None:
        with self._session("outbreak_record") as s:
            row = s.get(OutbreakRecordRow, record.outbreak_id)
            if row is None:
                raise PersistenceError("outbreak_record", "record vanished", outbreak_id=record.outbreak_id)
            row.last_seen_at = record.last_seen_at
            row.detection_count = record.detection_count
            row.severity = record.severity
            row.is_active = record.is_active

    def deactivate_outbreaks_before(self, cutoff: datetime) -> int:
        stmt = (
            update(OutbreakRecordRow)
            .where(OutbreakRecordRow.is_active.is_(True))
            .where(OutbreakRecordRow.last_seen_at < cutoff)
            .values(is_active=False)
        )
        with self._session("outbreak_record") as s:
            return s.execute(stmt).rowcount or 0

    # ── Markers ──

    def has_marker(self, subject_id: str, alert_type: AlertType, day: date) -> bool:
        stmt = select(DeliveredAlertMarkerRow.id).where(
            DeliveredAlertMarkerRow.subject_id == subject_id,
            DeliveredAlertMarkerRow.alert_type == alert_type.value,
            DeliveredAlertMarkerRow.day == day,
        )
        with self._session("delivered_alert_marker") as s:
            return s.execute(stmt).first() is not None

    def add_marker(self, marker: DeliveredAlertMarker) -> bool:
        try:
            with self._session("delivered_alert_marker", conflict_ok=True) as s:
                s.add(DeliveredAlertMarkerRow(
                    subject_id=marker.subject_id,
                    alert_type=marker.alert_type.value,
                    day=marker.day,
                ))
        except IntegrityError:
            return False
        return True

    # ── Notifications ──

    def add_notification(self, notification: Notification) -> None:
        with self._session("notification") as s:
            s.add(NotificationRow(
                notification_id=notification.notification_id,
                user_id=notification.user_id,
                alert_type=notification.alert_type.value,
                title=notification.title,
                message=notification.message,
                payload=notification.payload.to_dict(),
                read=notification.read,
                created_at=notification.created_at,
            ))

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._session("notification") as s:
            row = s.get(NotificationRow, notification_id)
            return _notification(row) if row else None

    def list_notifications(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Notification]:
        stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if since is not None:
            stmt = stmt.where(NotificationRow.created_at > since)
        stmt = stmt.order_by(NotificationRow.created_at.desc()).limit(limit)
        with self._session("notification") as s:
            return [_notification(r) for r in s.scalars(stmt).all()]

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        with self._session("notification") as s:
            row = s.get(NotificationRow, notification_id)
            if row is None or row.user_id != user_id:
                return False
            row.read = True
            return True

    def mark_all_read(self, user_id: str) -> int:
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.user_id == user_id, NotificationRow.read.is_(False))
            .values(read=True)
        )
        with self._session("notification") as s:
            return s.execute(stmt).rowcount or 0

    # ── Delivery tasks ──

    def add_delivery_task(self, task: DeliveryTask) -> None:
        row = DeliveryTaskRow(
            task_id=task.task_id,
            notification_id=task.notification_id,
            user_id=task.user_id,
            channel=task.channel.value,
            alert_type=task.alert_type.value,
            created_at=task.created_at,
        )
        _apply_task(row, task)
        with self._session("delivery_task") as s:
            s.add(row)

    def update_delivery_task(self, task: DeliveryTask) -> None:
        with self._session("delivery_task") as s:
            row = s.get(DeliveryTaskRow, task.task_id)
            if row is None:
                raise PersistenceError("delivery_task", "task vanished", task_id=task.task_id)
            _apply_task(row, task)

    def due_delivery_tasks(self, now: datetime, limit: int = 100) -> List[DeliveryTask]:
        open_states = [DeliveryStatus.PENDING.value, DeliveryStatus.RETRY_SCHEDULED.value]
        stmt = (
            select(DeliveryTaskRow)
            .where(DeliveryTaskRow.status.in_(open_states))
            .where(DeliveryTaskRow.next_attempt_at.is_not(None))
            .where(DeliveryTaskRow.next_attempt_at <= now)
            .order_by(DeliveryTaskRow.next_attempt_at)
            .limit(limit)
        )
        with self._session("delivery_task") as s:
            return [_task(r) for r in s.scalars(stmt).all()]

    def list_delivery_tasks(self, notification_id: Optional[str] = None) -> List[DeliveryTask]:
        stmt = select(DeliveryTaskRow).order_by(DeliveryTaskRow.created_at)
        if notification_id is not None:
            stmt = stmt.where(DeliveryTaskRow.notification_id == notification_id)
        with self._session("delivery_task") as s:
            return [_task(r) for r in s.scalars(stmt).all()]

    # ── Checkpoints ──

    def get_checkpoint(self, name: str) -> Optional[datetime]:
        with self._session("run_checkpoint") as s:
            row = s.get(RunCheckpointRow, name)
            return row.last_checked_at if row else None

    def set_checkpoint(self, name: str, at: datetime) -> None:
        with self._session("run_checkpoint") as s:
            s.merge(RunCheckpointRow(name=name, last_checked_at=at))

    # ── Health ──

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False
