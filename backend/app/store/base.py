"""
Store interface for the alert engine's durable state.

The engine only issues point reads/writes and simple filtered scans (by
region, by time window, by day). Two implementations exist:

    • SqlAlertStore       — SQLAlchemy ORM, PostgreSQL in production
    • InMemoryAlertStore  — process-local, for development and tests

Write methods that guard an invariant return a bool instead of raising:

    add_marker()      False → a marker for (subject, type, day) exists
    create_outbreak() False → an active record for (region, condition) exists

Any other storage failure raises PersistenceError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional

from backend.app.alerts.models import (
    AlertType,
    DeliveredAlertMarker,
    DeliveryTask,
    FarmerProfile,
    Notification,
    NotificationPreference,
    OutbreakRecord,
    ReporterObservation,
)


class AlertStore(ABC):

    # ── Profiles & preferences (read-only inputs) ──

    @abstractmethod
    def list_profiles(self) -> List[FarmerProfile]:
        ...

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[FarmerProfile]:
        ...

    @abstractmethod
    def upsert_profile(self, profile: FarmerProfile) -> None:
        """Seed/sync hook; the engine itself never edits profiles."""

    @abstractmethod
    def get_preference(self, user_id: str) -> Optional[NotificationPreference]:
        ...

    @abstractmethod
    def save_preference(self, preference: NotificationPreference) -> None:
        ...

    # ── Reporter observations (read-only input) ──

    @abstractmethod
    def add_observation(self, observation: ReporterObservation) -> None:
        """Insert hook used by the upstream diagnosis flow."""

    @abstractmethod
    def observations_in_region(self, region: str, since: datetime) -> List[ReporterObservation]:
        """Observations in a region with observed_at >= since."""

    @abstractmethod
    def observations_between(
        self, after: Optional[datetime], until: datetime,
    ) -> List[ReporterObservation]:
        """Observations with after < observed_at <= until, oldest first."""

    @abstractmethod
    def mark_observation_checked(self, observation_id: str, at: datetime) -> None:
        """Record that the cluster rule has run for a stored observation. Unknown ids are ignored."""

    # ── Outbreak records ──

    @abstractmethod
    def list_active_outbreaks(self, region: Optional[str] = None) -> List[OutbreakRecord]:
        ...

    @abstractmethod
    def list_outbreaks(
        self, region: Optional[str] = None, active_only: bool = True,
    ) -> List[OutbreakRecord]:
        ...

    @abstractmethod
    def create_outbreak(self, record: OutbreakRecord) -> bool:
        ...

    @abstractmethod
    def update_outbreak(self, record: OutbreakRecord) -> None:
        ...

    @abstractmethod
    def deactivate_outbreaks_before(self, cutoff: datetime) -> int:
        """Mark active records with last_seen_at < cutoff inactive."""

    # ── Delivered-alert markers ──

    @abstractmethod
    def has_marker(self, subject_id: str, alert_type: AlertType, day: date) -> bool:
        ...

    @abstractmethod
    def add_marker(self, marker: DeliveredAlertMarker) -> bool:
        ...

    # ── Notifications ──

    @abstractmethod
    def add_notification(self, notification: Notification) -> None:
        ...

    @abstractmethod
    def get_notification(self, notification_id: str) -> Optional[Notification]:
        ...

    @abstractmethod
    def list_notifications(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Notification]:
        """Newest first."""

    @abstractmethod
    def mark_read(self, notification_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    def mark_all_read(self, user_id: str) -> int:
        ...

    # ── Delivery tasks ──

    @abstractmethod
    def add_delivery_task(self, task: DeliveryTask) -> None:
        ...

    @abstractmethod
    def update_delivery_task(self, task: DeliveryTask) -> None:
        ...

    @abstractmethod
    def due_delivery_tasks(self, now: datetime, limit: int = 100) -> List[DeliveryTask]:
        """Open tasks whose next_attempt_at <= now, oldest first."""

    @abstractmethod
    def list_delivery_tasks(self, notification_id: Optional[str] = None) -> List[DeliveryTask]:
        ...

    # ── Run checkpoints ──

    @abstractmethod
    def get_checkpoint(self, name: str) -> Optional[datetime]:
        ...

    @abstractmethod
    def set_checkpoint(self, name: str, at: datetime) -> None:
        ...

    # ── Health ──

    def ping(self) -> bool:
        return True
