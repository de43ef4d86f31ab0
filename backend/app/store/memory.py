"""
In-memory AlertStore.

Process-local and thread-safe (one RLock). Used for development
(STORE_BACKEND=memory) and by the test-suite. Records are copied on the
way in and out so callers cannot mutate stored state by accident.
"""

from __future__ import annotations

import copy
import threading
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

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
from backend.app.store.base import AlertStore


def _condition_key(label: str) -> str:
    return label.strip().lower()


class InMemoryAlertStore(AlertStore):

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.profiles: Dict[str, FarmerProfile] = {}
        self.preferences: Dict[str, NotificationPreference] = {}
        self.observations: Dict[str, ReporterObservation] = {}
        self.outbreaks: Dict[str, OutbreakRecord] = {}
        self.markers: Dict[Tuple[str, str, str], DeliveredAlertMarker] = {}
        self.notifications: Dict[str, Notification] = {}
        self.delivery_tasks: Dict[str, DeliveryTask] = {}
        self.checkpoints: Dict[str, datetime] = {}

    def clear(self) -> None:
        with self._lock:
            for bucket in (
                self.profiles, self.preferences, self.observations, self.outbreaks,
                self.markers, self.notifications, self.delivery_tasks, self.checkpoints,
            ):
                bucket.clear()

    # ── Profiles & preferences ──

    def list_profiles(self) -> List[FarmerProfile]:
        with self._lock:
            return [copy.copy(p) for p in self.profiles.values()]

    def get_profile(self, user_id: str) -> Optional[FarmerProfile]:
        with self._lock:
            profile = self.profiles.get(user_id)
            return copy.copy(profile) if profile else None

    def upsert_profile(self, profile: FarmerProfile) -> None:
        with self._lock:
            self.profiles[profile.user_id] = copy.copy(profile)

    def get_preference(self, user_id: str) -> Optional[NotificationPreference]:
        with self._lock:
            pref = self.preferences.get(user_id)
            return copy.copy(pref) if pref else None

    def save_preference(self, preference: NotificationPreference) -> None:
        with self._lock:
            self.preferences[preference.user_id] = copy.copy(preference)

    # ── Observations ──

    def add_observation(self, observation: ReporterObservation) -> None:
        with self._lock:
            self.observations[observation.observation_id] = copy.copy(observation)

    def observations_in_region(self, region: str, since: datetime) -> List[ReporterObservation]:
        key = region.lower()
        with self._lock:
            return [
                copy.copy(o) for o in self.observations.values()
                if o.region and o.region.lower() == key and o.observed_at >= since
            ]

    def observations_between(
        self, after: Optional[datetime], until: datetime,
    ) -> List[ReporterObservation]:
        with self._lock:
            rows = [
                copy.copy(o) for o in self.observations.values()
                if (after is None or o.observed_at > after) and o.observed_at <= until
            ]
        return sorted(rows, key=lambda o: o.observed_at)

    def mark_observation_checked(self, observation_id: str, at: datetime) -> None:
        with self._lock:
            stored = self.observations.get(observation_id)
            if stored is not None:
                stored.checked_at = at

    # ── Outbreaks ──

    def list_active_outbreaks(self, region: Optional[str] = None) -> List[OutbreakRecord]:
        return self.list_outbreaks(region, active_only=True)

    def list_outbreaks(
        self, region: Optional[str] = None, active_only: bool = True,
    ) -> List[OutbreakRecord]:
        with self._lock:
            return [
                copy.copy(r) for r in self.outbreaks.values()
                if (not active_only or r.is_active)
                and (region is None or r.region.lower() == region.lower())
            ]

    def create_outbreak(self, record: OutbreakRecord) -> bool:
        key = (record.region.lower(), _condition_key(record.condition_label))
        with self._lock:
            for existing in self.outbreaks.values():
                if (
                    existing.is_active
                    and (existing.region.lower(), _condition_key(existing.condition_label)) == key
                ):
                    return False
            self.outbreaks[record.outbreak_id] = copy.copy(record)
            return True

    def update_outbreak(self, record: OutbreakRecord) -> None:
        with self._lock:
            self.outbreaks[record.outbreak_id] = copy.copy(record)

    def deactivate_outbreaks_before(self, cutoff: datetime) -> int:
        count = 0
        with self._lock:
            for record in self.outbreaks.values():
                if record.is_active and record.last_seen_at < cutoff:
                    record.is_active = False
                    count += 1
        return count

    # ── Markers ──

    def has_marker(self, subject_id: str, alert_type: AlertType, day: date) -> bool:
        with self._lock:
            return (subject_id, alert_type.value, day.isoformat()) in self.markers

    def add_marker(self, marker: DeliveredAlertMarker) -> bool:
        with self._lock:
            if marker.key in self.markers:
                return False
            self.markers[marker.key] = marker
            return True

    # ── Notifications ──

    def add_notification(self, notification: Notification) -> None:
        with self._lock:
            self.notifications[notification.notification_id] = copy.copy(notification)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            n = self.notifications.get(notification_id)
            return copy.copy(n) if n else None

    def list_notifications(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Notification]:
        with self._lock:
            rows = [
                copy.copy(n) for n in self.notifications.values()
                if n.user_id == user_id and (since is None or n.created_at > since)
            ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows[:limit]

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        with self._lock:
            n = self.notifications.get(notification_id)
            if n is None or n.user_id != user_id:
                return False
            n.read = True
            return True

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        with self._lock:
            for n in self.notifications.values():
                if n.user_id == user_id and not n.read:
                    n.read = True
                    count += 1
        return count

    # ── Delivery tasks ──

    def add_delivery_task(self, task: DeliveryTask) -> None:
        with self._lock:
            self.delivery_tasks[task.task_id] = copy.copy(task)

    def update_delivery_task(self, task: DeliveryTask) -> None:
        with self._lock:
            self.delivery_tasks[task.task_id] = copy.copy(task)

    def due_delivery_tasks(self, now: datetime, limit: int = 100) -> List[DeliveryTask]:
        with self._lock:
            rows = [
                copy.copy(t) for t in self.delivery_tasks.values()
                if t.is_open and t.next_attempt_at is not None and t.next_attempt_at <= now
            ]
        rows.sort(key=lambda t: t.next_attempt_at)
        return rows[:limit]

    def list_delivery_tasks(self, notification_id: Optional[str] = None) -> List[DeliveryTask]:
        with self._lock:
            rows = [
                copy.copy(t) for t in self.delivery_tasks.values()
                if notification_id is None or t.notification_id == notification_id
            ]
        return sorted(rows, key=lambda t: t.created_at)

    # ── Checkpoints ──

    def get_checkpoint(self, name: str) -> Optional[datetime]:
        with self._lock:
            return self.checkpoints.get(name)

    def set_checkpoint(self, name: str, at: datetime) -> None:
        with self._lock:
            self.checkpoints[name] = at
