"""
test_sql_store.py — SqlAlertStore against in-memory SQLite.

Covers:
    • Round trips for every entity, timestamps coming back tz-aware UTC
    • Unique marker per (subject, type, day) reported as False, not an error
    • One active outbreak per (region, condition)
    • Integrity errors on plain inserts surfacing as PersistenceError
    • The outbreak detector and dedup guard running on the SQL store

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from backend.app.alerts.dedup import DedupGuard
from backend.app.alerts.models import (
    AlertChannel,
    AlertType,
    DeliveredAlertMarker,
    DeliveryStatus,
    DeliveryTask,
    FarmerProfile,
    HeavyRainPayload,
    Notification,
    NotificationPreference,
    OutbreakAction,
    OutbreakPayload,
    OutbreakRecord,
    ReporterObservation,
    SprayWindowPayload,
    parse_payload,
)
from backend.app.alerts import outbreak
from backend.app.alerts.outbreak import SubstringMatcher, check_observation
from backend.app.core.database import build_engine
from backend.app.core.errors import PersistenceError, ValidationError
from backend.app.store.sql import SqlAlertStore


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    engine = build_engine("sqlite://", echo=False)
    s = SqlAlertStore(engine=engine)
    s.create_all()
    yield s
    engine.dispose()


def _make_notification(uid="u1", at=NOW, payload=None) -> Notification:
    payload = payload or HeavyRainPayload(rain_mm=30.0, probability=85.0)
    return Notification(
        user_id=uid, alert_type=payload.ALERT_TYPE,
        title="Heavy Rain Expected Tomorrow", message="30mm rain expected tomorrow.",
        payload=payload, created_at=at,
    )


def _make_outbreak(region="Chitwan", label="Rice Blast", count=3) -> OutbreakRecord:
    return OutbreakRecord(
        region=region, condition_label=label,
        first_seen_at=NOW - timedelta(hours=5), last_seen_at=NOW, detection_count=count,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Profiles, preferences, observations
# ═══════════════════════════════════════════════════════════════════════════

class TestProfiles:

    def test_profile_upsert_and_read(self, store):
        store.upsert_profile(FarmerProfile(user_id="u1", district="Chitwan", email="a@b.np"))
        store.upsert_profile(FarmerProfile(user_id="u1", district="Kaski", preferred_language="ne"))
        (profile,) = store.list_profiles()
        assert profile.district == "Kaski"
        assert profile.preferred_language == "ne"
        assert store.get_profile("missing") is None

    def test_preference_round_trip(self, store):
        assert store.get_preference("u1") is None
        store.save_preference(NotificationPreference(user_id="u1", email_enabled=False))
        pref = store.get_preference("u1")
        assert pref.push_enabled and not pref.email_enabled


class TestObservations:

    def test_region_query_is_case_insensitive_and_windowed(self, store):
        store.add_observation(ReporterObservation("u1", "Rice Blast", NOW - timedelta(hours=80), region="Chitwan"))
        store.add_observation(ReporterObservation("u2", "Rice Blast", NOW - timedelta(hours=2), region="chitwan"))
        store.add_observation(ReporterObservation("u3", "Rice Blast", NOW - timedelta(hours=1), region="Kaski"))
        rows = store.observations_in_region("Chitwan", NOW - timedelta(hours=72))
        assert [o.user_id for o in rows] == ["u2"]
        assert rows[0].observed_at.tzinfo is not None
        assert rows[0].observed_at == NOW - timedelta(hours=2)

    def test_between_is_ordered_and_exclusive_of_start(self, store):
        for i in range(3):
            store.add_observation(ReporterObservation(f"u{i}", "Blast", NOW - timedelta(hours=i), region="Chitwan"))
        rows = store.observations_between(NOW - timedelta(hours=2), NOW)
        assert [o.user_id for o in rows] == ["u1", "u0"]
        assert [o.user_id for o in store.observations_between(None, NOW)] == ["u2", "u1", "u0"]

    def test_checked_marker_persists(self, store):
        obs = ReporterObservation("u1", "Blast", NOW - timedelta(hours=1), region="Chitwan")
        store.add_observation(obs)
        store.mark_observation_checked(obs.observation_id, NOW)
        store.mark_observation_checked("OBS-missing", NOW)
        (row,) = store.observations_between(None, NOW)
        assert row.checked_at == NOW
        assert row.checked_at.tzinfo is not None


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Uniqueness backstops
# ═══════════════════════════════════════════════════════════════════════════

class TestMarkers:

    def test_second_marker_reports_false(self, store):
        marker = DeliveredAlertMarker("u1", AlertType.HEAVY_RAIN, date(2026, 10, 20))
        assert store.add_marker(marker) is True
        assert store.add_marker(marker) is False
        assert store.has_marker("u1", AlertType.HEAVY_RAIN, date(2026, 10, 20))
        assert not store.has_marker("u1", AlertType.HEAVY_RAIN, date(2026, 10, 21))

    def test_dedup_guard_on_sql(self, store):
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.COLD_STRESS, now=NOW) as claim:
            assert claim.accepted
            claim.commit()
        with guard.claim("u1", AlertType.COLD_STRESS, now=NOW) as claim:
            assert not claim.accepted


class TestOutbreaks:

    def test_one_active_record_per_region_and_condition(self, store):
        assert store.create_outbreak(_make_outbreak()) is True
        assert store.create_outbreak(_make_outbreak(label=" rice blast ")) is False
        assert store.create_outbreak(_make_outbreak(region="Kaski")) is True
        assert len(store.list_active_outbreaks("chitwan")) == 1

    def test_deactivated_record_frees_the_slot(self, store):
        store.create_outbreak(_make_outbreak())
        assert store.deactivate_outbreaks_before(NOW + timedelta(hours=1)) == 1
        assert store.list_active_outbreaks() == []
        assert len(store.list_outbreaks(active_only=False)) == 1
        assert store.create_outbreak(_make_outbreak()) is True

    def test_update_in_place(self, store):
        record = _make_outbreak()
        store.create_outbreak(record)
        record.detection_count = 5
        record.severity = "high"
        store.update_outbreak(record)
        (stored,) = store.list_active_outbreaks()
        assert stored.detection_count == 5
        assert stored.severity == "high"

    def test_update_missing_record_raises(self, store):
        with pytest.raises(PersistenceError):
            store.update_outbreak(_make_outbreak())

    def test_detector_on_sql_store(self, store, monkeypatch):
        monkeypatch.setattr(outbreak, "_now", lambda: NOW)
        for uid in ("r1", "r2", "r3", "listener"):
            store.upsert_profile(FarmerProfile(user_id=uid, district="Chitwan"))
        result = None
        for i, uid in enumerate(("r1", "r2", "r3")):
            obs = ReporterObservation(uid, "Rice Blast", NOW - timedelta(hours=2 - i), region="Chitwan")
            store.add_observation(obs)
            result = check_observation(store, obs, now=obs.observed_at, matcher=SubstringMatcher())
        assert result.action == OutbreakAction.CREATED
        assert result.fanout.notifications_created == 3
        assert [n.user_id for n in store.list_notifications("listener")] == ["listener"]
        assert store.list_notifications("r3") == []
        assert all(o.checked_at == NOW for o in store.observations_between(None, NOW))


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Notifications, tasks, checkpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestNotifications:

    def test_typed_payload_round_trip(self, store):
        payload = SprayWindowPayload(rain_probability=10.0, wind_kmh=5.0, window_start="2026-10-20T06:00", window_hours=7)
        n = _make_notification(payload=payload)
        store.add_notification(n)
        got = store.get_notification(n.notification_id)
        assert got.payload == payload
        assert got.alert_type == AlertType.SPRAY_WINDOW
        assert got.created_at == NOW

    def test_list_newest_first_with_since_and_limit(self, store):
        for h in range(4):
            store.add_notification(_make_notification(at=NOW + timedelta(hours=h)))
        store.add_notification(_make_notification(uid="other"))
        rows = store.list_notifications("u1", limit=2)
        assert [r.created_at for r in rows] == [NOW + timedelta(hours=3), NOW + timedelta(hours=2)]
        assert len(store.list_notifications("u1", since=NOW + timedelta(hours=1))) == 2

    def test_mark_read_scoped_to_owner(self, store):
        n = _make_notification()
        store.add_notification(n)
        assert store.mark_read(n.notification_id, "intruder") is False
        assert store.mark_read(n.notification_id, "u1") is True
        assert store.get_notification(n.notification_id).read

    def test_mark_all_read_counts_unread(self, store):
        for h in range(3):
            store.add_notification(_make_notification(at=NOW + timedelta(hours=h)))
        assert store.mark_all_read("u1") == 3
        assert store.mark_all_read("u1") == 0

    def test_unknown_payload_type_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            parse_payload("hailstorm", {})
        assert exc.value.details["field"] == "alert_type"
        with pytest.raises(ValidationError):
            parse_payload(AlertType.HEAVY_RAIN, {"rain_mm": 30.0})

    def test_duplicate_id_is_persistence_error(self, store):
        n = _make_notification(payload=OutbreakPayload("OBK-1", "Rice Blast", "Chitwan", 3))
        store.add_notification(n)
        with pytest.raises(PersistenceError):
            store.add_notification(n)


class TestDeliveryTasks:

    def test_due_tasks(self, store):
        due = DeliveryTask("NTF-1", "u1", AlertChannel.PUSH, AlertType.HEAVY_RAIN,
                           status=DeliveryStatus.RETRY_SCHEDULED, attempts=1,
                           next_attempt_at=NOW - timedelta(minutes=1))
        later = DeliveryTask("NTF-1", "u1", AlertChannel.EMAIL, AlertType.HEAVY_RAIN,
                             status=DeliveryStatus.RETRY_SCHEDULED, attempts=1,
                             next_attempt_at=NOW + timedelta(minutes=5))
        done = DeliveryTask("NTF-2", "u2", AlertChannel.PUSH, AlertType.HEAVY_RAIN,
                            status=DeliveryStatus.DELIVERED, attempts=1)
        for t in (due, later, done):
            store.add_delivery_task(t)

        (got,) = store.due_delivery_tasks(NOW)
        assert got.task_id == due.task_id
        assert got.channel == AlertChannel.PUSH

        got.status = DeliveryStatus.DELIVERED
        got.attempts = 2
        got.next_attempt_at = None
        store.update_delivery_task(got)
        assert store.due_delivery_tasks(NOW) == []
        assert len(store.list_delivery_tasks("NTF-1")) == 2


class TestCheckpoints:

    def test_checkpoint_overwrite(self, store):
        assert store.get_checkpoint("weather_run") is None
        store.set_checkpoint("weather_run", NOW)
        store.set_checkpoint("weather_run", NOW + timedelta(days=1))
        assert store.get_checkpoint("weather_run") == NOW + timedelta(days=1)

    def test_ping(self, store):
        assert store.ping() is True
