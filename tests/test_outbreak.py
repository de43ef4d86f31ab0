"""
test_outbreak.py — Disease outbreak clustering.

Covers:
    • Threshold crossing: 2 → nothing, 3 → create + notify, 4 → update only
    • Trailing 72-hour window and distinct-reporter counting
    • Region scoping and the no-location no-op
    • Substring vs condition-code matching
    • Batch scan with checkpoint, stale sweep, dashboard ordering
    • Checked-on-insert observations are not replayed by the scan

Run with:
    pytest tests/test_outbreak.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts import outbreak
from backend.app.alerts.models import (
    AlertType,
    FarmerProfile,
    OutbreakAction,
    OutbreakRecord,
    ReporterObservation,
)
from backend.app.alerts.outbreak import (
    SCAN_CHECKPOINT,
    ConditionCodeMatcher,
    SubstringMatcher,
    check_observation,
    deactivate_stale_outbreaks,
    get_matcher,
    list_outbreaks_for_dashboard,
    normalize_label,
    record_observation,
    scan_new_observations,
)
from backend.app.core.errors import PersistenceError
from backend.app.store.memory import InMemoryAlertStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class _Clock:
    """Stands in for the detector's wall clock; tests move `at`."""

    def __init__(self, at):
        self.at = at

    def __call__(self):
        return self.at


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    c = _Clock(NOW)
    monkeypatch.setattr(outbreak, "_now", c)
    return c


@pytest.fixture
def store():
    s = InMemoryAlertStore()
    for uid in ("r1", "r2", "r3", "r4", "listener"):
        s.upsert_profile(FarmerProfile(user_id=uid, district="Chitwan"))
    s.upsert_profile(FarmerProfile(user_id="far-away", district="Kaski"))
    s.upsert_profile(FarmerProfile(user_id="nowhere"))
    return s


def _observe(store, uid, label="Rice Blast", at=NOW, region="Chitwan", matcher=None, **kwargs):
    obs = ReporterObservation(user_id=uid, condition_label=label, observed_at=at, region=region)
    store.add_observation(obs)
    return check_observation(store, obs, now=at, matcher=matcher or SubstringMatcher(), **kwargs)


def _outbreak_notifications(store):
    return [n for n in store.notifications.values() if n.alert_type == AlertType.OUTBREAK_ALERT]


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Threshold
# ═══════════════════════════════════════════════════════════════════════════

class TestThreshold:

    def test_two_reporters_below_threshold(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        result = _observe(store, "r2")
        assert result.action == OutbreakAction.BELOW_THRESHOLD
        assert result.detection_count == 2
        assert not result.outbreak_detected
        assert store.outbreaks == {}
        assert store.notifications == {}

    def test_third_reporter_creates_and_notifies_region(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=5))
        _observe(store, "r2", at=NOW - timedelta(hours=3))
        result = _observe(store, "r3")

        assert result.action == OutbreakAction.CREATED
        assert result.detection_count == 3
        record = result.outbreak
        assert record.region == "Chitwan"
        assert record.state == "Bagmati"
        assert record.first_seen_at == NOW - timedelta(hours=5)
        assert record.last_seen_at == NOW
        assert record.severity == "medium"

        notified = sorted(n.user_id for n in _outbreak_notifications(store))
        assert notified == ["listener", "r1", "r2", "r4"]
        assert result.fanout.total_recipients == 4
        n = _outbreak_notifications(store)[0]
        assert n.title == "⚠️ Disease Outbreak Alert: Rice Blast"
        assert n.payload.outbreak_id == record.outbreak_id
        assert n.payload.detection_count == 3

    def test_fourth_reporter_updates_without_notifying(self, store):
        for i, uid in enumerate(("r1", "r2", "r3")):
            _observe(store, uid, at=NOW - timedelta(hours=3 - i))
        before = len(store.notifications)

        result = _observe(store, "r4", severity="high")
        assert result.action == OutbreakAction.UPDATED
        assert result.detection_count == 4
        assert len(store.notifications) == before
        (record,) = store.outbreaks.values()
        assert record.detection_count == 4
        assert record.last_seen_at == NOW
        assert record.severity == "high"

    def test_same_reporter_counts_once(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=4))
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        result = _observe(store, "r2")
        assert result.detection_count == 2
        assert result.action == OutbreakAction.BELOW_THRESHOLD

    def test_severity_from_observation(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        obs = ReporterObservation("r3", "Rice Blast", NOW, severity="low", region="Chitwan")
        store.add_observation(obs)
        result = check_observation(store, obs, now=NOW, matcher=SubstringMatcher())
        assert result.outbreak.severity == "low"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Window and scope
# ═══════════════════════════════════════════════════════════════════════════

class TestWindowAndScope:

    def test_report_older_than_72h_excluded(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=73))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        result = _observe(store, "r3")
        assert result.detection_count == 2
        assert result.action == OutbreakAction.BELOW_THRESHOLD

    def test_report_exactly_72h_old_included(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=72))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        result = _observe(store, "r3")
        assert result.action == OutbreakAction.CREATED

    def test_other_region_does_not_count(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=2), region="Kaski")
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        result = _observe(store, "r3")
        assert result.detection_count == 2

    def test_reporter_without_location_is_noop(self, store):
        result = _observe(store, "nowhere", region=None)
        assert result.action == OutbreakAction.SKIPPED
        assert result.reason == "no_location"
        assert store.outbreaks == {}

    def test_region_resolved_from_profile(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        obs = ReporterObservation("r3", "Rice Blast", NOW)
        assert record_observation(store, obs).name == "Chitwan"
        assert store.observations[obs.observation_id].region == "Chitwan"
        result = check_observation(store, obs, now=NOW, matcher=SubstringMatcher())
        assert result.action == OutbreakAction.CREATED

    def test_trigger_counts_even_if_not_stored(self, store):
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        obs = ReporterObservation("r3", "Rice Blast", NOW, region="Chitwan")
        result = check_observation(store, obs, now=NOW, matcher=SubstringMatcher())
        assert result.detection_count == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Condition matching
# ═══════════════════════════════════════════════════════════════════════════

class TestMatching:

    def test_substring_clusters_related_labels(self, store):
        _observe(store, "r1", label="blast", at=NOW - timedelta(hours=2))
        _observe(store, "r2", label="RICE BLAST", at=NOW - timedelta(hours=1))
        result = _observe(store, "r3", label="Rice Blast disease")
        assert result.action == OutbreakAction.CREATED

    def test_substring_keeps_unrelated_apart(self):
        m = SubstringMatcher()
        assert not m.matches("Late Blight", "Rice Blast")
        assert not m.matches("", "Rice Blast")

    def test_code_matcher_uses_aliases(self):
        m = ConditionCodeMatcher()
        assert m.code("Neck Blast") == "rice_blast"
        assert m.matches("leaf blast", "Rice Blast")
        assert not m.matches("leaf blast", "brown spot")
        # unknown labels compare by normalised text
        assert m.matches("Mystery Wilt!", "mystery  wilt")

    def test_code_mode_clusters_what_substring_misses(self, store):
        code = ConditionCodeMatcher()
        _observe(store, "r1", label="Leaf Blast", at=NOW - timedelta(hours=2), matcher=code)
        _observe(store, "r2", label="Neck Blast", at=NOW - timedelta(hours=1), matcher=code)
        result = _observe(store, "r3", label="Rice Blast", matcher=code)
        assert result.action == OutbreakAction.CREATED

    def test_normalize_label(self):
        assert normalize_label("  Rice-Blast!! ") == "rice blast"

    def test_get_matcher(self):
        assert isinstance(get_matcher("code"), ConditionCodeMatcher)
        assert isinstance(get_matcher("SUBSTRING"), SubstringMatcher)
        with pytest.raises(ValueError):
            get_matcher("fuzzy")


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Scan, sweep, dashboard
# ═══════════════════════════════════════════════════════════════════════════

class TestScan:

    def test_scan_replays_observations_in_order(self, store):
        for i, uid in enumerate(("r1", "r2", "r3", "r4")):
            store.add_observation(ReporterObservation(
                uid, "Rice Blast", NOW - timedelta(hours=4 - i), region="Chitwan",
            ))

        summary = scan_new_observations(store, now=NOW, matcher=SubstringMatcher())
        assert summary["processed"] == 4
        assert summary["outbreaks_created"] == 1
        assert summary["outbreaks_updated"] == 1
        assert store.get_checkpoint(SCAN_CHECKPOINT) == NOW
        (record,) = store.outbreaks.values()
        assert record.detection_count == 4

    def test_rescan_processes_nothing_new(self, store):
        store.add_observation(ReporterObservation("r1", "Rice Blast", NOW - timedelta(hours=1), region="Chitwan"))
        scan_new_observations(store, now=NOW)
        again = scan_new_observations(store, now=NOW + timedelta(minutes=5))
        assert again["processed"] == 0


class TestCheckedOnInsert:

    def _insert_cluster(self, store):
        """Three reports recorded and checked one by one, as /outbreak-check does."""
        for i, uid in enumerate(("r1", "r2", "r3")):
            obs = ReporterObservation(uid, "Rice Blast", NOW - timedelta(hours=3 - i))
            record_observation(store, obs)
            check_observation(store, obs, matcher=SubstringMatcher())

    def test_check_stamps_stored_observation(self, store):
        self._insert_cluster(store)
        assert [o.checked_at for o in store.observations.values()] == [NOW, NOW, NOW]
        assert len(_outbreak_notifications(store)) == 4

    def test_scan_skips_observations_checked_on_insert(self, store):
        self._insert_cluster(store)
        summary = scan_new_observations(store, now=NOW, matcher=SubstringMatcher())
        assert summary["processed"] == 0
        assert summary["already_checked"] == 3
        assert summary["outbreaks_created"] == 0
        assert store.get_checkpoint(SCAN_CHECKPOINT) == NOW
        assert [n.user_id for n in _outbreak_notifications(store)].count("listener") == 1

    def test_sweep_then_scan_does_not_revive_outbreak(self, store, clock):
        self._insert_cluster(store)
        clock.at = NOW + timedelta(days=8)
        assert deactivate_stale_outbreaks(store) == 1

        summary = scan_new_observations(store, matcher=SubstringMatcher())
        assert summary["outbreaks_created"] == 0
        assert store.list_active_outbreaks() == []
        assert len(store.outbreaks) == 1
        assert [n.user_id for n in _outbreak_notifications(store)].count("listener") == 1

    def test_unchecked_cluster_scanned_late_is_not_recorded(self, store, clock):
        for i, uid in enumerate(("r1", "r2", "r3")):
            store.add_observation(ReporterObservation(
                uid, "Rice Blast", NOW - timedelta(hours=3 - i), region="Chitwan",
            ))
        clock.at = NOW + timedelta(days=10)

        summary = scan_new_observations(store, matcher=SubstringMatcher())
        assert summary["processed"] == 3
        assert summary["outbreaks_created"] == 0
        assert summary["skipped"] == 1
        assert store.outbreaks == {}
        assert _outbreak_notifications(store) == []

    def test_stale_result_reports_reason(self, store, clock):
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        clock.at = NOW + timedelta(hours=169)
        result = _observe(store, "r3")
        assert result.action == OutbreakAction.SKIPPED
        assert result.reason == "stale"
        assert result.detection_count == 3

    def test_failed_create_leaves_observation_unchecked(self, store):
        class BrokenStore(InMemoryAlertStore):
            def create_outbreak(self, record):
                raise PersistenceError("outbreak_record", "disk full")

        broken = BrokenStore()
        for profile in store.list_profiles():
            broken.upsert_profile(profile)
        _observe(broken, "r1", at=NOW - timedelta(hours=2))
        _observe(broken, "r2", at=NOW - timedelta(hours=1))
        obs = ReporterObservation("r3", "Rice Blast", NOW, region="Chitwan")
        broken.add_observation(obs)
        with pytest.raises(PersistenceError):
            check_observation(broken, obs, now=NOW, matcher=SubstringMatcher())
        assert broken.observations[obs.observation_id].checked_at is None


class TestSweepAndDashboard:

    def _record(self, region, label, count, last_seen=NOW):
        return OutbreakRecord(
            region=region, condition_label=label,
            first_seen_at=last_seen - timedelta(hours=10), last_seen_at=last_seen,
            detection_count=count,
        )

    def test_stale_outbreak_deactivated(self, store):
        store.create_outbreak(self._record("Chitwan", "Rice Blast", 3))
        store.create_outbreak(self._record("Kaski", "Late Blight", 3, last_seen=NOW + timedelta(days=6)))
        count = deactivate_stale_outbreaks(store, now=NOW + timedelta(hours=169))
        assert count == 1
        assert [r.region for r in store.list_active_outbreaks()] == ["Kaski"]

    def test_new_cluster_after_deactivation_creates_again(self, store):
        store.create_outbreak(self._record("Chitwan", "Rice Blast", 3, last_seen=NOW - timedelta(days=10)))
        deactivate_stale_outbreaks(store, now=NOW)
        _observe(store, "r1", at=NOW - timedelta(hours=2))
        _observe(store, "r2", at=NOW - timedelta(hours=1))
        assert _observe(store, "r3").action == OutbreakAction.CREATED
        assert len(store.outbreaks) == 2

    def test_dashboard_puts_home_district_first(self, store):
        store.create_outbreak(self._record("Kaski", "Late Blight", 5))
        store.create_outbreak(self._record("Jhapa", "Wheat Rust", 4))
        store.create_outbreak(self._record("Chitwan", "Rice Blast", 3))
        ordered = list_outbreaks_for_dashboard(store, district="chitwan")
        assert [r.region for r in ordered] == ["Chitwan", "Kaski", "Jhapa"]
        ordered = list_outbreaks_for_dashboard(store)
        assert [r.detection_count for r in ordered] == [5, 4, 3]
