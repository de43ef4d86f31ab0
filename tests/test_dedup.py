"""
test_dedup.py — One weather alert per user, type and local day.

Run with:
    pytest tests/test_dedup.py -v
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone

from backend.app.alerts.dedup import DedupGuard, local_day
from backend.app.alerts.models import AlertType, DeliveredAlertMarker
from backend.app.store.memory import InMemoryAlertStore

# 20:00 UTC is already the next day in Kathmandu (+05:45)
EVENING_UTC = datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc)


class TestLocalDay:

    def test_kathmandu_rolls_over_before_utc(self):
        assert local_day("Asia/Kathmandu", EVENING_UTC) == date(2026, 10, 20)
        assert local_day("UTC", EVENING_UTC) == date(2026, 10, 19)

    def test_unknown_zone_uses_default(self):
        assert local_day("Mars/Olympus", EVENING_UTC) == date(2026, 10, 20)

    def test_naive_time_treated_as_utc(self):
        assert local_day("UTC", datetime(2026, 10, 19, 23, 0)) == date(2026, 10, 19)


class TestClaim:

    def test_first_claim_accepted_and_commit_writes_marker(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAVY_RAIN, "Asia/Kathmandu", now=EVENING_UTC) as claim:
            assert claim.accepted
            claim.commit()
        assert store.has_marker("u1", AlertType.HEAVY_RAIN, date(2026, 10, 20))

    def test_second_claim_same_day_suppressed(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            claim.commit()
        with guard.claim("u1", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            assert not claim.accepted

    def test_other_type_or_user_not_suppressed(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            claim.commit()
        with guard.claim("u1", AlertType.COLD_STRESS, now=EVENING_UTC) as claim:
            assert claim.accepted
        with guard.claim("u2", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            assert claim.accepted

    def test_next_local_day_allowed_again(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAT_STRESS, "UTC", now=EVENING_UTC) as claim:
            claim.commit()
        tomorrow = datetime(2026, 10, 20, 1, 0, tzinfo=timezone.utc)
        with guard.claim("u1", AlertType.HEAT_STRESS, "UTC", now=tomorrow) as claim:
            assert claim.accepted

    def test_uncommitted_claim_leaves_no_marker(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            assert claim.accepted
        assert store.markers == {}

    def test_commit_after_concurrent_write_flags_race(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        with guard.claim("u1", AlertType.HEAVY_RAIN, now=EVENING_UTC) as claim:
            store.add_marker(DeliveredAlertMarker("u1", AlertType.HEAVY_RAIN, date(2026, 10, 20)))
            claim.commit()
        assert claim.committed
        assert claim.raced

    def test_parallel_claims_deliver_once(self):
        store = InMemoryAlertStore()
        guard = DedupGuard(store)
        delivered = []
        lock = threading.Lock()

        def attempt(_):
            with guard.claim("u1", AlertType.SPRAY_WINDOW, now=EVENING_UTC) as claim:
                if claim.accepted:
                    with lock:
                        delivered.append(1)
                    claim.commit()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(attempt, range(32)))

        assert len(delivered) == 1
        assert len(store.markers) == 1
