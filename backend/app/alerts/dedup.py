"""
dedup.py — Idempotency guard for weather alerts.

Key: (subject id, alert type, calendar day in the subject's local zone).

    with guard.claim(user_id, alert_type, tz) as claim:
        if not claim.accepted:
            return                    # duplicate-suppressed
        deliver(...)
        claim.commit()                # writes the marker

The guard checks for a marker, lets the caller deliver, then writes the
marker. The sequence is serialised per key with a process-local lock, so
parallel region workers cannot both pass the check for the same key. Across
processes the unique constraint on the marker table is the backstop: a
losing writer has already delivered, which is the accepted failure mode
(duplicate notification rather than a dropped alert).

If delivery raises, no marker is written and the next run retries.

Outbreaks do not go through this guard: an outbreak notifies only when its
record is created, and creation happens once per active (region, condition).
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Dict, Iterator, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.app.alerts.models import AlertType, DeliveredAlertMarker
from backend.app.core.config import settings
from backend.app.store.base import AlertStore

logger = logging.getLogger(__name__)


def local_day(tz_name: Optional[str] = None, now: Optional[datetime] = None) -> date:
    """Calendar day of `now` (default: current time) in the given zone."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    name = tz_name or settings.DEFAULT_TIMEZONE
    try:
        zone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using %s", name, settings.DEFAULT_TIMEZONE)
        zone = ZoneInfo(settings.DEFAULT_TIMEZONE)
    return now.astimezone(zone).date()


class _KeyedLocks:
    """One lock per key, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str, str], threading.Lock] = defaultdict(threading.Lock)

    def get(self, key: Tuple[str, str, str]) -> threading.Lock:
        with self._guard:
            return self._locks[key]


class Claim:
    """A reservation on one (subject, type, day) key."""

    def __init__(self, store: AlertStore, marker: DeliveredAlertMarker, accepted: bool):
        self._store = store
        self.marker = marker
        self.accepted = accepted
        self.committed = False
        self.raced = False

    def commit(self) -> None:
        """Write the marker. Call only after delivery succeeded."""
        if not self.accepted or self.committed:
            return
        written = self._store.add_marker(self.marker)
        self.committed = True
        if not written:
            self.raced = True
            logger.warning(
                "Marker for %s/%s/%s written concurrently; duplicate delivery possible",
                *self.marker.key,
                extra={"recipient_id": self.marker.subject_id,
                       "alert_type": self.marker.alert_type.value},
            )


class DedupGuard:

    def __init__(self, store: AlertStore):
        self.store = store
        self._locks = _KeyedLocks()

    @contextmanager
    def claim(
        self,
        subject_id: str,
        alert_type: AlertType,
        tz_name: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Iterator[Claim]:
        """
        Hold the per-key lock while the caller checks, delivers and commits.
        """
        day = local_day(tz_name, now)
        marker = DeliveredAlertMarker(subject_id=subject_id, alert_type=alert_type, day=day)
        with self._locks.get(marker.key):
            accepted = not self.store.has_marker(subject_id, alert_type, day)
            if not accepted:
                logger.debug(
                    "Duplicate suppressed: %s %s on %s",
                    subject_id, alert_type.value, day,
                    extra={"recipient_id": subject_id, "alert_type": alert_type.value},
                )
            yield Claim(self.store, marker, accepted)
