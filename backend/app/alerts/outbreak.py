"""
outbreak.py — Disease outbreak clustering detector.

═══════════════════════════════════════════════════════════════════════════
CLUSTER RULE
═══════════════════════════════════════════════════════════════════════════

For a new observation (reporter, region, condition, time):

    1. Collect observations in the same region, within the trailing
       72 hours, whose condition matches the new one.
    2. Count DISTINCT reporters.
    3. count < 3                          → nothing
    4. count ≥ 3, no active record        → create record, then notify every
                                            user in the region except the
                                            triggering reporter
    5. count ≥ 3, active record exists    → update count / last-seen in place,
                                            no notification

The triggering observation always counts, whether or not the store already
shows it. A reporter with no resolvable region is a silent no-op.

Every completed check stamps the stored observation with checked_at, and the
batch scan skips stamped rows. A cluster whose newest report is already
older than OUTBREAK_STALE_HOURS (against the wall clock) is never recorded,
so a late replay cannot revive an outbreak the sweep retired.

═══════════════════════════════════════════════════════════════════════════
CONDITION MATCHING
═══════════════════════════════════════════════════════════════════════════

    substring (default)  case-insensitive containment in either direction,
                         so "blast" and "rice blast" form one cluster
    code                 labels map to a canonical condition code through an
                         alias table; equal codes cluster, the free-text
                         label stays display-only

Selected with CONDITION_MATCH_MODE.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from backend.app.alerts.alert_service import fan_out
from backend.app.alerts.models import (
    FarmerProfile,
    OutbreakAction,
    OutbreakCheckResult,
    OutbreakPayload,
    OutbreakRecord,
    Region,
    ReporterObservation,
)
from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError
from backend.app.spatial.geo_index import get_region, group_by_region, resolve_region
from backend.app.store.base import AlertStore

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

OUTBREAK_THRESHOLD = 3
OUTBREAK_WINDOW_HOURS = 72
DEFAULT_SEVERITY = "medium"
SCAN_CHECKPOINT = "outbreak_scan"


# ═══════════════════════════════════════════════════════════════════════════
# Condition matching
# ═══════════════════════════════════════════════════════════════════════════

_NON_WORD = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACES = re.compile(r"\s+")


def normalize_label(label: str) -> str:
    """Lower-case, strip punctuation, collapse whitespace."""
    return _SPACES.sub(" ", _NON_WORD.sub(" ", label.lower())).strip()


class SubstringMatcher:
    """Case-insensitive containment in either direction."""

    name = "substring"

    def matches(self, a: str, b: str) -> bool:
        x, y = a.strip().lower(), b.strip().lower()
        if not x or not y:
            return False
        return x in y or y in x


CONDITION_CODES: Dict[str, tuple] = {
    "rice_blast":            ("rice blast", "blast", "leaf blast", "neck blast", "धान ब्लास्ट", "मरुवा रोग"),
    "bacterial_leaf_blight": ("bacterial leaf blight", "bacterial blight", "blb", "डढुवा"),
    "brown_spot":            ("brown spot", "rice brown spot", "खैरो थोप्ले"),
    "late_blight":           ("late blight", "potato late blight", "tomato late blight", "पछौटे डढुवा"),
    "early_blight":          ("early blight", "अगौटे डढुवा"),
    "powdery_mildew":        ("powdery mildew", "धुलो ढुसी"),
    "downy_mildew":          ("downy mildew",),
    "wheat_rust":            ("wheat rust", "yellow rust", "stripe rust", "leaf rust", "brown rust", "सिन्दुरे"),
    "fall_armyworm":         ("fall armyworm", "armyworm", "फौजी कीरा"),
    "tomato_leaf_curl":      ("tomato leaf curl", "leaf curl virus", "tylcv"),
}

_ALIASES: Dict[str, str] = {
    normalize_label(alias): code
    for code, aliases in CONDITION_CODES.items()
    for alias in aliases + (code.replace("_", " "),)
}


class ConditionCodeMatcher:
    """Equality on canonical condition codes. Unknown labels fall back to the normalised text."""

    name = "code"

    def code(self, label: str) -> str:
        norm = normalize_label(label)
        return _ALIASES.get(norm, norm)

    def matches(self, a: str, b: str) -> bool:
        ca, cb = self.code(a), self.code(b)
        return bool(ca) and ca == cb


_MATCHERS = {
    SubstringMatcher.name: SubstringMatcher,
    ConditionCodeMatcher.name: ConditionCodeMatcher,
}


def get_matcher(mode: Optional[str] = None):
    mode = (mode or settings.CONDITION_MATCH_MODE).lower()
    try:
        return _MATCHERS[mode]()
    except KeyError:
        raise ValueError(f"Unknown CONDITION_MATCH_MODE '{mode}' (expected substring | code)") from None


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_observation_region(
    store: AlertStore, observation: ReporterObservation,
) -> Optional[Region]:
    region = get_region(observation.region)
    if region is not None:
        return region
    profile = store.get_profile(observation.user_id)
    if profile is None:
        return None
    return resolve_region(profile)


def _region_recipients(
    store: AlertStore, region: Region, exclude_user_id: str,
) -> List[FarmerProfile]:
    groups, _ = group_by_region(store.list_profiles())
    return [p for p in groups.get(region.name, []) if p.user_id != exclude_user_id]


def record_observation(
    store: AlertStore, observation: ReporterObservation,
) -> Optional[Region]:
    """
    Store an observation under its resolved region.

    A missing region is filled from the reporter's profile so the
    observation is visible to later window queries. Returns the region,
    or None when the reporter has no location on file (stored as-is).
    """
    region = _resolve_observation_region(store, observation)
    if region is not None:
        observation.region = region.name
    store.add_observation(observation)
    return region


# ═══════════════════════════════════════════════════════════════════════════
# Detector
# ═══════════════════════════════════════════════════════════════════════════

def check_observation(
    store: AlertStore,
    observation: ReporterObservation,
    *,
    now: Optional[datetime] = None,
    severity: Optional[str] = None,
    matcher=None,
    threshold: int = OUTBREAK_THRESHOLD,
) -> OutbreakCheckResult:
    """
    Evaluate one new observation against the cluster rule.

    Parameters
    ----------
    store : AlertStore
    observation : ReporterObservation
        The observation that was just recorded.
    now : datetime
        Evaluation time; the window is (now - 72h, now].
    severity : str
        Severity for a newly created record. Falls back to the
        observation's own severity, then "medium".
    matcher
        Condition matcher; defaults to CONDITION_MATCH_MODE.

    Returns
    -------
    OutbreakCheckResult

    Raises
    ------
    PersistenceError
        When the outbreak record cannot be written. No notification has
        been sent in that case, and the observation is left unchecked so
        the next scan retries it.
    """
    result = _evaluate_observation(
        store, observation,
        now=now or _now(),
        severity=severity,
        matcher=matcher or get_matcher(),
        threshold=threshold,
    )
    store.mark_observation_checked(observation.observation_id, _now())
    return result


def _evaluate_observation(
    store: AlertStore,
    observation: ReporterObservation,
    *,
    now: datetime,
    severity: Optional[str],
    matcher,
    threshold: int,
) -> OutbreakCheckResult:
    label = observation.condition_label.strip()

    region = _resolve_observation_region(store, observation)
    if region is None:
        logger.info(
            "Outbreak check skipped for %s: no location on file", observation.user_id,
            extra={"recipient_id": observation.user_id},
        )
        return OutbreakCheckResult(
            action=OutbreakAction.SKIPPED, threshold=threshold,
            condition_label=label, reason="no_location",
        )
    if not observation.region:
        observation.region = region.name

    since = now - timedelta(hours=OUTBREAK_WINDOW_HOURS)
    window: Dict[str, ReporterObservation] = {
        o.observation_id: o
        for o in store.observations_in_region(region.name, since)
        if o.observed_at <= now and matcher.matches(o.condition_label, label)
    }
    if since <= observation.observed_at <= now:
        window[observation.observation_id] = observation

    reporters = {o.user_id for o in window.values()}
    count = len(reporters)
    result = OutbreakCheckResult(
        action=OutbreakAction.BELOW_THRESHOLD,
        detection_count=count,
        threshold=threshold,
        region=region.name,
        condition_label=label,
    )
    if count < threshold:
        logger.debug(
            "%s in %s: %d/%d reporters", label, region.name, count, threshold,
            extra={"region": region.name},
        )
        return result

    timestamps = [o.observed_at for o in window.values()]
    active = [
        r for r in store.list_active_outbreaks(region.name)
        if matcher.matches(r.condition_label, label)
    ]

    if not active:
        stale_before = _now() - timedelta(hours=settings.OUTBREAK_STALE_HOURS)
        if max(timestamps) < stale_before:
            logger.info(
                "%s in %s: %d reporters but newest report predates %s, not recorded",
                label, region.name, count, stale_before.isoformat(),
                extra={"region": region.name},
            )
            result.action = OutbreakAction.SKIPPED
            result.reason = "stale"
            return result
        record = OutbreakRecord(
            region=region.name,
            state=region.state,
            condition_label=label,
            first_seen_at=min(timestamps),
            last_seen_at=max(timestamps),
            detection_count=count,
            severity=severity or observation.severity or DEFAULT_SEVERITY,
        )
        if store.create_outbreak(record):
            logger.warning(
                "Outbreak detected: %s in %s (%d reporters)", label, region.name, count,
                extra={"region": region.name, "outbreak_id": record.outbreak_id},
            )
            payload = OutbreakPayload(
                outbreak_id=record.outbreak_id,
                disease=label,
                district=region.name,
                detection_count=count,
                severity=record.severity,
            )
            recipients = _region_recipients(store, region, observation.user_id)
            result.action = OutbreakAction.CREATED
            result.outbreak = record
            result.fanout = fan_out(store, payload, recipients)
            return result

        # Lost a concurrent create; fall through to update the winner
        active = [
            r for r in store.list_active_outbreaks(region.name)
            if matcher.matches(r.condition_label, label)
        ]
        if not active:
            raise PersistenceError("outbreak_record", "create conflicted but no active record found",
                                   region=region.name, condition=label)

    record = max(active, key=lambda r: (r.detection_count, r.last_seen_at))
    record.detection_count = count
    record.last_seen_at = max(record.last_seen_at, *timestamps)
    if severity or observation.severity:
        record.severity = severity or observation.severity
    store.update_outbreak(record)
    logger.info(
        "Outbreak updated: %s in %s now %d reporters", record.condition_label, region.name, count,
        extra={"region": region.name, "outbreak_id": record.outbreak_id},
    )
    result.action = OutbreakAction.UPDATED
    result.outbreak = record
    return result


def scan_new_observations(
    store: AlertStore,
    *,
    now: Optional[datetime] = None,
    matcher=None,
) -> Dict[str, Any]:
    """
    Check every observation recorded since the last scan.

    Each observation is evaluated as of its own timestamp, as if it had
    been checked on insert. Observations already checked (by
    /outbreak-check on insert) are passed over. The `outbreak_scan`
    checkpoint advances past each observation; a persistence failure
    stops the scan so the failed observation is retried next time.
    """
    now = now or _now()
    matcher = matcher or get_matcher()
    after = store.get_checkpoint(SCAN_CHECKPOINT)
    summary: Dict[str, Any] = {
        "processed": 0, "already_checked": 0, "outbreaks_created": 0,
        "outbreaks_updated": 0, "skipped": 0, "failures": [],
    }

    checkpoint = after
    for obs in store.observations_between(after, now):
        if obs.checked_at is not None:
            summary["already_checked"] += 1
            checkpoint = obs.observed_at
            continue
        try:
            result = check_observation(store, obs, now=obs.observed_at, matcher=matcher)
        except PersistenceError as exc:
            logger.error("Outbreak scan stopped at %s: %s", obs.observation_id, exc.message)
            summary["failures"].append({"unit": f"observation:{obs.observation_id}", "error": exc.message})
            break
        summary["processed"] += 1
        if result.action == OutbreakAction.CREATED:
            summary["outbreaks_created"] += 1
        elif result.action == OutbreakAction.UPDATED:
            summary["outbreaks_updated"] += 1
        elif result.action == OutbreakAction.SKIPPED:
            summary["skipped"] += 1
        checkpoint = obs.observed_at
    else:
        checkpoint = now

    if checkpoint is not None and checkpoint != after:
        store.set_checkpoint(SCAN_CHECKPOINT, checkpoint)
    summary["checkpoint"] = checkpoint.isoformat() if checkpoint else None
    return summary


def deactivate_stale_outbreaks(
    store: AlertStore,
    *,
    now: Optional[datetime] = None,
    stale_hours: Optional[int] = None,
) -> int:
    """Mark outbreaks with no qualifying report for `stale_hours` inactive."""
    now = now or _now()
    hours = settings.OUTBREAK_STALE_HOURS if stale_hours is None else stale_hours
    count = store.deactivate_outbreaks_before(now - timedelta(hours=hours))
    if count:
        logger.info("Deactivated %d stale outbreak(s)", count)
    return count


def list_outbreaks_for_dashboard(
    store: AlertStore,
    *,
    district: Optional[str] = None,
    active_only: bool = True,
) -> List[OutbreakRecord]:
    """Outbreaks ordered by reporter count, the given district's first."""
    records = store.list_outbreaks(active_only=active_only)
    home = district.strip().lower() if district else None
    return sorted(
        records,
        key=lambda r: (r.region.lower() != home if home else False, -r.detection_count),
    )
