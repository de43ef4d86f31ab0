"""
engine.py — Weather alert run orchestration.

One invocation of the scheduled weather job:

    profiles ──► group by region ──► per region:
                                        fetch forecast      (skip region on failure)
                                        evaluate rules      (0..n candidates)
                                        per candidate × user:
                                            dedup claim     (skip if already alerted today)
                                            notify          (in-app, push, email)
                                            write marker
    ──► weather_run checkpoint ──► RunSummary

Regions are independent. With WEATHER_JOB_WORKERS > 1 they run on a
thread pool; the dedup guard still serialises each (user, type, day) key.
Counters are merged into the RunSummary on the calling thread.

Failures are contained at the smallest unit: a region (forecast), a
recipient (persistence), a channel (delivery). The run reports them in the
summary instead of failing as a whole.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from backend.app.alerts.alert_service import notify_recipient
from backend.app.alerts.dedup import DedupGuard
from backend.app.alerts.models import FanoutReport, FarmerProfile, Region, RunSummary
from backend.app.alerts.rules import evaluate_forecast
from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError
from backend.app.core.logging_config import log_context
from backend.app.ingestion.weather_service import FetchStatus, ForecastFetcher
from backend.app.spatial.geo_index import get_region, group_by_region
from backend.app.store.base import AlertStore

logger = logging.getLogger(__name__)

WEATHER_CHECKPOINT = "weather_run"


@dataclass
class _RegionOutcome:
    region: str
    skipped_reason: Optional[str] = None
    candidates: int = 0
    duplicates: int = 0
    reports: List[FanoutReport] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)


def _process_region(
    store: AlertStore,
    fetcher: ForecastFetcher,
    guard: DedupGuard,
    region: Region,
    users: Sequence[FarmerProfile],
    now: datetime,
) -> _RegionOutcome:
    outcome = _RegionOutcome(region=region.name)
    log_extra = {"region": region.name}

    try:
        forecast = fetcher.fetch(region)
        candidates = evaluate_forecast(region, forecast) if forecast.success else []
    except Exception:
        # skip only this region
        logger.exception("Skipping %s: forecast could not be evaluated", region.name, extra=log_extra)
        outcome.skipped_reason = f"forecast_{FetchStatus.MALFORMED.value}"
        return outcome

    if not forecast.success:
        logger.warning(
            "Skipping %s: forecast %s (%s)",
            region.name, forecast.status.value, forecast.error_message,
            extra=log_extra,
        )
        outcome.skipped_reason = f"forecast_{forecast.status.value}"
        return outcome

    outcome.candidates = len(candidates)
    if candidates:
        logger.info(
            "%s: %s", region.name, ", ".join(c.alert_type.value for c in candidates),
            extra=log_extra,
        )

    for candidate in candidates:
        report = FanoutReport(alert_type=candidate.alert_type)
        for user in users:
            tz_name = user.timezone or region.timezone
            try:
                with guard.claim(user.user_id, candidate.alert_type, tz_name, now=now) as claim:
                    if not claim.accepted:
                        outcome.duplicates += 1
                        continue
                    record = notify_recipient(store, candidate.payload, user, now=now)
                    report.add(record)
                    if record.persisted:
                        claim.commit()
            except PersistenceError as exc:
                logger.error(
                    "%s for %s not completed: %s",
                    candidate.alert_type.value, user.user_id, exc.message,
                    extra={**log_extra, "recipient_id": user.user_id},
                )
                outcome.failures.append({
                    "unit": f"recipient:{user.user_id}:{candidate.alert_type.value}",
                    "error": exc.message,
                })
        outcome.reports.append(report)

    return outcome


def run_weather_alerts(
    store: AlertStore,
    fetcher: Optional[ForecastFetcher] = None,
    *,
    now: Optional[datetime] = None,
    workers: Optional[int] = None,
    guard: Optional[DedupGuard] = None,
) -> RunSummary:
    """
    Run the weather alert job once over every monitored region.

    Parameters
    ----------
    store : AlertStore
    fetcher : ForecastFetcher
        Created (and closed) here when omitted.
    now : datetime
        Run time; decides each user's local day for deduplication.
    workers : int
        Region parallelism; defaults to settings.WEATHER_JOB_WORKERS.

    Returns
    -------
    RunSummary
    """
    now = now or datetime.now(timezone.utc)
    summary = RunSummary(started_at=now)

    owns_fetcher = fetcher is None
    fetcher = fetcher or ForecastFetcher()
    guard = guard or DedupGuard(store)
    workers = max(1, workers or settings.WEATHER_JOB_WORKERS)

    with log_context(run_id=summary.run_id):
        try:
            _run_regions(store, fetcher, guard, summary, now, workers)
        finally:
            if owns_fetcher:
                fetcher.close()

    summary.completed_at = datetime.now(timezone.utc)
    logger.info(
        "Weather run %s done: %d processed, %d skipped, %d alerts, %d duplicates, "
        "push %d/%d, email %d/%d, %d failure(s)",
        summary.run_id, summary.regions_processed, len(summary.regions_skipped),
        summary.alerts_created, summary.duplicates_suppressed,
        summary.push_sent, summary.push_sent + summary.push_failed,
        summary.emails_sent, summary.emails_sent + summary.emails_failed,
        len(summary.failures),
        extra={"run_id": summary.run_id},
    )
    return summary


def _run_regions(
    store: AlertStore,
    fetcher,
    guard: DedupGuard,
    summary: RunSummary,
    now: datetime,
    workers: int,
) -> None:
    groups, unresolved = group_by_region(store.list_profiles())
    summary.users_without_location = len(unresolved)
    if unresolved:
        logger.info("%d user(s) without a resolvable location skipped", len(unresolved))

    regions = [(get_region(name), users) for name, users in groups.items()]
    logger.info(
        "Weather run %s: %d region(s), %d worker(s)", summary.run_id, len(regions), workers,
    )

    def _work(item) -> _RegionOutcome:
        region, users = item
        # pool threads start with an empty context
        with log_context(run_id=summary.run_id, region=region.name):
            return _process_region(store, fetcher, guard, region, users, now)

    if workers > 1 and len(regions) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="weather-region") as pool:
            outcomes = list(pool.map(_work, regions))
    else:
        outcomes = [_work(item) for item in regions]

    for outcome in outcomes:
        if outcome.skipped_reason:
            summary.regions_skipped.append({"region": outcome.region, "reason": outcome.skipped_reason})
            continue
        summary.regions_processed += 1
        summary.candidates += outcome.candidates
        summary.duplicates_suppressed += outcome.duplicates
        summary.failures.extend(outcome.failures)
        for report in outcome.reports:
            summary.absorb(report)

    try:
        store.set_checkpoint(WEATHER_CHECKPOINT, now)
    except PersistenceError as exc:
        summary.failures.append({"unit": "checkpoint:weather_run", "error": exc.message})
