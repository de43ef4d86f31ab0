"""
alert_service.py — Notification fan-out.

Turns one accepted alert event into per-recipient, per-channel delivery:

═══════════════════════════════════════════════════════════════════════════
FAN-OUT FLOW (per recipient)
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. In-app row      │  Render title/message in the recipient's
    │     (always)        │  language, persist one Notification
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Preferences     │  Missing row → defaults
    │                     │  Category (weather/outbreak) off → stop
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Push            │  push_enabled and a device token on file
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Email           │  email_enabled and an address on file
    └─────────────────────┘

Isolation:
    • A push/email failure never rolls back the in-app row.
    • One recipient's failure never blocks the next recipient.
    • A failed in-app write stops that recipient only (no push/email
      for an alert the user cannot see in the app).

═══════════════════════════════════════════════════════════════════════════
DELIVERY TASKS & RETRY
═══════════════════════════════════════════════════════════════════════════

Every push/email send is recorded as a DeliveryTask. A fan-out makes one
attempt per task; there is no sleeping retry inside a run. A failed task
is scheduled for a later attempt with exponential backoff:

    Channel    Max Attempts    Backoff Base    Backoff Type
    ───────    ────────────    ────────────    ────────────
    Push       3               60s             Exponential
    Email      3               300s            Exponential

    delay = base × 2^(attempt - 1)

retry_pending_deliveries() picks up due tasks (scheduler endpoint) and
marks them DELIVERED, reschedules them, or marks them FAILED once the
attempts are exhausted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from backend.app.alerts.channels import email_alert, web_push
from backend.app.alerts.messages import render
from backend.app.alerts.models import (
    ALERT_CATEGORY,
    AlertChannel,
    AlertPayload,
    DeliveryAttempt,
    DeliveryStatus,
    DeliveryTask,
    FanoutReport,
    FarmerProfile,
    Notification,
    NotificationPreference,
    RecipientDeliveryRecord,
)
from backend.app.core.errors import PersistenceError
from backend.app.store.base import AlertStore

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Per-channel retry parameters."""
    max_attempts: int
    backoff_base_seconds: float
    backoff_type: str  # "exponential" or "linear"


RETRY_CONFIGS: Dict[AlertChannel, RetryConfig] = {
    AlertChannel.PUSH:  RetryConfig(3, 60.0, "exponential"),
    AlertChannel.EMAIL: RetryConfig(3, 300.0, "exponential"),
}


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay in seconds before the attempt after `attempt` (1-based).

    >>> _compute_backoff(RetryConfig(3, 60.0, "exponential"), 2)
    120.0
    """
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


# ═══════════════════════════════════════════════════════════════════════════
# Channel Dispatcher Registry
# ═══════════════════════════════════════════════════════════════════════════

_CHANNEL_DISPATCHERS: Dict[AlertChannel, Callable[..., DeliveryAttempt]] = {
    AlertChannel.PUSH:  web_push.send,
    AlertChannel.EMAIL: email_alert.send,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _channels_for(
    preference: NotificationPreference,
    recipient: FarmerProfile,
) -> List[AlertChannel]:
    channels = []
    if preference.push_enabled and recipient.push_token:
        channels.append(AlertChannel.PUSH)
    if preference.email_enabled and recipient.email:
        channels.append(AlertChannel.EMAIL)
    return channels


def load_preference(store: AlertStore, user_id: str) -> NotificationPreference:
    """Stored preference, or the defaults when the user never saved one."""
    return store.get_preference(user_id) or NotificationPreference(user_id=user_id)


# ═══════════════════════════════════════════════════════════════════════════
# Single Task Attempt
# ═══════════════════════════════════════════════════════════════════════════

def _attempt_task(
    store: AlertStore,
    task: DeliveryTask,
    notification: Notification,
    recipient: FarmerProfile,
    now: datetime,
) -> DeliveryAttempt:
    """
    Make one attempt for a task and persist its new state.

    Channel errors never escape: a dispatcher that raises is recorded as a
    failed attempt.
    """
    dispatcher = _CHANNEL_DISPATCHERS[task.channel]
    try:
        attempt = dispatcher(notification, recipient)
    except Exception as exc:
        logger.exception(
            "Dispatcher for %s raised for %s", task.channel.value, recipient.user_id,
            extra={"recipient_id": recipient.user_id, "channel": task.channel.value},
        )
        attempt = DeliveryAttempt(
            channel=task.channel,
            recipient_id=recipient.user_id,
            status=DeliveryStatus.FAILED,
            error_message=str(exc) or type(exc).__name__,
            completed_at=now,
        )

    task.attempts += 1
    task.last_error = attempt.error_message

    if attempt.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED):
        task.status = attempt.status
        task.completed_at = now
        task.next_attempt_at = None
    elif task.attempts >= task.max_attempts:
        task.status = DeliveryStatus.FAILED
        task.completed_at = now
        task.next_attempt_at = None
        logger.warning(
            "Delivery %s via %s to %s failed permanently after %d attempts: %s",
            task.task_id, task.channel.value, recipient.user_id, task.attempts, task.last_error,
            extra={"recipient_id": recipient.user_id, "channel": task.channel.value,
                   "notification_id": notification.notification_id},
        )
    else:
        config = RETRY_CONFIGS[task.channel]
        delay = _compute_backoff(config, task.attempts)
        task.status = DeliveryStatus.RETRY_SCHEDULED
        task.next_attempt_at = now + timedelta(seconds=delay)
        logger.warning(
            "Delivery via %s to %s failed (%s); retry %d/%d in %.0fs",
            task.channel.value, recipient.user_id, task.last_error,
            task.attempts, task.max_attempts, delay,
            extra={"recipient_id": recipient.user_id, "channel": task.channel.value,
                   "notification_id": notification.notification_id},
        )

    try:
        store.update_delivery_task(task)
    except PersistenceError as exc:
        logger.error("Could not persist delivery task %s: %s", task.task_id, exc.message)

    return attempt


# ═══════════════════════════════════════════════════════════════════════════
# One Recipient
# ═══════════════════════════════════════════════════════════════════════════

def notify_recipient(
    store: AlertStore,
    payload: AlertPayload,
    recipient: FarmerProfile,
    *,
    now: Optional[datetime] = None,
) -> RecipientDeliveryRecord:
    """
    Deliver one alert event to one recipient.

    Returns a record; never raises for persistence or channel failures.
    `record.persisted` tells the caller whether the in-app row exists.
    """
    now = now or _now()
    record = RecipientDeliveryRecord(recipient_id=recipient.user_id)
    log_extra = {"recipient_id": recipient.user_id, "alert_type": payload.ALERT_TYPE.value}

    # ── 1. In-app row (unconditional) ──
    title, message = render(payload, recipient.preferred_language)
    notification = Notification(
        user_id=recipient.user_id,
        alert_type=payload.ALERT_TYPE,
        title=title,
        message=message,
        payload=payload,
        created_at=now,
    )
    try:
        store.add_notification(notification)
    except PersistenceError as exc:
        logger.error("In-app notification for %s not stored: %s", recipient.user_id, exc.message, extra=log_extra)
        record.stopped_reason = "persistence_failed"
        record.error = exc.message
        return record

    record.notification_id = notification.notification_id
    record.channels_attempted.append(AlertChannel.IN_APP)
    record.channels_delivered.append(AlertChannel.IN_APP)

    # ── 2. Preferences ──
    try:
        preference = load_preference(store, recipient.user_id)
    except PersistenceError as exc:
        logger.error("Preferences for %s unreadable: %s", recipient.user_id, exc.message, extra=log_extra)
        record.stopped_reason = "preferences_unavailable"
        record.error = exc.message
        return record

    category = ALERT_CATEGORY[payload.ALERT_TYPE]
    if not preference.allows(category):
        logger.debug("%s alerts disabled for %s", category.value, recipient.user_id, extra=log_extra)
        record.stopped_reason = "category_disabled"
        return record

    # ── 3/4. Push, then email ──
    for channel in _channels_for(preference, recipient):
        task = DeliveryTask(
            notification_id=notification.notification_id,
            user_id=recipient.user_id,
            channel=channel,
            alert_type=payload.ALERT_TYPE,
            max_attempts=RETRY_CONFIGS[channel].max_attempts,
            next_attempt_at=now,
            created_at=now,
        )
        try:
            store.add_delivery_task(task)
        except PersistenceError as exc:
            logger.error("Delivery task for %s not stored: %s", recipient.user_id, exc.message, extra=log_extra)

        record.channels_attempted.append(channel)
        attempt = _attempt_task(store, task, notification, recipient, now)
        if attempt.status == DeliveryStatus.DELIVERED:
            record.channels_delivered.append(channel)
        elif attempt.status != DeliveryStatus.SKIPPED:
            record.channels_failed.append(channel)

    return record


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

def fan_out(
    store: AlertStore,
    payload: AlertPayload,
    recipients: Sequence[FarmerProfile],
    *,
    now: Optional[datetime] = None,
) -> FanoutReport:
    """
    Deliver one alert event to every recipient.

    Parameters
    ----------
    store : AlertStore
    payload : AlertPayload
        Typed payload; its alert type selects category and templates.
    recipients : sequence of FarmerProfile

    Returns
    -------
    FanoutReport
        Per-recipient records plus aggregate counters.
    """
    now = now or _now()
    report = FanoutReport(alert_type=payload.ALERT_TYPE)
    for recipient in recipients:
        report.add(notify_recipient(store, payload, recipient, now=now))

    logger.info(
        "Fan-out %s: %d recipients, %d in-app, push %d/%d, email %d/%d",
        payload.ALERT_TYPE.value, report.total_recipients, report.notifications_created,
        report.push_sent, report.push_sent + report.push_failed,
        report.emails_sent, report.emails_sent + report.emails_failed,
        extra={"alert_type": payload.ALERT_TYPE.value},
    )
    return report


# ═══════════════════════════════════════════════════════════════════════════
# Retry of pending deliveries
# ═══════════════════════════════════════════════════════════════════════════

def retry_pending_deliveries(
    store: AlertStore,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    """
    Re-attempt every delivery task that is due.

    Returns counters: due, delivered, rescheduled, failed, skipped.
    """
    now = now or _now()
    summary = {"due": 0, "delivered": 0, "rescheduled": 0, "failed": 0, "skipped": 0}

    for task in store.due_delivery_tasks(now, limit=limit):
        summary["due"] += 1
        notification = store.get_notification(task.notification_id)
        recipient = store.get_profile(task.user_id)
        if notification is None or recipient is None:
            task.status = DeliveryStatus.FAILED
            task.completed_at = now
            task.next_attempt_at = None
            task.last_error = "notification or recipient no longer exists"
            store.update_delivery_task(task)
            summary["failed"] += 1
            continue

        _attempt_task(store, task, notification, recipient, now)
        if task.status == DeliveryStatus.DELIVERED:
            summary["delivered"] += 1
        elif task.status == DeliveryStatus.RETRY_SCHEDULED:
            summary["rescheduled"] += 1
        elif task.status == DeliveryStatus.SKIPPED:
            summary["skipped"] += 1
        else:
            summary["failed"] += 1

    if summary["due"]:
        logger.info("Delivery retry pass: %s", summary)
    return summary
