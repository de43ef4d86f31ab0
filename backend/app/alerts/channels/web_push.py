"""
web_push.py — Mobile push notification channel.

Providers:
    • simulation — log the push and report it delivered (development)
    • expo       — POST to the Expo push API

Expo Push API:
    POST https://exp.host/--/api/v2/push/send
    body: [{"to": "ExponentPushToken[...]", "title", "body", "data", ...}]
    reply: {"data": [{"status": "ok" | "error", "message"?, "details"?}]}

A per-message "error" ticket counts as a failed delivery even though the
HTTP call returned 200.

A recipient without a push token is SKIPPED, not FAILED: there is nothing
to retry until the user registers a device.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from backend.app.alerts.models import (
    AlertChannel,
    DeliveryAttempt,
    DeliveryStatus,
    FarmerProfile,
    Notification,
)
from backend.app.core.config import settings
from backend.app.core.errors import AlertDeliveryError

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")


def _build_message(notification: Notification, token: str) -> Dict[str, Any]:
    return {
        "to": token,
        "title": notification.title,
        "body": notification.message,
        "data": {
            "notification_id": notification.notification_id,
            "type": notification.alert_type.value,
            **notification.payload.to_dict(),
        },
        "priority": "high",
        "sound": "default",
        "channelId": notification.alert_type.value,
    }


def _send_expo(
    message: Dict[str, Any],
    *,
    client: Optional[httpx.Client],
    timeout_seconds: float,
) -> Dict[str, Any]:
    """POST one message; returns the ticket. Raises on transport/HTTP error."""
    owns_client = client is None
    client = client or httpx.Client(timeout=timeout_seconds)
    try:
        response = client.post(
            settings.EXPO_PUSH_URL,
            json=[message],
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout_seconds,
        )
        response.raise_for_status()
        tickets = response.json().get("data") or []
    finally:
        if owns_client:
            client.close()
    if not tickets:
        raise AlertDeliveryError("push", "Expo returned no push ticket")
    return tickets[0]


def send(
    notification: Notification,
    recipient: FarmerProfile,
    *,
    provider: Optional[str] = None,
    client: Optional[httpx.Client] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryAttempt:
    """
    Push a notification to a recipient's device.

    Parameters
    ----------
    notification : Notification
        The persisted in-app row; its rendered title/message are pushed.
    recipient : FarmerProfile
        Needs push_token for delivery.
    provider : str
        "simulation" or "expo". Defaults to settings.PUSH_PROVIDER.
    client : httpx.Client
        Optional shared client (tests inject a MockTransport client).

    Returns
    -------
    DeliveryAttempt
    """
    provider = provider or settings.PUSH_PROVIDER
    timeout_seconds = timeout_seconds or settings.PUSH_TIMEOUT
    attempt = DeliveryAttempt(channel=AlertChannel.PUSH, recipient_id=recipient.user_id)

    if not recipient.push_token:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No push token on file"
        return attempt

    try:
        message = _build_message(notification, recipient.push_token)

        if provider == "simulation":
            logger.info(
                "[PUSH] %s → %s: %s",
                notification.notification_id, recipient.user_id, notification.title,
                extra={"recipient_id": recipient.user_id, "channel": "push"},
            )
            attempt.status = DeliveryStatus.DELIVERED
            attempt.provider_response = {"mode": "simulated", "token_prefix": recipient.push_token[:18]}

        elif provider == "expo":
            if not recipient.push_token.startswith(EXPO_TOKEN_PREFIXES):
                raise AlertDeliveryError("push", f"Not an Expo push token: {recipient.push_token[:18]}...")
            ticket = _send_expo(message, client=client, timeout_seconds=timeout_seconds)
            if ticket.get("status") == "ok":
                attempt.status = DeliveryStatus.DELIVERED
            else:
                attempt.status = DeliveryStatus.FAILED
                attempt.error_message = ticket.get("message") or "Expo rejected the push"
            attempt.provider_response = ticket

        else:
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = f"Unknown push provider: {provider}"

    except (httpx.HTTPError, ValueError, AlertDeliveryError) as exc:
        logger.error(
            "[PUSH] Failed for %s: %s", recipient.user_id, exc,
            extra={"recipient_id": recipient.user_id, "channel": "push"},
        )
        attempt.status = DeliveryStatus.FAILED
        attempt.error_message = str(exc) or type(exc).__name__

    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
