"""
channels — Per-channel delivery backends.

Each channel module exposes:
    send(notification, recipient, *, provider=None, client=None) → DeliveryAttempt

Channels never raise for provider errors; they report FAILED/SKIPPED.
Retry scheduling lives in alert_service.
"""
