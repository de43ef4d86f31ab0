"""
test_alert_service.py — Tests for notification fan-out and channel delivery.

Covers:
    • Channel backends (push via Expo, email via Resend, skip rules)
    • In-app record written regardless of preferences
    • Category and channel preference gating
    • Failure isolation across channels and recipients
    • Persisted delivery tasks and exponential-backoff retry

Run with:
    pytest tests/test_alert_service.py -v
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from backend.app.alerts import alert_service
from backend.app.alerts.alert_service import (
    RETRY_CONFIGS,
    RetryConfig,
    _compute_backoff,
    fan_out,
    load_preference,
    notify_recipient,
    retry_pending_deliveries,
)
from backend.app.alerts.channels import email_alert, web_push
from backend.app.alerts.models import (
    AlertChannel,
    AlertType,
    DeliveryAttempt,
    DeliveryStatus,
    FarmerProfile,
    HeavyRainPayload,
    Notification,
    NotificationPreference,
    OutbreakPayload,
)
from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError
from backend.app.store.memory import InMemoryAlertStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)
RAIN = HeavyRainPayload(rain_mm=32.0, probability=90.0)


def _make_profile(
    uid: str = "farmer-1",
    district: str = "Chitwan",
    language: str = "en",
    email: str = "farmer@example.com",
    push_token: str = "ExponentPushToken[abc123]",
) -> FarmerProfile:
    return FarmerProfile(
        user_id=uid,
        name="Test Farmer",
        district=district,
        preferred_language=language,
        email=email,
        push_token=push_token,
    )


def _make_notification(payload=RAIN, title: str = "Heavy Rain Expected Tomorrow") -> Notification:
    return Notification(
        user_id="farmer-1",
        alert_type=payload.ALERT_TYPE,
        title=title,
        message="32mm rain expected tomorrow (90% probability).",
        payload=payload,
    )


def _attempt(channel: AlertChannel, status: DeliveryStatus, error: str = None) -> DeliveryAttempt:
    return DeliveryAttempt(channel=channel, recipient_id="x", status=status, error_message=error)


def _ok(channel):
    return lambda notification, recipient: _attempt(channel, DeliveryStatus.DELIVERED)


def _fail(channel, error="provider down"):
    return lambda notification, recipient: _attempt(channel, DeliveryStatus.FAILED, error)


def _raise(notification, recipient):
    raise RuntimeError("socket exploded")


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def dispatchers(monkeypatch):
    """Both channels succeed unless a test overrides one."""
    monkeypatch.setitem(alert_service._CHANNEL_DISPATCHERS, AlertChannel.PUSH, _ok(AlertChannel.PUSH))
    monkeypatch.setitem(alert_service._CHANNEL_DISPATCHERS, AlertChannel.EMAIL, _ok(AlertChannel.EMAIL))
    return alert_service._CHANNEL_DISPATCHERS


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Channel backends
# ═══════════════════════════════════════════════════════════════════════════

class TestWebPushChannel:

    def test_no_token_is_skipped(self):
        attempt = web_push.send(_make_notification(), _make_profile(push_token=None))
        assert attempt.status == DeliveryStatus.SKIPPED

    def test_simulation_delivers(self):
        attempt = web_push.send(_make_notification(), _make_profile(), provider="simulation")
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.provider_response["mode"] == "simulated"

    def test_expo_ok_ticket(self):
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"data": [{"status": "ok", "id": "t-1"}]})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        attempt = web_push.send(_make_notification(), _make_profile(), provider="expo", client=client)
        assert attempt.status == DeliveryStatus.DELIVERED
        (message,) = sent[0]
        assert message["to"] == "ExponentPushToken[abc123]"
        assert message["data"]["type"] == "heavy_rain"
        assert message["data"]["rain_mm"] == 32.0

    def test_expo_error_ticket_is_failure(self):
        body = {"data": [{"status": "error", "message": "DeviceNotRegistered"}]}
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
        attempt = web_push.send(_make_notification(), _make_profile(), provider="expo", client=client)
        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.error_message == "DeviceNotRegistered"

    def test_expo_http_error_is_failure(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        attempt = web_push.send(_make_notification(), _make_profile(), provider="expo", client=client)
        assert attempt.status == DeliveryStatus.FAILED

    def test_non_expo_token_rejected(self):
        attempt = web_push.send(
            _make_notification(), _make_profile(push_token="fcm:xyz"), provider="expo",
        )
        assert attempt.status == DeliveryStatus.FAILED
        assert "Expo" in attempt.error_message


class TestEmailChannel:

    def test_no_email_is_skipped(self):
        attempt = email_alert.send(_make_notification(), _make_profile(email=None))
        assert attempt.status == DeliveryStatus.SKIPPED

    def test_simulation_subject_has_icon(self):
        attempt = email_alert.send(_make_notification(), _make_profile(), provider="simulation")
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.provider_response["subject"].startswith("🌧️ Heavy Rain")

    def test_outbreak_subject_names_district(self):
        payload = OutbreakPayload("OBK-1", "Rice Blast", "Chitwan", 3)
        n = _make_notification(payload, title="⚠️ Disease Outbreak Alert: Rice Blast")
        assert email_alert._build_subject(n) == "⚠️ Disease Outbreak Alert: Rice Blast - Chitwan"

    def test_nepali_body(self):
        body = email_alert._build_html_body(_make_notification(), _make_profile(language="ne"))
        assert "नमस्ते" in body
        assert "वर्षा" in body

    def test_resend_without_key_fails(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", None)
        attempt = email_alert.send(_make_notification(), _make_profile(), provider="resend")
        assert attempt.status == DeliveryStatus.FAILED
        assert "RESEND_API_KEY" in attempt.error_message

    def test_resend_posts_with_bearer_key(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-1"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        attempt = email_alert.send(_make_notification(), _make_profile(), provider="resend", client=client)
        assert attempt.status == DeliveryStatus.DELIVERED
        assert seen["auth"] == "Bearer re_test"
        assert seen["body"]["to"] == ["farmer@example.com"]
        assert seen["body"]["text"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Preferences and in-app record
# ═══════════════════════════════════════════════════════════════════════════

class TestNotifyRecipient:

    def test_defaults_when_no_preference_row(self, store):
        pref = load_preference(store, "nobody")
        assert pref.push_enabled and pref.email_enabled and pref.weather_alerts

    def test_all_channels_by_default(self, store, dispatchers):
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.persisted
        assert record.channels_delivered == [AlertChannel.IN_APP, AlertChannel.PUSH, AlertChannel.EMAIL]
        assert len(store.notifications) == 1

    def test_in_app_written_even_when_category_disabled(self, store, dispatchers):
        store.save_preference(NotificationPreference(user_id="farmer-1", weather_alerts=False))
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.persisted
        assert record.stopped_reason == "category_disabled"
        assert record.channels_attempted == [AlertChannel.IN_APP]
        assert store.delivery_tasks == {}

    def test_in_app_flag_does_not_suppress_in_app_row(self, store, dispatchers):
        store.save_preference(NotificationPreference(user_id="farmer-1", in_app_enabled=False))
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.persisted
        assert record.channels_delivered == [AlertChannel.IN_APP, AlertChannel.PUSH, AlertChannel.EMAIL]
        assert len(store.notifications) == 1

    def test_outbreak_category_independent_of_weather(self, store, dispatchers):
        store.save_preference(NotificationPreference(user_id="farmer-1", weather_alerts=False))
        payload = OutbreakPayload("OBK-1", "Rice Blast", "Chitwan", 3)
        record = notify_recipient(store, payload, _make_profile(), now=NOW)
        assert AlertChannel.PUSH in record.channels_delivered

    def test_email_disabled_push_enabled(self, store, dispatchers):
        store.save_preference(NotificationPreference(user_id="farmer-1", email_enabled=False))
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.channels_attempted == [AlertChannel.IN_APP, AlertChannel.PUSH]

    def test_missing_token_skips_push(self, store, dispatchers):
        record = notify_recipient(store, RAIN, _make_profile(push_token=None), now=NOW)
        assert AlertChannel.PUSH not in record.channels_attempted
        assert AlertChannel.EMAIL in record.channels_delivered

    def test_nepali_notification_text(self, store, dispatchers):
        notify_recipient(store, RAIN, _make_profile(language="ne"), now=NOW)
        (n,) = store.notifications.values()
        assert n.title == "भोलि भारी वर्षा सम्भावना"
        assert n.to_dict()["data"] == {"rain_mm": 32.0, "probability": 90.0}

    def test_persistence_failure_stops_recipient(self, dispatchers):
        class BrokenStore(InMemoryAlertStore):
            def add_notification(self, notification):
                raise PersistenceError("notification", "disk full")

        record = notify_recipient(BrokenStore(), RAIN, _make_profile(), now=NOW)
        assert not record.persisted
        assert record.stopped_reason == "persistence_failed"
        assert record.channels_attempted == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Failure isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureIsolation:

    def test_push_failure_does_not_block_email(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.channels_failed == [AlertChannel.PUSH]
        assert AlertChannel.EMAIL in record.channels_delivered

    def test_dispatcher_exception_becomes_failure(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.EMAIL, _raise)
        record = notify_recipient(store, RAIN, _make_profile(), now=NOW)
        assert record.channels_failed == [AlertChannel.EMAIL]
        (task,) = [t for t in store.delivery_tasks.values() if t.channel == AlertChannel.EMAIL]
        assert task.last_error == "socket exploded"

    def test_fan_out_continues_past_broken_recipient(self, dispatchers):
        class FlakyStore(InMemoryAlertStore):
            def add_notification(self, notification):
                if notification.user_id == "farmer-2":
                    raise PersistenceError("notification", "constraint")
                super().add_notification(notification)

        store = FlakyStore()
        recipients = [_make_profile("farmer-1"), _make_profile("farmer-2"), _make_profile("farmer-3")]
        report = fan_out(store, RAIN, recipients, now=NOW)
        assert report.total_recipients == 3
        assert report.notifications_created == 2
        assert report.persistence_failures == 1
        assert report.push_sent == 2
        assert report.emails_sent == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Retry
# ═══════════════════════════════════════════════════════════════════════════

class TestRetry:

    def test_backoff_exponential(self):
        cfg = RetryConfig(3, 60.0, "exponential")
        assert [_compute_backoff(cfg, n) for n in (1, 2, 3)] == [60.0, 120.0, 240.0]

    def test_backoff_linear(self):
        cfg = RetryConfig(3, 10.0, "linear")
        assert _compute_backoff(cfg, 3) == 30.0

    def test_channel_configs(self):
        assert RETRY_CONFIGS[AlertChannel.PUSH].backoff_base_seconds == 60.0
        assert RETRY_CONFIGS[AlertChannel.EMAIL].backoff_base_seconds == 300.0
        assert AlertChannel.IN_APP not in RETRY_CONFIGS

    def test_failed_push_is_scheduled(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        store.upsert_profile(_make_profile())
        notify_recipient(store, RAIN, _make_profile(), now=NOW)
        (task,) = [t for t in store.delivery_tasks.values() if t.channel == AlertChannel.PUSH]
        assert task.status == DeliveryStatus.RETRY_SCHEDULED
        assert task.attempts == 1
        assert task.next_attempt_at == NOW + timedelta(seconds=60)

    def test_retry_not_due_yet(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        store.upsert_profile(_make_profile())
        notify_recipient(store, RAIN, _make_profile(), now=NOW)
        summary = retry_pending_deliveries(store, now=NOW + timedelta(seconds=30))
        assert summary["due"] == 0

    def test_retry_delivers_when_provider_recovers(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        store.upsert_profile(_make_profile())
        notify_recipient(store, RAIN, _make_profile(), now=NOW)

        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _ok(AlertChannel.PUSH))
        summary = retry_pending_deliveries(store, now=NOW + timedelta(seconds=61))
        assert summary["due"] == 1
        assert summary["delivered"] == 1
        (task,) = [t for t in store.delivery_tasks.values() if t.channel == AlertChannel.PUSH]
        assert task.status == DeliveryStatus.DELIVERED
        assert task.attempts == 2

    def test_retry_gives_up_after_max_attempts(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        store.upsert_profile(_make_profile())
        notify_recipient(store, RAIN, _make_profile(), now=NOW)

        first = retry_pending_deliveries(store, now=NOW + timedelta(seconds=60))
        assert first["rescheduled"] == 1
        second = retry_pending_deliveries(store, now=NOW + timedelta(seconds=180))
        assert second["failed"] == 1

        (task,) = [t for t in store.delivery_tasks.values() if t.channel == AlertChannel.PUSH]
        assert task.status == DeliveryStatus.FAILED
        assert task.attempts == 3
        assert task.next_attempt_at is None
        assert retry_pending_deliveries(store, now=NOW + timedelta(days=1))["due"] == 0

    def test_retry_fails_task_for_deleted_recipient(self, store, dispatchers, monkeypatch):
        monkeypatch.setitem(dispatchers, AlertChannel.PUSH, _fail(AlertChannel.PUSH))
        notify_recipient(store, RAIN, _make_profile(), now=NOW)
        # profile was never stored
        summary = retry_pending_deliveries(store, now=NOW + timedelta(seconds=61))
        assert summary["failed"] == 1
