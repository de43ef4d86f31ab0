"""
email_alert.py — Email alert delivery channel.

Providers:
    • simulation — log the email and report it delivered (development)
    • resend     — POST to the Resend HTTP API (RESEND_API_KEY)
    • smtp       — smtplib with STARTTLS (SMTP_HOST / SMTP_USER / ...)

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: {icon} {title}  ( - {district} for outbreaks)
    Body:
        ┌─────────────────────────────────────────┐
        │  Krishi Mitra — {banner}                 │
        ├─────────────────────────────────────────┤
        │  Namaste {name},                          │
        │  {message}                                │
        │  {detail table from the typed payload}    │
        │  [Open Krishi Mitra]                      │
        └─────────────────────────────────────────┘

Every email carries an HTML and a plain-text part.
"""

from __future__ import annotations

import html
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Tuple

import httpx

from backend.app.alerts.models import (
    AlertChannel,
    AlertType,
    ColdStressPayload,
    DeliveryAttempt,
    DeliveryStatus,
    FarmerProfile,
    HeatStressPayload,
    HeavyRainPayload,
    Notification,
    OutbreakPayload,
    SprayWindowPayload,
)
from backend.app.core.config import settings
from backend.app.core.errors import AlertDeliveryError

logger = logging.getLogger(__name__)

_TYPE_ICONS = {
    AlertType.HEAVY_RAIN:     "🌧️",
    AlertType.HEAT_STRESS:    "🌡️",
    AlertType.COLD_STRESS:    "❄️",
    AlertType.SPRAY_WINDOW:   "✅",
    AlertType.OUTBREAK_ALERT: "⚠️",
}

_SEVERITY_COLOURS = {
    "high":   "#dc2626",
    "medium": "#f59e0b",
    "low":    "#10b981",
}


def _detail_rows(notification: Notification, lang: str) -> List[Tuple[str, str]]:
    p = notification.payload
    ne = lang == "ne"
    if isinstance(p, HeavyRainPayload):
        return [
            ("वर्षा" if ne else "Rainfall", f"{p.rain_mm:.0f} mm"),
            ("सम्भावना" if ne else "Probability", f"{p.probability:.0f}%"),
        ]
    if isinstance(p, HeatStressPayload):
        return [("अधिकतम तापक्रम" if ne else "Max temperature", f"{p.temp_max:.0f}°C")]
    if isinstance(p, ColdStressPayload):
        return [("न्यूनतम तापक्रम" if ne else "Min temperature", f"{p.temp_min:.0f}°C")]
    if isinstance(p, SprayWindowPayload):
        rows = [
            ("वर्षा सम्भावना" if ne else "Rain chance", f"{p.rain_probability:.0f}%"),
            ("हावा" if ne else "Wind", f"{p.wind_kmh:.0f} km/h"),
        ]
        if p.window_start:
            rows.append(("समय" if ne else "Window", f"{p.window_start[-5:]} · {p.window_hours}h"))
        return rows
    if isinstance(p, OutbreakPayload):
        return [
            ("रोगको नाम" if ne else "Disease", p.disease),
            ("स्थान" if ne else "District", p.district),
            ("रिपोर्ट संख्या" if ne else "Reports", str(p.detection_count)),
            ("गम्भीरता" if ne else "Severity", p.severity),
        ]
    return []


def _build_subject(notification: Notification) -> str:
    icon = _TYPE_ICONS.get(notification.alert_type, "⚠️")
    subject = notification.title
    if not subject.startswith(icon):
        subject = f"{icon} {subject}"
    if isinstance(notification.payload, OutbreakPayload):
        subject = f"{subject} - {notification.payload.district}"
    return subject


def _build_html_body(notification: Notification, recipient: FarmerProfile) -> str:
    lang = recipient.preferred_language
    severity = getattr(notification.payload, "severity", "medium")
    colour = _SEVERITY_COLOURS.get(severity, "#16a34a")
    greeting = "नमस्ते" if lang == "ne" else "Namaste"
    button = "कृषि मित्र खोल्नुहोस्" if lang == "ne" else "Open Krishi Mitra"
    rows = "".join(
        f'<tr><td style="padding:8px 0;color:#6b7280;"><strong>{html.escape(k)}</strong></td>'
        f'<td style="padding:8px 0;text-align:right;">{html.escape(v)}</td></tr>'
        for k, v in _detail_rows(notification, lang)
    )
    return f"""
    <div style="font-family:'Segoe UI',Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:#16a34a;color:white;padding:20px;border-radius:8px 8px 0 0;text-align:center;">
        <h2 style="margin:0;">🌿 Krishi Mitra</h2>
      </div>
      <div style="background:{colour};color:white;padding:12px;text-align:center;">
        <strong>{html.escape(notification.title)}</strong>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:20px;border-radius:0 0 8px 8px;">
        <p>{greeting} {html.escape(recipient.name or "")},</p>
        <p>{html.escape(notification.message)}</p>
        <table style="width:100%;border-collapse:collapse;">{rows}</table>
        <div style="text-align:center;margin-top:24px;">
          <a href="{settings.APP_PUBLIC_URL}/notifications"
             style="background:#16a34a;color:white;padding:12px 24px;text-decoration:none;border-radius:6px;">
            {button}
          </a>
        </div>
      </div>
    </div>
    """


def _build_plain_body(notification: Notification, recipient: FarmerProfile) -> str:
    lines = [notification.title, "", notification.message, ""]
    lines += [f"{k}: {v}" for k, v in _detail_rows(notification, recipient.preferred_language)]
    lines += ["", f"{settings.APP_PUBLIC_URL}/notifications"]
    return "\n".join(lines)


def _send_resend(
    to: str,
    subject: str,
    html_body: str,
    plain_body: str,
    *,
    client: Optional[httpx.Client],
    timeout_seconds: float,
) -> dict:
    if not settings.RESEND_API_KEY:
        raise AlertDeliveryError("email", "RESEND_API_KEY is not configured", provider="resend")
    owns_client = client is None
    client = client or httpx.Client(timeout=timeout_seconds)
    try:
        response = client.post(
            settings.RESEND_API_URL,
            json={
                "from": settings.EMAIL_FROM,
                "to": [to],
                "subject": subject,
                "html": html_body,
                "text": plain_body,
            },
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            timeout=timeout_seconds,
        )
        response.raise_for_status()
        return response.json()
    finally:
        if owns_client:
            client.close()


def _send_smtp(
    to: str,
    subject: str,
    html_body: str,
    plain_body: str,
    *,
    timeout_seconds: float,
) -> dict:
    if not settings.SMTP_HOST:
        raise AlertDeliveryError("email", "SMTP_HOST is not configured", provider="smtp")
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.EMAIL_FROM
    msg["To"] = to
    msg.attach(MIMEText(plain_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=timeout_seconds) as server:
        server.starttls()
        if settings.SMTP_USER:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
        server.sendmail(settings.EMAIL_FROM, [to], msg.as_string())
    return {"mode": "smtp", "to": to}


def send(
    notification: Notification,
    recipient: FarmerProfile,
    *,
    provider: Optional[str] = None,
    client: Optional[httpx.Client] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryAttempt:
    """
    Send an email alert to a recipient.

    Parameters
    ----------
    notification : Notification
    recipient : FarmerProfile
        Must have .email set; otherwise the attempt is SKIPPED.
    provider : str
        "simulation", "resend" or "smtp". Defaults to settings.EMAIL_PROVIDER.
    client : httpx.Client
        Optional shared client for the resend provider.

    Returns
    -------
    DeliveryAttempt
    """
    provider = provider or settings.EMAIL_PROVIDER
    timeout_seconds = timeout_seconds or settings.EMAIL_TIMEOUT
    attempt = DeliveryAttempt(channel=AlertChannel.EMAIL, recipient_id=recipient.user_id)

    if not recipient.email:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No email address on file"
        return attempt

    try:
        subject = _build_subject(notification)
        html_body = _build_html_body(notification, recipient)
        plain_body = _build_plain_body(notification, recipient)

        if provider == "simulation":
            logger.info(
                "[EMAIL] %s → %s: Subject='%s'",
                notification.notification_id, recipient.email, subject,
                extra={"recipient_id": recipient.user_id, "channel": "email"},
            )
            attempt.status = DeliveryStatus.DELIVERED
            attempt.provider_response = {
                "mode": "simulated",
                "subject": subject,
                "html_size": len(html_body),
                "to": recipient.email,
            }

        elif provider == "resend":
            attempt.provider_response = _send_resend(
                recipient.email, subject, html_body, plain_body,
                client=client, timeout_seconds=timeout_seconds,
            )
            attempt.status = DeliveryStatus.DELIVERED

        elif provider == "smtp":
            attempt.provider_response = _send_smtp(
                recipient.email, subject, html_body, plain_body,
                timeout_seconds=timeout_seconds,
            )
            attempt.status = DeliveryStatus.DELIVERED

        else:
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = f"Unknown email provider: {provider}"

    except (httpx.HTTPError, smtplib.SMTPException, OSError, ValueError, AlertDeliveryError) as exc:
        logger.error(
            "[EMAIL] Failed for %s: %s", recipient.user_id, exc,
            extra={"recipient_id": recipient.user_id, "channel": "email"},
        )
        attempt.status = DeliveryStatus.FAILED
        attempt.error_message = str(exc) or type(exc).__name__

    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
