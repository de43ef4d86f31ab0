"""
alerts — Proactive farmer alert engine.

Sub-modules:
    channels/       — Per-channel delivery backends (push, email)
    models          — Data structures shared across the system
    rules           — Weather alert rules over a next-day forecast
    messages        — Bilingual (English / Nepali) alert texts
    dedup           — One alert per user, type and local day
    alert_service   — Fan-out: in-app record, push/email tasks, retry
    outbreak        — Disease outbreak detection from reporter clusters
    engine          — Daily weather run over all monitored regions
"""
