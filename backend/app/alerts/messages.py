"""
messages.py — Title/body rendering per alert payload and language.

Text is rendered from the typed payload at the moment a notification is
written for a recipient, so every recipient gets their preferred language
(`en` or `ne`) from the same alert event. Unknown languages fall back to
English.
"""

from __future__ import annotations

from typing import Callable, Dict, NamedTuple

from backend.app.alerts.models import (
    AlertPayload,
    AlertType,
    ColdStressPayload,
    HeatStressPayload,
    HeavyRainPayload,
    OutbreakPayload,
    SprayWindowPayload,
)

SUPPORTED_LANGUAGES = ("en", "ne")


class RenderedMessage(NamedTuple):
    title: str
    message: str


# ── Weather ──

def _heavy_rain(p: HeavyRainPayload, lang: str) -> RenderedMessage:
    if lang == "ne":
        return RenderedMessage(
            "भोलि भारी वर्षा सम्भावना",
            f"भोलि {p.rain_mm:.0f}mm वर्षा हुन सक्छ ({p.probability:.0f}% सम्भावना)। "
            "नाली सफा गर्नुहोस् र बीउ/मल सुरक्षित राख्नुस्।",
        )
    return RenderedMessage(
        "Heavy Rain Expected Tomorrow",
        f"{p.rain_mm:.0f}mm rain expected tomorrow ({p.probability:.0f}% probability). "
        "Clear drains and protect seeds/fertilizers.",
    )


def _heat_stress(p: HeatStressPayload, lang: str) -> RenderedMessage:
    if lang == "ne":
        return RenderedMessage(
            "उच्च तापक्रमको चेतावनी",
            f"भोलि तापक्रम {p.temp_max:.0f}°C सम्म पुग्न सक्छ। "
            "बिहान सिँचाइ गर्नुहोस् र दिउँसो मल/स्प्रे नगर्नुहोस्।",
        )
    return RenderedMessage(
        "High Temperature Warning",
        f"Temperature may reach {p.temp_max:.0f}°C tomorrow. "
        "Irrigate in morning and avoid midday spraying.",
    )


def _cold_stress(p: ColdStressPayload, lang: str) -> RenderedMessage:
    if lang == "ne":
        return RenderedMessage(
            "चिसो तापक्रमको चेतावनी",
            f"भोलि तापक्रम {p.temp_min:.0f}°C सम्म झर्न सक्छ। बाली जोगाउने उपाय गर्नुहोस्।",
        )
    return RenderedMessage(
        "Low Temperature Warning",
        f"Temperature may drop to {p.temp_min:.0f}°C tomorrow. Protect sensitive crops.",
    )


def _spray_window(p: SprayWindowPayload, lang: str) -> RenderedMessage:
    if lang == "ne":
        return RenderedMessage(
            "भोलि औषधि छर्न उपयुक्त समय",
            f"भोलि कम पानी ({p.rain_probability:.0f}% सम्भावना) र कम हावा "
            f"({p.wind_kmh:.0f} km/h) देखिन्छ। रोग/कीरा औषधि छर्न राम्रो समय हो।",
        )
    hours = f" ({p.window_hours}h window from {p.window_start[-5:]})" if p.window_start else ""
    return RenderedMessage(
        "Good Spraying Conditions Tomorrow",
        f"Low rain chance ({p.rain_probability:.0f}%) and light winds "
        f"({p.wind_kmh:.0f} km/h) tomorrow{hours}. Good time for pesticide application.",
    )


# ── Outbreak ──

def _outbreak(p: OutbreakPayload, lang: str) -> RenderedMessage:
    if lang == "ne":
        return RenderedMessage(
            f"⚠️ रोग प्रकोप चेतावनी: {p.disease}",
            f"तपाईंको क्षेत्र {p.district} मा {p.detection_count} किसानले "
            f"{p.disease} रोग रिपोर्ट गरेका छन्। सावधान रहनुहोस्।",
        )
    return RenderedMessage(
        f"⚠️ Disease Outbreak Alert: {p.disease}",
        f"{p.detection_count} farmers in {p.district} have reported {p.disease}. "
        "Inspect your crops and stay alert.",
    )


_RENDERERS: Dict[AlertType, Callable[..., RenderedMessage]] = {
    AlertType.HEAVY_RAIN:     _heavy_rain,
    AlertType.HEAT_STRESS:    _heat_stress,
    AlertType.COLD_STRESS:    _cold_stress,
    AlertType.SPRAY_WINDOW:   _spray_window,
    AlertType.OUTBREAK_ALERT: _outbreak,
}


def render(payload: AlertPayload, language: str = "en") -> RenderedMessage:
    """Render the title and message for a payload in the given language."""
    lang = language if language in SUPPORTED_LANGUAGES else "en"
    return _RENDERERS[payload.ALERT_TYPE](payload, lang)
