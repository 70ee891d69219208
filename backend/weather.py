"""CycleSafe Backend — Weather-derived alerts

The risk endpoint reports live wind and rain. We reduce that to a coarse
atmospheric code for scoring, and when the resulting risk is MEDIUM or
HIGH we keep one synthetic "severe_weather" alert per ~100 m grid cell in
the shared cache. The aggregator picks those up on its next cycle.
"""

import logging
import math
import time
from typing import Optional

from cache import KeyValueStore, get_json, set_json
from config import (
    RAIN_CODE_MIN_MM, WIND_CODE_MIN_MS,
    WEATHER_CLEAR, WEATHER_RAIN, WEATHER_WIND,
    WEATHER_ALERTS_KEY, WEATHER_TTL_MIN,
)
from models import AlertRecord, RiskLevel, RiskWeather

logger = logging.getLogger("cyclesafe.weather")


def _num(v) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


def weather_code_from(weather: Optional[RiskWeather]) -> int:
    """Wind first, then rain, else clear."""
    wind = _num(weather.windSpeed) if weather else 0.0
    rain = _num(weather.precipitation) if weather else 0.0
    if wind >= WIND_CODE_MIN_MS:
        return WEATHER_WIND
    if rain >= RAIN_CODE_MIN_MM:
        return WEATHER_RAIN
    return WEATHER_CLEAR


def weather_label_from(weather: Optional[RiskWeather]) -> str:
    """Short chip text. Rain wins over wind here, unlike weather_code_from."""
    wind = _num(weather.windSpeed) if weather else 0.0
    rain = _num(weather.precipitation) if weather else 0.0
    if rain >= RAIN_CODE_MIN_MM:
        return "Rainy"
    if wind >= WIND_CODE_MIN_MS:
        return "Windy"
    return "Clear"


def cell_id(lat: float, lon: float, places: int = 3) -> str:
    f = 10 ** places
    latc = math.floor(lat * f) / f
    lonc = math.floor(lon * f) / f
    return f"{latc:.{places}f}_{lonc:.{places}f}"


def weather_cluster_id(lat: float, lon: float) -> str:
    return f"weather#{cell_id(lat, lon)}"


def _details(weather: Optional[RiskWeather]) -> str:
    parts = []
    if weather is not None and weather.windSpeed is not None:
        parts.append(f"winds (~{round(_num(weather.windSpeed))} m/s)")
    if weather is not None and weather.precipitation is not None:
        parts.append(f"rain ({_num(weather.precipitation):.1f} mm/h)")
    return " or ".join(parts)


def build_weather_alert(level: RiskLevel, address: str, lat: float, lon: float,
                        weather: Optional[RiskWeather] = None,
                        now: Optional[float] = None) -> Optional[AlertRecord]:
    """Synthetic alert for a MEDIUM/HIGH risk cell, or None for LOW."""
    if level == RiskLevel.LOW:
        return None
    now = time.time() if now is None else now
    details = _details(weather)

    if level == RiskLevel.HIGH:
        severity = "high"
        description = (
            f"Severe Weather Warning. {details or 'Strong winds or heavy rain'}. "
            "Reduced visibility and hazardous conditions."
        )
    else:
        severity = "medium"
        description = (
            f"Weather Advisory. {details or 'Gusty winds or rain expected'}. "
            "Ride with caution."
        )

    return AlertRecord(
        clusterId=weather_cluster_id(lat, lon),
        incidentType="severe_weather",
        severity=severity,
        expiresAt=int(now) + WEATHER_TTL_MIN[level.value] * 60,
        ackable=False,
        description=description,
        address=address,
        photoUrls=[],
    )


def _read_list(store: KeyValueStore) -> list[dict]:
    raw = get_json(store, WEATHER_ALERTS_KEY, [])
    if not isinstance(raw, list):
        return []
    return [a for a in raw if isinstance(a, dict)]


def publish_weather_alert(store: KeyValueStore, level: RiskLevel, address: str,
                          lat: float, lon: float,
                          weather: Optional[RiskWeather] = None,
                          now: Optional[float] = None) -> Optional[AlertRecord]:
    """Upsert (MEDIUM/HIGH) or remove (LOW) the weather alert for this cell."""
    cluster_id = weather_cluster_id(lat, lon)
    alerts = [a for a in _read_list(store) if a.get("clusterId") != cluster_id]

    alert = build_weather_alert(level, address, lat, lon, weather, now)
    if alert is not None:
        alerts.append(alert.model_dump(exclude_none=True))
        logger.info(f"Weather alert {cluster_id} set ({alert.severity})")

    set_json(store, WEATHER_ALERTS_KEY, alerts)
    return alert
