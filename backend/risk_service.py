"""CycleSafe Backend — Risk refresh for the rider's current position"""

import logging
import time
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

from cache import KeyValueStore, set_json
from config import ADDRESS_KEY, COORDS_KEY, RISK_TIMEZONE
from data_fetchers import fetch_risk_report
from historical import HistoricalDataset
from models import RISK_TEXT, RiskContext, RiskSummary
from scoring import score
from weather import publish_weather_alert, weather_code_from, weather_label_from

logger = logging.getLogger("cyclesafe.risk")


async def refresh_risk(lat: float, lon: float, store: KeyValueStore,
                       dataset: Optional[HistoricalDataset] = None,
                       now: Optional[float] = None,
                       http: Optional[httpx.AsyncClient] = None) -> RiskSummary:
    """Score the rider's position and keep the weather alert for its cell current.

    Also records the last-known address and coordinates, which the official
    feeds use as their geofence centre.
    """
    now = time.time() if now is None else now
    report = await fetch_risk_report(lat, lon, http)

    address = (report.address or "").strip() or f"{lat:.5f}, {lon:.5f}"
    store.set(ADDRESS_KEY, address)
    set_json(store, COORDS_KEY, {"lat": lat, "lon": lon})

    ctx = RiskContext.at(lat, lon, datetime.fromtimestamp(now, ZoneInfo(RISK_TIMEZONE)), weather_code_from(report.weather))
    result = score(ctx, dataset)
    logger.info(f"Risk at {address}: {result.riskLevel.value} ({result.weatherLabel})")

    publish_weather_alert(store, result.riskLevel, address, lat, lon, report.weather, now)

    return RiskSummary(
        riskLevel=result.riskLevel,
        riskText=RISK_TEXT[result.riskLevel],
        weatherLabel=result.weatherLabel,
        weatherText=weather_label_from(report.weather),
        address=address,
        lat=lat,
        lon=lon,
    )
