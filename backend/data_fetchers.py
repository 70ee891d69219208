"""CycleSafe Backend — External Data Fetchers (cluster feed, official feeds, risk API)

Every fetcher degrades to an empty result on network, HTTP, JSON or shape
errors. asyncio.CancelledError is never caught here, so a superseded
aggregation cycle stops at its next await.
"""

import math
import re
import time
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import ValidationError

from cache import KeyValueStore, get_json
from config import (
    CLUSTER_FEED_URL, RISK_API_URL, VIC_EVENTS_URL, VIC_IMPACT_URL,
    HTTP_TIMEOUT_SEC, NEARBY_M, OFFICIAL_TTL_SEC,
    COORDS_KEY, WEATHER_ALERTS_KEY,
)
from geo import distance_meters, distance_to_polygon, distance_to_multipolygon
from models import (
    AlertRecord, ClusterFeedPayload, GeoFeature, RiskQueryResponse,
    PointGeometry, LineStringGeometry, PolygonGeometry, MultiPolygonGeometry,
)

logger = logging.getLogger("cyclesafe.fetchers")

# Shared async HTTP client
client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC)

_NO_STORE = {"Cache-Control": "no-store", "Accept": "application/json"}


def _finite(*vals) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in vals)


def last_known_location(store: KeyValueStore) -> Optional[tuple[float, float]]:
    """(lat, lon) last written by the location supplier, if usable."""
    coords = get_json(store, COORDS_KEY)
    if not isinstance(coords, dict):
        return None
    lat, lon = coords.get("lat"), coords.get("lon")
    if not _finite(lat, lon):
        return None
    return float(lat), float(lon)


# ─────────────────────────── Risk API ───────────────────────────

async def fetch_risk_report(lat: float, lon: float,
                            http: Optional[httpx.AsyncClient] = None) -> RiskQueryResponse:
    """Live risk + weather for a point. Empty response on any failure."""
    http = http or client
    try:
        r = await http.get(
            RISK_API_URL,
            params={"lat": lat, "lon": lon, "ts": int(time.time() * 1000)},
            headers=_NO_STORE,
        )
        if r.status_code != 200:
            logger.warning(f"Risk API returned {r.status_code}")
            return RiskQueryResponse()
        return RiskQueryResponse.model_validate(r.json())
    except (httpx.HTTPError, ValueError, ValidationError) as e:
        logger.warning(f"Risk API error: {e}")
        return RiskQueryResponse()


# ─────────────────────────── Backend clusters ───────────────────

class BackendClusterSource:
    """Already-merged alert clusters from the backend list endpoint."""

    name = "backend"

    def __init__(self, url: str = CLUSTER_FEED_URL, http: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.http = http or client

    async def fetch(self, location: Optional[tuple[float, float]], now: float) -> list[AlertRecord]:
        try:
            r = await self.http.get(self.url, params={"ts": int(now * 1000)}, headers=_NO_STORE)
            if r.status_code != 200:
                logger.warning(f"Cluster feed returned {r.status_code}")
                return []
            payload = ClusterFeedPayload.model_validate(r.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(f"Cluster feed error: {e}")
            return []

        alerts = []
        dropped = 0
        for item in payload.alerts:
            try:
                alerts.append(AlertRecord.model_validate(item))
            except ValidationError:
                dropped += 1
        if dropped:
            logger.debug(f"Cluster feed: dropped {dropped} malformed alerts")
        return alerts


# ─────────────────────────── Weather (cached) ───────────────────

class WeatherAlertSource:
    """Weather-derived alerts kept in the shared cache by the risk service."""

    name = "weather"

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def fetch(self, location: Optional[tuple[float, float]], now: float) -> list[AlertRecord]:
        raw = get_json(self.store, WEATHER_ALERTS_KEY, [])
        if not isinstance(raw, list):
            return []
        alerts = []
        for item in raw:
            try:
                alerts.append(AlertRecord.model_validate(item))
            except ValidationError:
                continue
        return alerts


# ─────────────────────────── Official feeds ─────────────────────

_TITLE_FIELDS = ("name", "title", "eventName", "headline", "category1", "warningLevel")
_DESCRIPTION_FIELDS = ("info", "description", "details", "summary", "detail", "category2")
_ADDRESS_FIELDS = ("location", "locality", "area")
_TIMESTAMP_FIELDS = ("timestamp", "lastUpdated", "publishDate", "updated", "created")
_ID_FIELDS = ("id", "eventId", "guid")

_TAG_RE = re.compile(r"<[^>]*>")


def string_first(props: dict, fields) -> str:
    """First non-empty value among fields; numbers are stringified."""
    for f in fields:
        v = props.get(f)
        if isinstance(v, str) and v.strip():
            return v.strip()
        if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v):
            return str(v)
    return ""


def strip_html(s: str) -> str:
    return _TAG_RE.sub("", s or "").strip()


def parse_timestamp(value, now: float) -> datetime:
    """ISO string or epoch milliseconds, in UTC; anything else is 'now'.

    Offsets that push a date outside datetime's range also count as 'now'.
    """
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except (ValueError, OverflowError):
            pass
        try:
            value = float(text)
        except ValueError:
            value = None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            pass
    return datetime.fromtimestamp(now, tz=timezone.utc)


def iso_ms(dt: datetime) -> str:
    if dt.tzinfo is not None and dt.utcoffset():
        dt = dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"


def severity_from(props: dict) -> str:
    wl = str(props.get("warningLevel") or props.get("warning") or "").lower()
    if "emergency" in wl:
        return "high"
    if "watch" in wl or "act" in wl:
        return "medium"
    if "advice" in wl or "information" in wl:
        return "low"
    cat = str(props.get("category1") or props.get("category") or "").lower()
    if "fire" in cat or "flood" in cat:
        return "high"
    return "medium"


def _first_pair(coords) -> Optional[tuple[float, float]]:
    """(lat, lon) from a [lon, lat, ...] position."""
    if not coords or len(coords) < 2:
        return None
    lon, lat = coords[0], coords[1]
    if not _finite(lat, lon):
        return None
    return lat, lon


def anchor_point(geometry) -> Optional[tuple[float, float]]:
    """A representative (lat, lon) for a geometry: its first position."""
    if isinstance(geometry, PointGeometry):
        return _first_pair(geometry.coordinates)
    if isinstance(geometry, LineStringGeometry):
        return _first_pair(geometry.coordinates[0]) if geometry.coordinates else None
    if isinstance(geometry, PolygonGeometry):
        ring = geometry.coordinates[0] if geometry.coordinates else []
        return _first_pair(ring[0]) if ring else None
    if isinstance(geometry, MultiPolygonGeometry):
        for poly in geometry.coordinates:
            if poly and poly[0]:
                return _first_pair(poly[0][0])
    return None


def feature_distance(lat: float, lon: float, geometry) -> float:
    """Metres from (lat, lon) to a feature; inf when it has no usable position."""
    if isinstance(geometry, (PointGeometry, LineStringGeometry)):
        anchor = anchor_point(geometry)
        if anchor is None:
            return math.inf
        return distance_meters(lat, lon, anchor[0], anchor[1])
    if isinstance(geometry, PolygonGeometry):
        return distance_to_polygon(lat, lon, geometry.coordinates)
    if isinstance(geometry, MultiPolygonGeometry):
        return distance_to_multipolygon(lat, lon, geometry.coordinates)
    return math.inf


def feature_to_alert(feed: str, feature: GeoFeature, distance_m: float, now: float) -> Optional[AlertRecord]:
    """Map a nearby official feature to an alert; None when it has no title."""
    props = feature.properties or {}
    title = string_first(props, _TITLE_FIELDS)
    if not title:
        return None

    anchor = anchor_point(feature.geometry)
    a_lat, a_lon = anchor if anchor else (None, None)
    coord_text = f"{a_lat:.5f}, {a_lon:.5f}" if anchor else ""

    ts = iso_ms(parse_timestamp(string_first(props, _TIMESTAMP_FIELDS) or None, now))
    ident = string_first(props, _ID_FIELDS)
    if not ident:
        ident = f"{a_lat:.5f}_{a_lon:.5f}_{ts}" if anchor else f"{title}_{ts}"

    return AlertRecord(
        clusterId=f"{feed}#{ident}",
        incidentType="official_incident",
        severity=severity_from(props),
        expiresAt=int(now) + OFFICIAL_TTL_SEC,
        lat=a_lat,
        lng=a_lon,
        ackable=False,
        description=title,
        address=string_first(props, _ADDRESS_FIELDS) or coord_text or None,
        sourceMeta={
            "feed": feed,
            "distanceM": round(distance_m),
            "timestamp": ts,
            "info": strip_html(string_first(props, _DESCRIPTION_FIELDS)),
        },
    )


def geofence_features(feed: str, features: list, lat: float, lon: float, now: float,
                      radius_m: float = NEARBY_M) -> list[AlertRecord]:
    """Parse raw GeoJSON features and keep those within radius_m as alerts."""
    alerts = []
    skipped = 0
    for raw in features:
        try:
            feature = GeoFeature.model_validate(raw)
        except ValidationError:
            skipped += 1
            continue
        dist = feature_distance(lat, lon, feature.geometry)
        if not math.isfinite(dist) or dist > radius_m:
            continue
        alert = feature_to_alert(feed, feature, dist, now)
        if alert is not None:
            alerts.append(alert)
    if skipped:
        logger.debug(f"{feed}: skipped {skipped} unsupported or malformed features")
    return alerts


class OfficialIncidentSource:
    """A public GeoJSON emergency feed, geofenced around the rider."""

    def __init__(self, name: str, url: str, http: Optional[httpx.AsyncClient] = None,
                 radius_m: float = NEARBY_M):
        self.name = name
        self.url = url
        self.http = http or client
        self.radius_m = radius_m

    async def fetch(self, location: Optional[tuple[float, float]], now: float) -> list[AlertRecord]:
        # No reference point, nothing can be geofenced
        if location is None:
            return []
        lat, lon = location
        try:
            r = await self.http.get(self.url, params={"ts": int(now * 1000)}, headers=_NO_STORE)
            if r.status_code != 200:
                logger.warning(f"Official feed {self.name} returned {r.status_code}")
                return []
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Official feed {self.name} error: {e}")
            return []

        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            return []
        alerts = geofence_features(self.name, features, lat, lon, now, self.radius_m)
        logger.info(f"Official feed {self.name}: {len(alerts)} of {len(features)} features within {self.radius_m:.0f}m")
        return alerts


def default_official_sources(http: Optional[httpx.AsyncClient] = None) -> list[OfficialIncidentSource]:
    return [
        OfficialIncidentSource("vic", VIC_EVENTS_URL, http),
        OfficialIncidentSource("vic-impact", VIC_IMPACT_URL, http),
    ]
