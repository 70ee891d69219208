import asyncio
import math
from datetime import datetime, timezone

import httpx
import pytest

from cache import set_json
from config import COORDS_KEY, WEATHER_ALERTS_KEY
from data_fetchers import (
    BackendClusterSource, OfficialIncidentSource, WeatherAlertSource,
    anchor_point, feature_distance, fetch_risk_report, geofence_features,
    last_known_location, parse_timestamp, severity_from, string_first, strip_html,
)
from models import GeoFeature

NOW = 1_700_000_000.0
LAT, LON = -37.8136, 144.9631

# Contains (LAT, LON)
BLOCK = [[144.96, -37.82], [144.97, -37.82], [144.97, -37.81], [144.96, -37.81], [144.96, -37.82]]


def _point(lon, lat, **props):
    return {"type": "Feature", "properties": props, "geometry": {"type": "Point", "coordinates": [lon, lat]}}


def _json_handler(payload, status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=payload)
    return handler


# ─────────────────────────── Backend cluster feed ───────────────

def test_backend_feed_keeps_valid_alerts(mock_http):
    seen = []
    payload = {"ok": True, "serverNow": NOW, "alerts": [
        {"clusterId": "c1", "expiresAt": NOW + 600, "incidentType": "pothole", "reportCount": 3},
        {"clusterId": "c2"},
        {"expiresAt": NOW + 600},
        "junk",
    ]}
    source = BackendClusterSource("https://feed.test/alerts", mock_http(_json_handler(payload, seen=seen)))
    alerts = asyncio.run(source.fetch(None, NOW))

    assert [a.clusterId for a in alerts] == ["c1"]
    assert alerts[0].expiresAt == int(NOW) + 600
    assert alerts[0].reportCount == 3
    assert seen[0].url.params["ts"] == str(int(NOW * 1000))
    assert seen[0].headers["cache-control"] == "no-store"


def test_backend_feed_keeps_unknown_fields(mock_http):
    payload = {"ok": True, "alerts": [{"clusterId": "c1", "expiresAt": NOW + 60, "vendorTag": "x"}]}
    source = BackendClusterSource("https://feed.test/alerts", mock_http(_json_handler(payload)))
    alerts = asyncio.run(source.fetch(None, NOW))
    assert alerts[0].model_dump()["vendorTag"] == "x"


@pytest.mark.parametrize("handler", [
    _json_handler({"ok": False}, status=500),
    _json_handler({"ok": True, "alerts": "nope"}),
    lambda request: httpx.Response(200, content=b"<html>"),
])
def test_backend_feed_degrades_to_empty(mock_http, handler):
    source = BackendClusterSource("https://feed.test/alerts", mock_http(handler))
    assert asyncio.run(source.fetch(None, NOW)) == []


def test_backend_feed_transport_error(mock_http):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    source = BackendClusterSource("https://feed.test/alerts", mock_http(handler))
    assert asyncio.run(source.fetch(None, NOW)) == []


# ─────────────────────────── Weather source / location ──────────

def test_weather_source_reads_cache(store):
    set_json(store, WEATHER_ALERTS_KEY, [
        {"clusterId": "weather#a", "expiresAt": NOW + 60, "incidentType": "severe_weather"},
        {"clusterId": "weather#b"},
    ])
    alerts = asyncio.run(WeatherAlertSource(store).fetch(None, NOW))
    assert [a.clusterId for a in alerts] == ["weather#a"]


def test_weather_source_malformed_cache(store):
    store.set(WEATHER_ALERTS_KEY, '{"clusterId": "x"}')
    assert asyncio.run(WeatherAlertSource(store).fetch(None, NOW)) == []


def test_last_known_location(store):
    assert last_known_location(store) is None
    set_json(store, COORDS_KEY, {"lat": LAT, "lon": LON})
    assert last_known_location(store) == (LAT, LON)
    set_json(store, COORDS_KEY, {"lat": "north"})
    assert last_known_location(store) is None


# ─────────────────────────── Property helpers ───────────────────

def test_string_first():
    props = {"name": "  ", "title": None, "eventName": 42, "headline": "Later"}
    assert string_first(props, ("name", "title", "eventName", "headline")) == "42"
    assert string_first({}, ("name",)) == ""
    assert string_first({"id": True}, ("id",)) == ""


def test_strip_html():
    assert strip_html("<p>Road <b>closed</b></p>") == "Road closed"
    assert strip_html(None) == ""


def test_parse_timestamp():
    assert parse_timestamp("2024-03-01T10:00:00Z", NOW) == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp(1_709_287_200_000, NOW) == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("1709287200000", NOW) == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday", NOW) == datetime.fromtimestamp(NOW, tz=timezone.utc)
    assert parse_timestamp(None, NOW) == datetime.fromtimestamp(NOW, tz=timezone.utc)


@pytest.mark.parametrize("props,severity", [
    ({"warningLevel": "Emergency Warning"}, "high"),
    ({"warningLevel": "Watch and Act"}, "medium"),
    ({"warning": "Advice"}, "low"),
    ({"warningLevel": "Community Information"}, "low"),
    ({"category1": "Bushfire"}, "high"),
    ({"category": "Flooding"}, "high"),
    ({"category1": "Tree Down"}, "medium"),
    ({}, "medium"),
])
def test_severity_mapping(props, severity):
    assert severity_from(props) == severity


# ─────────────────────────── Geometry ───────────────────────────

def test_anchor_and_distance_by_geometry():
    point = GeoFeature.model_validate(_point(LON, LAT)).geometry
    line = GeoFeature.model_validate({"geometry": {"type": "LineString", "coordinates": [[LON, LAT], [145.5, -38.0]]}}).geometry
    poly = GeoFeature.model_validate({"geometry": {"type": "Polygon", "coordinates": [BLOCK]}}).geometry
    multi = GeoFeature.model_validate({"geometry": {"type": "MultiPolygon", "coordinates": [[BLOCK]]}}).geometry

    assert anchor_point(point) == (LAT, LON)
    assert anchor_point(line) == (LAT, LON)
    assert anchor_point(poly) == (-37.82, 144.96)
    assert feature_distance(LAT, LON, point) == 0.0
    assert feature_distance(LAT, LON, line) == 0.0
    assert feature_distance(LAT, LON, poly) == 0.0
    assert feature_distance(LAT, LON, multi) == 0.0
    assert feature_distance(-37.9, 145.1, poly) > 1000


def test_empty_geometry_is_infinitely_far():
    line = GeoFeature.model_validate({"geometry": {"type": "LineString", "coordinates": []}}).geometry
    assert anchor_point(line) is None
    assert feature_distance(LAT, LON, line) == math.inf


# ─────────────────────────── Geofencing ─────────────────────────

def test_geofence_keeps_nearby_features():
    features = [
        _point(LON + 0.001, LAT, id="near", name="Tree down", location="Swanston St",
               warningLevel="Advice", info="<b>Lane</b> blocked", lastUpdated="2024-03-01T10:00:00Z"),
        _point(145.1, -37.9, id="far", name="Far away"),
        {"type": "Feature", "properties": {"id": "area", "category1": "Flood"},
         "geometry": {"type": "Polygon", "coordinates": [BLOCK]}},
        {"type": "Feature", "properties": {"id": "gc", "name": "x"},
         "geometry": {"type": "GeometryCollection", "geometries": []}},
        {"type": "Feature", "properties": {"id": "bad", "name": "x"},
         "geometry": {"type": "Point", "coordinates": ["a", "b"]}},
        {"type": "Feature", "properties": {"id": "untitled"},
         "geometry": {"type": "Point", "coordinates": [LON, LAT]}},
        "not a feature",
    ]
    alerts = geofence_features("vic", features, LAT, LON, NOW)
    by_id = {a.clusterId: a for a in alerts}
    assert set(by_id) == {"vic#near", "vic#area"}

    near = by_id["vic#near"]
    assert near.incidentType == "official_incident"
    assert near.severity == "low"
    assert near.ackable is False
    assert near.expiresAt == int(NOW) + 1800
    assert near.description == "Tree down"
    assert near.address == "Swanston St"
    assert (near.lat, near.lng) == (LAT, LON + 0.001)
    assert near.sourceMeta["feed"] == "vic"
    assert 80 <= near.sourceMeta["distanceM"] <= 95
    assert near.sourceMeta["timestamp"] == "2024-03-01T10:00:00.000Z"
    assert near.sourceMeta["info"] == "Lane blocked"

    area = by_id["vic#area"]
    assert area.description == "Flood"
    assert area.severity == "high"
    assert area.sourceMeta["distanceM"] == 0
    assert area.address == "-37.82000, 144.96000"


def test_geofence_id_fallback():
    features = [_point(LON, LAT, name="Hazard", timestamp=1_709_287_200_000)]
    alerts = geofence_features("vic-impact", features, LAT, LON, NOW)
    assert alerts[0].clusterId == f"vic-impact#{LAT:.5f}_{LON:.5f}_2024-03-01T10:00:00.000Z"


# ─────────────────────────── Official source ────────────────────

def test_official_source_without_location_skips_fetch(mock_http):
    seen = []
    source = OfficialIncidentSource("vic", "https://vic.test/events", mock_http(_json_handler({}, seen=seen)))
    assert asyncio.run(source.fetch(None, NOW)) == []
    assert seen == []


def test_official_source_fetches_and_geofences(mock_http):
    seen = []
    payload = {"type": "FeatureCollection", "features": [
        _point(LON, LAT, id=7, name="Crash"),
        _point(145.1, -37.9, id=8, name="Elsewhere"),
    ]}
    source = OfficialIncidentSource("vic", "https://vic.test/events", mock_http(_json_handler(payload, seen=seen)))
    alerts = asyncio.run(source.fetch((LAT, LON), NOW))
    assert [a.clusterId for a in alerts] == ["vic#7"]
    assert "ts" in seen[0].url.params


@pytest.mark.parametrize("handler", [
    _json_handler({}, status=503),
    _json_handler({"features": {"not": "a list"}}),
    _json_handler(["no", "object"]),
    lambda request: httpx.Response(200, content=b"garbage"),
])
def test_official_source_degrades_to_empty(mock_http, handler):
    source = OfficialIncidentSource("vic", "https://vic.test/events", mock_http(handler))
    assert asyncio.run(source.fetch((LAT, LON), NOW)) == []


# ─────────────────────────── Risk API ───────────────────────────

def test_fetch_risk_report(mock_http):
    seen = []
    payload = {"ok": True, "address": "Swanston St", "weather": {"windSpeed": 4.0, "precipitation": 0.2}}
    report = asyncio.run(fetch_risk_report(LAT, LON, mock_http(_json_handler(payload, seen=seen))))
    assert report.ok is True
    assert report.address == "Swanston St"
    assert report.weather.windSpeed == 4.0
    assert seen[0].url.params["lat"] == str(LAT)


def test_fetch_risk_report_failure_is_empty(mock_http):
    report = asyncio.run(fetch_risk_report(LAT, LON, mock_http(_json_handler({}, status=502))))
    assert report.ok is False
    assert report.address is None
    assert report.weather is None


def test_fetch_risk_report_bad_payload_is_empty(mock_http):
    payload = {"ok": True, "weather": "sunny"}
    report = asyncio.run(fetch_risk_report(LAT, LON, mock_http(_json_handler(payload))))
    assert report.ok is False


# ─────────────────────────── Out-of-range timestamps ────────────

@pytest.mark.parametrize("raw", [
    "0001-01-01T00:00:00+05:00",
    "9999-12-31T23:30:00-05:00",
])
def test_parse_timestamp_out_of_range_is_now(raw):
    assert parse_timestamp(raw, NOW) == datetime.fromtimestamp(NOW, tz=timezone.utc)


def test_bad_timestamp_does_not_drop_the_feed(mock_http):
    payload = {"type": "FeatureCollection", "features": [
        _point(LON, LAT, id="good", name="Crash", timestamp="2024-03-01T10:00:00Z"),
        _point(LON, LAT, id="odd", name="Hazard", timestamp="0001-01-01T00:00:00+05:00"),
    ]}
    source = OfficialIncidentSource("vic", "https://vic.test/events", mock_http(_json_handler(payload)))
    alerts = asyncio.run(source.fetch((LAT, LON), NOW))

    by_id = {a.clusterId: a for a in alerts}
    assert set(by_id) == {"vic#good", "vic#odd"}
    assert by_id["vic#good"].sourceMeta["timestamp"] == "2024-03-01T10:00:00.000Z"
    assert by_id["vic#odd"].sourceMeta["timestamp"] == "2023-11-14T22:13:20.000Z"
