"""CycleSafe Backend — Geometry primitives

Small-radius helpers for geofencing official feeds and matching historical
crashes. Coordinates in GeoJSON rings are (lon, lat) pairs; function
arguments are always (lat, lon).

Rings are treated as planar for containment. That is only valid at the
sub-kilometre scale used here (250 m geofences).
"""

import math

import numpy as np

from config import EARTH_RADIUS_M


def _finite(*vals) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in vals)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points in metres.

    Non-finite input yields inf so the point never passes a radius check.
    """
    if not _finite(lat1, lon1, lat2, lon2):
        return math.inf
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_meters_array(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Vectorised distance_meters from one point to many. NaN in, NaN out."""
    dlat = np.radians(lats - lat)
    dlon = np.radians(lons - lon)
    a = (np.sin(dlat / 2) ** 2 +
         np.cos(np.radians(lat)) * np.cos(np.radians(lats)) *
         np.sin(dlon / 2) ** 2)
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def _vertex(pt) -> tuple[float, float] | None:
    """Return (lon, lat) for a ring vertex, or None if it is unusable."""
    try:
        lon, lat = float(pt[0]), float(pt[1])
    except (TypeError, ValueError, IndexError):
        return None
    if not _finite(lon, lat):
        return None
    return lon, lat


def point_in_polygon(lat: float, lon: float, ring) -> bool:
    """Ray-casting containment test against a ring of (lon, lat) vertices."""
    if not ring or len(ring) < 3 or not _finite(lat, lon):
        return False
    verts = [_vertex(p) for p in ring]
    if any(v is None for v in verts):
        return False

    inside = False
    j = len(verts) - 1
    for i in range(len(verts)):
        xi, yi = verts[i]
        xj, yj = verts[j]
        # Edge straddles the point's latitude
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def distance_to_ring(lat: float, lon: float, ring) -> float:
    """Minimum vertex distance from the point to the ring.

    Vertex-only, not true edge distance; close enough for radii of a few
    hundred metres.
    """
    best = math.inf
    for pt in ring or []:
        v = _vertex(pt)
        if v is None:
            continue
        d = distance_meters(lat, lon, v[1], v[0])
        if d < best:
            best = d
    return best


def distance_to_polygon(lat: float, lon: float, rings) -> float:
    """0 inside the outer ring, else distance to the outer ring. Holes are ignored."""
    if not rings:
        return math.inf
    outer = rings[0] or []
    if point_in_polygon(lat, lon, outer):
        return 0.0
    return distance_to_ring(lat, lon, outer)


def distance_to_multipolygon(lat: float, lon: float, polygons) -> float:
    best = math.inf
    for poly in polygons or []:
        d = distance_to_polygon(lat, lon, poly)
        if d < best:
            best = d
    return best
