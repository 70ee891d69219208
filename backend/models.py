"""CycleSafe Backend — Pydantic Models"""

import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ─────────────────────────── Risk ───────────────────────────────

class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}

RISK_TEXT = {
    RiskLevel.LOW: "Low Risk",
    RiskLevel.MEDIUM: "Medium Risk",
    RiskLevel.HIGH: "High Risk",
}


class RiskContext(BaseModel):
    """Where and when a risk query applies. dayOfWeek is 0 = Sunday."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float
    hour: int = Field(ge=0, le=23)
    month: int = Field(ge=1, le=12)
    dayOfWeek: int = Field(ge=0, le=6)
    weatherCode: Optional[int] = None
    roadSurfaceCode: Optional[int] = None

    @classmethod
    def at(cls, lat: float, lon: float, when: datetime,
           weather_code: Optional[int] = None,
           road_surface_code: Optional[int] = None) -> "RiskContext":
        # datetime.weekday() is Monday = 0; historical rows use Sunday = 0
        return cls(
            lat=lat, lon=lon,
            hour=when.hour, month=when.month,
            dayOfWeek=(when.weekday() + 1) % 7,
            weatherCode=weather_code,
            roadSurfaceCode=road_surface_code,
        )


class RiskResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    riskLevel: RiskLevel
    weatherLabel: str


class RiskWeather(BaseModel):
    windSpeed: Optional[float] = None       # m/s
    precipitation: Optional[float] = None   # mm/h
    temperature: Optional[float] = None     # °C


class RiskQueryResponse(BaseModel):
    """Payload of the external risk endpoint (GET ?lat&lon)."""

    ok: bool = False
    risk: Optional[float] = None
    riskText: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    weather: Optional[RiskWeather] = None
    atmosphere: Optional[str] = None


class RiskSummary(BaseModel):
    riskLevel: RiskLevel
    riskText: str
    weatherLabel: str
    weatherText: str
    address: str
    lat: float
    lon: float


# ─────────────────────────── Alerts ─────────────────────────────

class AlertRecord(BaseModel):
    """One alert as shown in the tray. Identity is clusterId."""

    model_config = ConfigDict(extra="allow", frozen=True)

    clusterId: str
    incidentType: str = "unknown"
    severity: Optional[str] = None  # low | medium | high
    expiresAt: int  # epoch seconds
    lat: Optional[float] = None
    lng: Optional[float] = None
    ackable: bool = True
    description: Optional[str] = None
    address: Optional[str] = None
    status: Optional[str] = None
    reportCount: Optional[int] = None
    ackCount: Optional[int] = None
    photoUrls: Optional[list[str]] = None
    sourceMeta: Optional[dict] = None

    @field_validator("expiresAt", mode="before")
    @classmethod
    def _whole_seconds(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v):
            return int(math.floor(v))
        return v


class ClusterFeedPayload(BaseModel):
    ok: bool = False
    serverNow: float = 0
    alerts: list = []


class Snapshot(BaseModel):
    """Published result of one aggregation cycle. Never mutated after publish."""

    model_config = ConfigDict(frozen=True)

    alerts: tuple[AlertRecord, ...] = ()
    total: int = 0
    updatedAt: int = 0  # epoch milliseconds


# ─────────────────────────── GeoJSON ────────────────────────────

class PointGeometry(BaseModel):
    type: Literal["Point"]
    coordinates: list[float]


class LineStringGeometry(BaseModel):
    type: Literal["LineString"]
    coordinates: list[list[float]]


class PolygonGeometry(BaseModel):
    type: Literal["Polygon"]
    coordinates: list[list[list[float]]]


class MultiPolygonGeometry(BaseModel):
    type: Literal["MultiPolygon"]
    coordinates: list[list[list[list[float]]]]


Geometry = Annotated[
    Union[PointGeometry, LineStringGeometry, PolygonGeometry, MultiPolygonGeometry],
    Field(discriminator="type"),
]


class GeoFeature(BaseModel):
    properties: Optional[dict] = None
    geometry: Geometry


# ─────────────────────────── Requests ───────────────────────────

class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class VisibilityUpdate(BaseModel):
    visible: bool
