"""Historical crash dataset loader.

Loads three CSV extracts of the state crash database:
  - accidents.csv   → Accident_No, LAT, LON, Accident_hour, Accident_month, DAY_OF_WEEK
  - atmosphere.csv  → Accident_No, ATMOSPH_COND
  - surface.csv     → Accident_No, SURFACE_COND

Atmosphere and surface conditions are side tables joined onto crashes by
Accident_No. The joined dataset is held as numpy columns so that a risk
query is one vectorised pass instead of a Python loop over ~170k rows.
"""

import csv
import hashlib
import logging
import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

import numpy as np

from config import HISTORICAL_DATA_DIR, MATCH_RADIUS_M
from geo import distance_meters_array
from models import RiskContext

logger = logging.getLogger("cyclesafe.historical")

# Sentinel for "no joined condition code"
_MISSING = -1


@dataclass(frozen=True)
class HistoricalRecord:
    id: str
    lat: float
    lon: float
    hour: int
    month: int
    dayOfWeek: int
    atmosphereCode: Optional[int] = None
    surfaceCode: Optional[int] = None


def _to_float(x) -> float:
    try:
        return float(str(x).strip())
    except (TypeError, ValueError):
        return math.nan


def _to_int(x) -> Optional[int]:
    try:
        return int(float(str(x).strip()))
    except (TypeError, ValueError, OverflowError):
        return None


class HistoricalDataset:
    """Read-only joined crash records with vectorised matching."""

    def __init__(self, records: Iterable[HistoricalRecord]):
        records = list(records)
        self.ids = [r.id for r in records]
        self.lat = np.array([r.lat for r in records], dtype=np.float64)
        self.lon = np.array([r.lon for r in records], dtype=np.float64)
        self.hour = np.array([r.hour for r in records], dtype=np.int16)
        self.month = np.array([r.month for r in records], dtype=np.int16)
        self.dow = np.array([r.dayOfWeek for r in records], dtype=np.int16)
        self.atmosphere = np.array(
            [_MISSING if r.atmosphereCode is None else r.atmosphereCode for r in records],
            dtype=np.int32,
        )
        self.surface = np.array(
            [_MISSING if r.surfaceCode is None else r.surfaceCode for r in records],
            dtype=np.int32,
        )
        # Identifies the content for the score cache
        digest = hashlib.sha1()
        for rid in self.ids:
            digest.update(rid.encode("utf-8"))
            digest.update(b"\0")
        for col in (self.lat, self.lon, self.hour, self.month, self.dow, self.atmosphere, self.surface):
            digest.update(col.tobytes())
        self.fingerprint = f"{len(self.ids)}:{digest.hexdigest()[:16]}"

    def __len__(self) -> int:
        return len(self.ids)

    @classmethod
    def from_rows(cls, accidents: Iterable[dict], atmosphere: Iterable[dict] = (),
                  surface: Iterable[dict] = ()) -> "HistoricalDataset":
        """Join raw CSV-style rows into a dataset.

        Rows whose id, hour, month or day cannot be parsed are dropped.
        Unparsable coordinates are kept as NaN and never match a query.
        """
        atm_index: dict[str, int] = {}
        for row in atmosphere:
            code = _to_int(row.get("ATMOSPH_COND"))
            if row.get("Accident_No") and code is not None:
                atm_index[str(row["Accident_No"])] = code

        surf_index: dict[str, int] = {}
        for row in surface:
            code = _to_int(row.get("SURFACE_COND"))
            if row.get("Accident_No") and code is not None:
                surf_index[str(row["Accident_No"])] = code

        records = []
        skipped = 0
        for row in accidents:
            acc_no = row.get("Accident_No")
            hour = _to_int(row.get("Accident_hour"))
            month = _to_int(row.get("Accident_month"))
            dow = _to_int(row.get("DAY_OF_WEEK"))
            if not acc_no or hour is None or month is None or dow is None:
                skipped += 1
                continue
            acc_no = str(acc_no)
            records.append(HistoricalRecord(
                id=acc_no,
                lat=_to_float(row.get("LAT")),
                lon=_to_float(row.get("LON")),
                hour=hour, month=month, dayOfWeek=dow,
                atmosphereCode=atm_index.get(acc_no),
                surfaceCode=surf_index.get(acc_no),
            ))
        if skipped:
            logger.debug(f"Dropped {skipped} unparsable crash rows")
        return cls(records)

    def count_matches(self, ctx: RiskContext, radius_m: float = MATCH_RADIUS_M) -> int:
        """Count crashes within radius_m at the same hour, month and weekday.

        Weather / surface only exclude a crash on a positive mismatch: if
        either the query or the crash lacks the code, the crash still counts.
        """
        if len(self) == 0:
            return 0

        mask = (self.hour == ctx.hour) & (self.month == ctx.month) & (self.dow == ctx.dayOfWeek)
        mask &= np.isfinite(self.lat) & np.isfinite(self.lon)

        if ctx.weatherCode is not None:
            mask &= (self.atmosphere == _MISSING) | (self.atmosphere == ctx.weatherCode)
        if ctx.roadSurfaceCode is not None:
            mask &= (self.surface == _MISSING) | (self.surface == ctx.roadSurfaceCode)

        if not mask.any():
            return 0

        dist = distance_meters_array(ctx.lat, ctx.lon, self.lat[mask], self.lon[mask])
        return int(np.count_nonzero(dist <= radius_m))


def _read_csv(path: str, label: str) -> list[dict]:
    try:
        with open(path, "r", newline="", encoding="utf-8-sig") as f:
            rows = list(csv.DictReader(f))
        logger.info(f"Loaded {len(rows)} {label} rows from {os.path.basename(path)}")
        return rows
    except FileNotFoundError:
        logger.warning(f"{label} data not found: {path}")
        return []
    except (OSError, csv.Error) as e:
        logger.warning(f"Failed to load {label} data: {e}")
        return []


def load_dataset(directory: str) -> HistoricalDataset:
    accidents = _read_csv(os.path.join(directory, "accidents.csv"), "accident")
    atmosphere = _read_csv(os.path.join(directory, "atmosphere.csv"), "atmosphere")
    surface = _read_csv(os.path.join(directory, "surface.csv"), "surface")
    return HistoricalDataset.from_rows(accidents, atmosphere, surface)


@lru_cache(maxsize=1)
def default_dataset() -> HistoricalDataset:
    """The process-wide dataset from HISTORICAL_DATA_DIR (loaded once)."""
    return load_dataset(HISTORICAL_DATA_DIR)
