"""CycleSafe Backend — FastAPI Routes"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

import data_fetchers
from aggregator import AlertAggregator
from cache import MemoryStore, set_json
from config import COORDS_KEY
from data_fetchers import BackendClusterSource, WeatherAlertSource, default_official_sources
from historical import HistoricalDataset, default_dataset
from models import LocationUpdate, RiskSummary, Snapshot, VisibilityUpdate
from risk_service import refresh_risk

logger = logging.getLogger("cyclesafe")


# ─────────────────────────── App Setup ──────────────────────────

app = FastAPI(title="CycleSafe API", version="1.0.0")

_allowed_origins = [
    f"http://localhost:{p}" for p in range(3000, 3010)
] + [
    f"http://localhost:{p}" for p in range(5173, 5180)
] + [
    f"http://127.0.0.1:{p}" for p in range(3000, 3010)
] + [
    f"http://127.0.0.1:{p}" for p in range(5173, 5180)
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Process-wide state, set up on startup
store = MemoryStore()
aggregator: Optional[AlertAggregator] = None
dataset: Optional[HistoricalDataset] = None


def build_aggregator(kv: MemoryStore) -> AlertAggregator:
    return AlertAggregator(
        kv,
        BackendClusterSource(),
        WeatherAlertSource(kv),
        default_official_sources(),
    )


def _require_aggregator() -> AlertAggregator:
    if aggregator is None:
        raise HTTPException(status_code=503, detail="Alert aggregation is not running")
    return aggregator


# ─────────────────────────── Lifecycle ──────────────────────────

@app.on_event("startup")
async def startup_event():
    """Load crash history and start alert polling."""
    global aggregator, dataset
    dataset = default_dataset()
    logger.info(f"Historical crash records: {len(dataset)}")
    aggregator = build_aggregator(store)
    aggregator.start()


@app.on_event("shutdown")
async def shutdown_event():
    global aggregator
    if aggregator is not None:
        aggregator.stop()
        aggregator = None
    await data_fetchers.client.aclose()


# ─────────────────────────── Risk ───────────────────────────────

@app.get("/api/risk", response_model=RiskSummary)
async def get_risk(lat: float = Query(..., ge=-90, le=90), lon: float = Query(..., ge=-180, le=180)):
    return await refresh_risk(lat, lon, store, dataset)


# ─────────────────────────── Alerts ─────────────────────────────

@app.get("/api/alerts", response_model=Snapshot, response_model_exclude_none=True)
async def get_alerts():
    if aggregator is None:
        return Snapshot()
    return aggregator.snapshot


@app.post("/api/alerts/refresh")
async def refresh_alerts(wait: bool = False):
    """Something upstream may have changed. With wait=true, block until published."""
    agg = _require_aggregator()
    if not wait:
        agg.notify_maybe_changed()
        return {"status": "queued"}
    snap = await agg.refresh()
    if snap is None:
        return {"status": "superseded", "total": agg.snapshot.total}
    return {"status": "published", "total": snap.total, "updatedAt": snap.updatedAt}


@app.post("/api/visibility")
async def set_visibility(body: VisibilityUpdate):
    _require_aggregator().set_visible(body.visible)
    return {"visible": body.visible}


@app.put("/api/location")
async def update_location(body: LocationUpdate):
    agg = _require_aggregator()
    set_json(store, COORDS_KEY, {"lat": body.lat, "lon": body.lon})
    agg.notify_maybe_changed()
    logger.info(f"Location updated to ({body.lat:.4f}, {body.lon:.4f})")
    return {"status": "ok", "lat": body.lat, "lon": body.lon}


# ─────────────────────────── Utility Endpoints ──────────────────

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "polling": aggregator is not None and aggregator.running,
        "cycle": aggregator.state.value if aggregator else "IDLE",
        "historicalRecords": len(dataset) if dataset is not None else 0,
        "version": "1.0.0",
    }
