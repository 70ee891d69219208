"""CycleSafe Backend — Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from backend/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

# ── Feed URLs ──
CLUSTER_FEED_URL = os.environ.get(
    "CLUSTER_FEED_URL",
    "https://7wijeaz2y64ixyvovqkhjoysya0lksii.lambda-url.ap-southeast-2.on.aws/",
)
RISK_API_URL = os.environ.get(
    "RISK_API_URL",
    "https://dbetjhlyj7smwrgcptcozm6amq0ovept.lambda-url.ap-southeast-2.on.aws/",
)
VIC_EVENTS_URL = os.environ.get(
    "VIC_EVENTS_URL", "https://emergency.vic.gov.au/public/events-geojson.json"
)
VIC_IMPACT_URL = os.environ.get(
    "VIC_IMPACT_URL", "https://emergency.vic.gov.au/public/impact-areas-geojson.json"
)

# ── Polling / HTTP ──
POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "60"))
HTTP_TIMEOUT_SEC = float(os.environ.get("HTTP_TIMEOUT_SEC", "20"))
NEARBY_M = float(os.environ.get("NEARBY_M", "250"))
OFFICIAL_TTL_SEC = int(os.environ.get("OFFICIAL_TTL_SEC", str(30 * 60)))

# Directory holding accidents.csv / atmosphere.csv / surface.csv
HISTORICAL_DATA_DIR = os.environ.get(
    "HISTORICAL_DATA_DIR",
    str(Path(__file__).resolve().parent.parent / "datasets" / "crashes"),
)

# ── Risk calibration ──
# DENOM is the record count the likelihood thresholds were calibrated against.
# These are not derived from the loaded dataset.
DENOM = 172_115
LOW_THRESHOLD = 0.001
HIGH_THRESHOLD = 0.002
MATCH_RADIUS_M = 250.0
EARTH_RADIUS_M = 6_371_000.0
# Crash rows record Victorian local time; query hour/weekday use the same zone
RISK_TIMEZONE = os.environ.get("RISK_TIMEZONE", "Australia/Melbourne")

# Atmospheric condition codes (historical crash data convention)
WEATHER_CLEAR = 1
WEATHER_RAIN = 2
WEATHER_WIND = 7

WEATHER_NAMES: dict[int, str] = {
    1: "Clear",
    2: "Raining",
    3: "Snowing",
    4: "Fog",
    5: "Smoke",
    6: "Dust",
    7: "Strong winds",
    9: "Not known",
}

# Risk endpoint weather → coarse code
WIND_CODE_MIN_MS = 12.0
RAIN_CODE_MIN_MM = 1.0

# Weather-derived alert lifetimes (minutes)
WEATHER_TTL_MIN = {"HIGH": 30, "MEDIUM": 20}

# ── Shared key-value cache keys ──
COORDS_KEY = "cs.coords"
ADDRESS_KEY = "cs.address"
WEATHER_ALERTS_KEY = "cs.weather.alerts"
ALERTS_LIST_KEY = "cs.alerts.list"
ALERTS_TOTAL_KEY = "cs.alerts.total"
ALERTS_UPDATED_KEY = "cs.alerts.updatedAt"
