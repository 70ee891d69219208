"""CycleSafe Backend — Crash Risk Scoring

Turns a (place, hour, month, weekday, weather, surface) context into a
LOW / MEDIUM / HIGH risk level.

With historical crash data, the level comes from how many past crashes
match the context, normalised by the calibration denominator. Without data
it falls back to a weather/hour heuristic.
"""

import logging
import threading
from typing import Optional
from cachetools import LRUCache

from config import (
    DENOM, LOW_THRESHOLD, HIGH_THRESHOLD,
    WEATHER_NAMES, WEATHER_RAIN, WEATHER_WIND,
)
from historical import HistoricalDataset
from models import RiskContext, RiskLevel, RiskResult

logger = logging.getLogger("cyclesafe.scoring")

# Dataset-path results keyed by (dataset fingerprint, context)
_SCORE_LRU_CACHE = LRUCache(maxsize=10000)
_SCORE_CACHE_LOCK = threading.Lock()


def weather_name(code: Optional[int]) -> str:
    """Human-readable label for an atmospheric condition code."""
    return WEATHER_NAMES.get(code, "Unknown")


def _is_night(hour: int) -> bool:
    # Evening through early morning
    return hour >= 18 or hour <= 6


def weather_heuristic(code: Optional[int], hour: int) -> RiskLevel:
    """Fallback when no crash history is available."""
    if code == WEATHER_WIND:
        return RiskLevel.HIGH
    if code == WEATHER_RAIN:
        return RiskLevel.HIGH if _is_night(hour) else RiskLevel.MEDIUM
    return RiskLevel.LOW


def categorize(likelihood: float) -> RiskLevel:
    if likelihood < LOW_THRESHOLD:
        return RiskLevel.LOW
    if likelihood < HIGH_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def likelihood_for(matched: int) -> float:
    return matched / DENOM


def _score_with_history(ctx: RiskContext, dataset: HistoricalDataset) -> RiskLevel:
    key = (dataset.fingerprint, ctx)
    with _SCORE_CACHE_LOCK:
        cached = _SCORE_LRU_CACHE.get(key)
    if cached is not None:
        return cached

    matched = dataset.count_matches(ctx)
    level = categorize(likelihood_for(matched))
    logger.debug(
        f"Risk at ({ctx.lat:.5f}, {ctx.lon:.5f}) h={ctx.hour} m={ctx.month} "
        f"dow={ctx.dayOfWeek}: {matched} matches → {level.value}"
    )

    with _SCORE_CACHE_LOCK:
        _SCORE_LRU_CACHE[key] = level
    return level


def score(ctx: RiskContext, dataset: Optional[HistoricalDataset] = None) -> RiskResult:
    """Risk level and weather label for a context.

    Never raises: a dataset that cannot be evaluated degrades to the
    weather heuristic.
    """
    label = weather_name(ctx.weatherCode)

    if dataset is None or len(dataset) == 0:
        return RiskResult(riskLevel=weather_heuristic(ctx.weatherCode, ctx.hour), weatherLabel=label)

    try:
        level = _score_with_history(ctx, dataset)
    except (ValueError, TypeError, FloatingPointError) as e:
        logger.warning(f"Historical scoring failed, using weather heuristic: {e}")
        level = weather_heuristic(ctx.weatherCode, ctx.hour)
    return RiskResult(riskLevel=level, weatherLabel=label)


def clear_score_cache():
    with _SCORE_CACHE_LOCK:
        _SCORE_LRU_CACHE.clear()
