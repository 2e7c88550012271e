"""
BTC Signal Desk - signals package

Indicators, confluence, signal scoring and trade recommendations.
"""

from signals.indicators import (
    MACD,
    OBV,
    RSI,
    IndicatorSnapshot,
    build_indicator_snapshot,
    calculate_ema,
    calculate_ema_set,
)
from signals.models import LONG, NEUTRAL, SHORT, Candle
from signals.scoring import calculate_total_score, clamp
from signals.stable_cache import StableCache

__all__ = [
    "LONG",
    "SHORT",
    "NEUTRAL",
    "Candle",
    "RSI",
    "MACD",
    "OBV",
    "IndicatorSnapshot",
    "build_indicator_snapshot",
    "calculate_ema",
    "calculate_ema_set",
    "calculate_total_score",
    "clamp",
    "StableCache",
]
