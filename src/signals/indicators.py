"""
BTC Signal Desk - Technical indicators

EMA, RSI, MACD, OBV, ATR and volatility calculations plus swing point
detection used by the level detector.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from signals.models import Candle

logger = logging.getLogger(__name__)

# Constants for indicator calculations
RSI_MAX_VALUE = 100.0
RSI_OVERBOUGHT_THRESHOLD = 70
RSI_OVERSOLD_THRESHOLD = 30

DAILY_EMA_PERIODS = (25, 55, 99, 200)
INTRADAY_EMA_PERIODS = (9, 21, 50)
VOLUME_AVERAGE_LOOKBACK = 20


@dataclass
class RSI:
    """
    Relative Strength Index (Wilder smoothing).

    Attributes:
        value: Current RSI (0-100)
        previous: RSI one bar earlier, if available
        period: Calculation period
    """

    value: float
    previous: Optional[float] = None
    period: int = 14

    @property
    def signal(self) -> str:
        """
        Returns:
            str: 'oversold', 'overbought' or 'neutral'
        """
        if self.value < RSI_OVERSOLD_THRESHOLD:
            return "oversold"
        elif self.value > RSI_OVERBOUGHT_THRESHOLD:
            return "overbought"
        return "neutral"


@dataclass
class MACD:
    """
    Moving Average Convergence Divergence.

    Attributes:
        macd_line: MACD line (fast EMA - slow EMA)
        signal_line: Signal line (EMA of the MACD line)
        histogram: MACD line - signal line
        previous_histogram: Histogram one bar earlier, if available
    """

    macd_line: float
    signal_line: float
    histogram: float
    previous_histogram: Optional[float] = None

    @property
    def signal(self) -> str:
        """
        Returns:
            str: 'bullish', 'bearish' or 'neutral'
        """
        if self.histogram > 0 and self.macd_line > self.signal_line:
            return "bullish"
        elif self.histogram < 0 and self.macd_line < self.signal_line:
            return "bearish"
        return "neutral"


@dataclass
class OBV:
    """On-Balance Volume with the previous bar's value."""

    value: float
    previous: float

    @property
    def rising(self) -> bool:
        return self.value > self.previous

    @property
    def falling(self) -> bool:
        return self.value < self.previous


@dataclass
class SwingPoint:
    """
    Swing high/low point.

    Attributes:
        price: Price at the swing point
        index: Index in the candle list
        type: 'high' or 'low'
        strength: Number of touches
    """

    price: float
    index: int
    type: str
    strength: int = 1


@dataclass
class IndicatorSnapshot:
    """
    Every indicator the signal engine needs for one asset/timeframe.

    Attributes:
        current_price: Last close
        emas: {period: value} for the intraday periods
        ema_series: {period: full-length EMA array} used for crossover detection
        rsi: RSI or None when the series is too short
        macd: MACD or None when the series is too short
        obv: OBV or None
        volume_ratio: Last volume / average of the previous 20, or None
        volatility: Mean true range as % of price
        atr: ATR (14) in price units, or None
        change_24h: Price change over the series window, in percent
        candles: Source candles
    """

    current_price: float
    emas: Dict[int, float]
    ema_series: Dict[int, np.ndarray]
    rsi: Optional[RSI]
    macd: Optional[MACD]
    obv: Optional[OBV]
    volume_ratio: Optional[float]
    volatility: float
    atr: Optional[float]
    change_24h: float = 0.0
    candles: List[Candle] = field(default_factory=list)

    @property
    def atr_percent(self) -> float:
        if not self.atr or self.current_price <= 0:
            return 0.0
        return self.atr / self.current_price * 100


def calculate_ema_series(prices: Sequence[float], period: int) -> np.ndarray:
    """
    EMA series seeded with the SMA of the first `period` values.

    Entries before the seed index are NaN. A series shorter than `period`
    yields an all-NaN array.

    Args:
        prices: Ascending close prices
        period: EMA period

    Returns:
        np.ndarray: EMA values aligned with `prices`
    """
    values = np.asarray(prices, dtype=float)
    result = np.full(len(values), np.nan)
    if period <= 0 or len(values) < period:
        return result

    k = 2 / (period + 1)
    result[period - 1] = values[:period].mean()
    for i in range(period, len(values)):
        result[i] = values[i] * k + result[i - 1] * (1 - k)
    return result


def calculate_ema(prices: Sequence[float], period: int) -> float:
    """
    Last EMA value for `period`.

    Falls back to the last available price (with a warning) when the series
    is shorter than the period.

    Args:
        prices: Ascending close prices
        period: EMA period

    Returns:
        float: EMA value
    """
    if len(prices) == 0:
        logger.warning(f"EMA({period}) requested on an empty series, returning 0")
        return 0.0

    if len(prices) < period:
        logger.warning(
            f"EMA({period}) needs {period} prices, got {len(prices)}; using last price"
        )
        return float(prices[-1])

    return float(calculate_ema_series(prices, period)[-1])


def calculate_ema_set(
    prices: Sequence[float],
    periods: Sequence[int] = DAILY_EMA_PERIODS,
) -> Dict[int, float]:
    """Return {period: last EMA value} for every requested period."""
    return {period: calculate_ema(prices, period) for period in periods}


def _wilder_rsi(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return RSI_MAX_VALUE if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return RSI_MAX_VALUE - (RSI_MAX_VALUE / (1 + rs))


def calculate_rsi(prices: Sequence[float], period: int = 14) -> Optional[RSI]:
    """
    RSI with Wilder smoothing.

    Args:
        prices: Close prices
        period: Calculation period (default 14)

    Returns:
        RSI: Current and previous values, or None if there is not enough data
    """
    if len(prices) < period + 1:
        return None

    deltas = np.diff(np.asarray(prices, dtype=float))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    values = [_wilder_rsi(avg_gain, avg_loss)]

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values.append(_wilder_rsi(avg_gain, avg_loss))

    previous = values[-2] if len(values) > 1 else None
    return RSI(value=float(values[-1]), previous=previous, period=period)


def calculate_macd(
    prices: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> Optional[MACD]:
    """
    MACD from SMA-seeded EMAs.

    Args:
        prices: Close prices
        fast_period: Fast EMA period (default 12)
        slow_period: Slow EMA period (default 26)
        signal_period: Signal line period (default 9)

    Returns:
        MACD or None if there is not enough data
    """
    if len(prices) < slow_period + signal_period - 1:
        return None

    ema_fast = calculate_ema_series(prices, fast_period)
    ema_slow = calculate_ema_series(prices, slow_period)
    macd_line = (ema_fast - ema_slow)[slow_period - 1:]
    signal_line = calculate_ema_series(macd_line, signal_period)
    histogram = macd_line - signal_line

    valid = histogram[~np.isnan(histogram)]
    previous = float(valid[-2]) if len(valid) > 1 else None

    return MACD(
        macd_line=float(macd_line[-1]),
        signal_line=float(signal_line[-1]),
        histogram=float(histogram[-1]),
        previous_histogram=previous,
    )


def calculate_obv(closes: Sequence[float], volumes: Sequence[float]) -> Optional[OBV]:
    """
    On-Balance Volume.

    Returns:
        OBV with the current and previous cumulative values, or None
    """
    if len(closes) < 2 or len(closes) != len(volumes):
        return None

    obv = 0.0
    previous = 0.0
    for i in range(1, len(closes)):
        previous = obv
        if closes[i] > closes[i - 1]:
            obv += volumes[i]
        elif closes[i] < closes[i - 1]:
            obv -= volumes[i]
    return OBV(value=obv, previous=previous)


def _true_ranges(candles: Sequence[Candle]) -> List[float]:
    ranges = []
    for i in range(1, len(candles)):
        current = candles[i]
        prev_close = candles[i - 1].close
        ranges.append(max(
            current.high - current.low,
            abs(current.high - prev_close),
            abs(current.low - prev_close),
        ))
    return ranges


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """
    Average True Range over the most recent `period` bars.

    Returns:
        float: ATR in price units, or None if fewer than period + 1 candles
    """
    if len(candles) < period + 1:
        return None
    return float(np.mean(_true_ranges(candles)[-period:]))


def calculate_volatility(candles: Sequence[Candle]) -> float:
    """Mean true range as a percentage of the last close."""
    if len(candles) < 2 or candles[-1].close <= 0:
        return 0.0
    return float(np.mean(_true_ranges(candles)) / candles[-1].close * 100)


def calculate_volume_ratio(
    volumes: Sequence[float],
    lookback: int = VOLUME_AVERAGE_LOOKBACK,
) -> Optional[float]:
    """Last volume divided by the mean of the preceding `lookback` volumes."""
    if len(volumes) < 2:
        return None
    window = volumes[-lookback - 1:-1]
    average = float(np.mean(window))
    if average <= 0:
        return None
    return float(volumes[-1]) / average


def build_indicator_snapshot(
    candles: Sequence[Candle],
    ema_periods: Sequence[int] = INTRADAY_EMA_PERIODS,
) -> Optional[IndicatorSnapshot]:
    """
    Compute every intraday indicator for one candle series.

    Args:
        candles: Ascending candles
        ema_periods: EMA periods to compute (default 9/21/50)

    Returns:
        IndicatorSnapshot or None when there are no candles
    """
    if not candles:
        return None

    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    current_price = closes[-1]

    first_close = closes[0]
    change = (current_price - first_close) / first_close * 100 if first_close > 0 else 0.0

    return IndicatorSnapshot(
        current_price=current_price,
        emas=calculate_ema_set(closes, ema_periods),
        ema_series={period: calculate_ema_series(closes, period) for period in ema_periods},
        rsi=calculate_rsi(closes),
        macd=calculate_macd(closes),
        obv=calculate_obv(closes, volumes),
        volume_ratio=calculate_volume_ratio(volumes),
        volatility=calculate_volatility(candles),
        atr=calculate_atr(candles),
        change_24h=change,
        candles=list(candles),
    )


def find_swing_points(
    candles: Sequence[Candle],
    lookback: int = 100,
) -> Tuple[List[SwingPoint], List[SwingPoint]]:
    """
    Find swing highs and lows.

    A swing high is a candle whose high exceeds the two candles on each side;
    a swing low is the mirror case.

    Args:
        candles: Ascending candles
        lookback: Number of most recent candles to analyse

    Returns:
        Tuple of (swing_highs, swing_lows)
    """
    if len(candles) < 5:
        return [], []

    data = candles[-lookback:] if len(candles) > lookback else candles
    swing_highs = []
    swing_lows = []

    for i in range(2, len(data) - 2):
        neighbours = (data[i - 2], data[i - 1], data[i + 1], data[i + 2])
        if all(data[i].high > c.high for c in neighbours):
            swing_highs.append(SwingPoint(price=data[i].high, index=i, type="high"))
        if all(data[i].low < c.low for c in neighbours):
            swing_lows.append(SwingPoint(price=data[i].low, index=i, type="low"))

    return swing_highs, swing_lows


def count_touches(candles: Sequence[Candle], level: float, tolerance_pct: float = 0.5) -> int:
    """
    Count candles that touched a price level.

    A touch is a high or low within `tolerance_pct` of the level, or a candle
    whose range contains the level.
    """
    if not candles or level <= 0:
        return 0

    tolerance = level * (tolerance_pct / 100.0)
    touches = 0
    for candle in candles:
        if abs(candle.high - level) <= tolerance or abs(candle.low - level) <= tolerance:
            touches += 1
        elif candle.low <= level <= candle.high:
            touches += 1
    return touches
