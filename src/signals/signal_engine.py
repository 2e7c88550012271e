"""
Signal Engine - single source of truth for intraday direction and confidence.

Every contribution is recorded as a labelled factor so the resulting
signal can be explained; nothing is hidden in an opaque score.

Factors (max weight):
1. EMA structure + recent 9/21 crossover (20)
2. RSI momentum (20)
3. MACD histogram (20)
4. Volume + OBV confirmation (15)
5. Price vs EMA9/EMA21 (10)
6. Funding rate + open interest, scaled by timeframe (10 + 8)
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

from analyzers.derivatives import DerivativesSnapshot
from signals.indicators import IndicatorSnapshot
from signals.models import LONG, NEUTRAL, SHORT, IntradaySignal, SignalFactor, SignalResult
from signals.multi_timeframe import MultiTimeframeConfluenceAnalyzer, TimeframeSignal
from signals.trade_recommender import TIMEFRAME_TP_CONFIG

logger = logging.getLogger(__name__)


class SignalEngine:
    """Pure factor-based signal calculation."""

    # Funding/OI move slowly, so they weigh less on short timeframes
    DERIVATIVES_WEIGHT_SCALE = {
        "1m": 0.3,
        "5m": 0.5,
        "15m": 0.7,
        "30m": 0.8,
        "1h": 0.85,
        "4h": 1.0,
        "1d": 1.0,
    }

    DIRECTION_THRESHOLD = 20
    BASE_CONFIDENCE = 45
    MAX_CONFIDENCE = 95
    CROSSOVER_LOOKBACK = 3
    MAX_FACTORS = 6

    # Stop distance is the larger of ATR x multiplier and the timeframe minimum
    ATR_STOP_MULTIPLIER = 1.5
    # Take-profit ladder in multiples of the stop distance (R)
    TP_LADDER = (1.0, 1.5, 2.0)

    def __init__(self, confluence_analyzer: Optional[MultiTimeframeConfluenceAnalyzer] = None):
        self.confluence_analyzer = confluence_analyzer or MultiTimeframeConfluenceAnalyzer()

    @staticmethod
    def detect_crossover(
        fast: Sequence[float],
        slow: Sequence[float],
        lookback: int = CROSSOVER_LOOKBACK,
    ) -> Optional[str]:
        """
        Most recent fast/slow crossover within the last `lookback` bars.

        Returns:
            'bullish', 'bearish' or None
        """
        length = min(len(fast), len(slow))
        for i in range(length - 1, max(length - 1 - lookback, 0), -1):
            values = (fast[i], slow[i], fast[i - 1], slow[i - 1])
            if any(math.isnan(v) for v in values):
                continue
            prev_above = fast[i - 1] > slow[i - 1]
            curr_above = fast[i] > slow[i]
            if not prev_above and curr_above:
                return "bullish"
            if prev_above and not curr_above:
                return "bearish"
        return None

    def _ema_factor(self, snapshot: IndicatorSnapshot) -> Optional[SignalFactor]:
        ema9 = snapshot.emas.get(9)
        ema21 = snapshot.emas.get(21)
        ema50 = snapshot.emas.get(50)
        if ema9 is None or ema21 is None or ema50 is None:
            return None

        crossover = None
        if 9 in snapshot.ema_series and 21 in snapshot.ema_series:
            crossover = self.detect_crossover(snapshot.ema_series[9], snapshot.ema_series[21])

        if ema9 > ema21 > ema50:
            if crossover == "bullish":
                return SignalFactor("Bullish EMAs + recent 9/21 cross", True, 20)
            return SignalFactor("EMAs aligned bullish (9>21>50)", True, 15)
        if ema9 < ema21 < ema50:
            if crossover == "bearish":
                return SignalFactor("Bearish EMAs + recent 9/21 cross", False, 20)
            return SignalFactor("EMAs aligned bearish (9<21<50)", False, 15)
        if crossover == "bullish":
            return SignalFactor("Bullish EMA9/21 cross (possible trend change)", True, 12)
        if crossover == "bearish":
            return SignalFactor("Bearish EMA9/21 cross (possible trend change)", False, 12)

        above = snapshot.current_price > ema21
        side = "above" if above else "below"
        return SignalFactor(f"EMAs without clear alignment, price {side} EMA21", above, 5)

    def _rsi_factor(self, snapshot: IndicatorSnapshot) -> Optional[SignalFactor]:
        rsi = snapshot.rsi
        if rsi is None:
            return None

        value = rsi.value
        if value > 70:
            if rsi.previous is not None and value < rsi.previous:
                return SignalFactor(f"RSI overbought and falling ({value:.0f})", False, 20)
            return SignalFactor(f"RSI overbought ({value:.0f})", False, 15)
        if value < 30:
            if rsi.previous is not None and value > rsi.previous:
                return SignalFactor(f"RSI oversold and recovering ({value:.0f})", True, 20)
            return SignalFactor(f"RSI oversold ({value:.0f})", True, 15)
        if value >= 50:
            return SignalFactor(f"RSI in bullish zone ({value:.0f})", True, 10)
        return SignalFactor(f"RSI in bearish zone ({value:.0f})", False, 10)

    def _macd_factor(self, snapshot: IndicatorSnapshot) -> Optional[SignalFactor]:
        macd = snapshot.macd
        if macd is None:
            return None

        hist = macd.histogram
        prev = macd.previous_histogram

        if prev is not None and prev < 0 < hist:
            return SignalFactor("MACD histogram turned positive", True, 20)
        if prev is not None and prev > 0 > hist:
            return SignalFactor("MACD histogram turned negative", False, 20)
        if macd.macd_line > macd.signal_line and hist > 0:
            if prev is not None and hist > prev:
                return SignalFactor("MACD bullish with growing momentum", True, 15)
            return SignalFactor("MACD bullish but momentum fading", True, 8)
        if macd.macd_line < macd.signal_line and hist < 0:
            if prev is not None and hist < prev:
                return SignalFactor("MACD bearish with growing momentum", False, 15)
            return SignalFactor("MACD bearish but momentum fading", False, 8)
        return None

    def _volume_factor(self, snapshot: IndicatorSnapshot):
        """Returns (factor, bullish points, bearish points)."""
        ratio = snapshot.volume_ratio
        if ratio is None:
            return None, 0, 0

        obv_rising = snapshot.obv is not None and snapshot.obv.rising
        obv_falling = snapshot.obv is not None and snapshot.obv.falling

        if ratio > 1.5:
            if snapshot.change_24h > 0 and obv_rising:
                return SignalFactor(f"High volume ({ratio:.1f}x) + OBV rising", True, 15), 15, 0
            if snapshot.change_24h < 0 and obv_falling:
                return SignalFactor(f"High volume ({ratio:.1f}x) + OBV falling", False, 15), 0, 15
            return SignalFactor(f"High volume ({ratio:.1f}x) without clear direction", False), 0, 0
        if ratio > 0.8:
            if obv_rising:
                return SignalFactor("Normal volume, OBV rising (accumulation)", True, 8), 8, 0
            if obv_falling:
                return SignalFactor("Normal volume, OBV falling (distribution)", False, 8), 0, 8
            return SignalFactor("Normal volume", True), 0, 0
        return SignalFactor(f"Low volume ({ratio:.1f}x), unreliable move", False), 0, 0

    def _price_factor(self, snapshot: IndicatorSnapshot):
        ema9 = snapshot.emas.get(9)
        ema21 = snapshot.emas.get(21)
        if ema9 is None or ema21 is None:
            return None, 0, 0

        above9 = snapshot.current_price > ema9
        above21 = snapshot.current_price > ema21
        if above9 and above21:
            return SignalFactor("Price above EMA9 and EMA21 (uptrend)", True, 10), 10, 0
        if not above9 and not above21:
            return SignalFactor("Price below EMA9 and EMA21 (downtrend)", False, 10), 0, 10
        return SignalFactor("Price between EMA9 and EMA21 (indecision)", False), 0, 0

    def _derivatives_factors(
        self,
        derivatives: DerivativesSnapshot,
        timeframe: str,
        price_change: float,
    ):
        """Returns (factors, bullish points, bearish points)."""
        scale = self.DERIVATIVES_WEIGHT_SCALE.get(timeframe, 1.0)
        factors = []
        bullish = bearish = 0

        funding = derivatives.funding_rate_percent
        if funding > 0.05:
            pts = round(10 * scale)
            factors.append(SignalFactor(f"High funding {funding:.3f}% (crowded longs)", False, pts))
            bearish += pts
        elif funding < -0.01:
            pts = round(10 * scale)
            factors.append(SignalFactor(f"Negative funding {funding:.3f}% (crowded shorts)", True, pts))
            bullish += pts
        else:
            factors.append(SignalFactor("Neutral funding", True))

        oi_change = derivatives.open_interest_change_24h
        if oi_change > 5 and price_change > 0:
            pts = round(8 * scale)
            factors.append(SignalFactor("OI rising with price (committed longs)", True, pts))
            bullish += pts
        elif oi_change > 5 and price_change < 0:
            pts = round(8 * scale)
            factors.append(SignalFactor("OI rising into a drop (aggressive shorts)", False, pts))
            bearish += pts
        elif oi_change < -5:
            factors.append(SignalFactor("OI falling (positions closing, caution)", False))

        return factors, bullish, bearish

    def calculate_signal(
        self,
        snapshot: IndicatorSnapshot,
        derivatives: Optional[DerivativesSnapshot],
        timeframe: str,
    ) -> SignalResult:
        """
        Score every factor and derive direction and confidence.

        Args:
            snapshot: Indicators of the timeframe
            derivatives: Derivatives snapshot, or None when unavailable
            timeframe: Timeframe of the snapshot

        Returns:
            SignalResult with all factors (unsorted, uncapped)
        """
        factors: List[SignalFactor] = []
        bullish = 0.0
        bearish = 0.0

        for factor in (self._ema_factor(snapshot), self._rsi_factor(snapshot), self._macd_factor(snapshot)):
            if factor is None:
                continue
            factors.append(factor)
            if factor.positive:
                bullish += factor.weight
            else:
                bearish += factor.weight

        for factor, bull_pts, bear_pts in (self._volume_factor(snapshot), self._price_factor(snapshot)):
            if factor is None:
                continue
            factors.append(factor)
            bullish += bull_pts
            bearish += bear_pts

        if derivatives is not None:
            deriv_factors, bull_pts, bear_pts = self._derivatives_factors(
                derivatives, timeframe, snapshot.change_24h
            )
            factors.extend(deriv_factors)
            bullish += bull_pts
            bearish += bear_pts

        net = bullish - bearish
        if net > self.DIRECTION_THRESHOLD:
            direction = LONG
            confidence = min(self.MAX_CONFIDENCE, self.BASE_CONFIDENCE + net)
        elif net < -self.DIRECTION_THRESHOLD:
            direction = SHORT
            confidence = min(self.MAX_CONFIDENCE, self.BASE_CONFIDENCE + abs(net))
        else:
            direction = NEUTRAL
            confidence = max(20, 50 - abs(net))

        if snapshot.volatility > 2.5:
            confidence = max(30, confidence - 10)
            factors.append(SignalFactor(
                f"Extreme volatility ({snapshot.volatility:.1f}%), confidence reduced", False, 0
            ))
        elif snapshot.volatility > 1.5:
            confidence = max(30, confidence - 5)

        if snapshot.volume_ratio is not None and snapshot.volume_ratio < 0.5:
            confidence = max(25, confidence - 8)

        return SignalResult(
            direction=direction,
            confidence=confidence,
            factors=factors,
            bullish_score=bullish,
            bearish_score=bearish,
        )

    def calculate_levels(
        self,
        price: float,
        direction: str,
        timeframe: str,
        atr: Optional[float] = None,
    ) -> Dict[str, float]:
        """
        Stop-loss and 1R/1.5R/2R take-profit ladder.

        Args:
            price: Entry price
            direction: LONG or SHORT (NEUTRAL is treated as LONG)
            timeframe: Timeframe used for the minimum stop distance
            atr: ATR in price units, if available

        Returns:
            Dict with stop_loss, take_profit_1..3 and risk_reward_ratio
        """
        min_stop_percent = TIMEFRAME_TP_CONFIG.get(timeframe, TIMEFRAME_TP_CONFIG["1h"])["sl"]
        stop_distance = price * min_stop_percent / 100
        if atr:
            stop_distance = max(stop_distance, atr * self.ATR_STOP_MULTIPLIER)

        sign = -1 if direction == SHORT else 1
        tp1, tp2, tp3 = (price + sign * stop_distance * r for r in self.TP_LADDER)
        stop = price - sign * stop_distance

        return {
            "stop_loss": stop,
            "take_profit_1": tp1,
            "take_profit_2": tp2,
            "take_profit_3": tp3,
            "risk_reward_ratio": abs(tp2 - price) / stop_distance if stop_distance > 0 else 0.0,
        }

    def timeframe_signal(
        self,
        snapshot: IndicatorSnapshot,
        derivatives: Optional[DerivativesSnapshot],
        timeframe: str,
    ) -> TimeframeSignal:
        """EMA direction of a timeframe with its factor confidence, for confluence checks."""
        direction = self.confluence_analyzer.direction_from_emas(
            snapshot.emas.get(9), snapshot.emas.get(21), snapshot.emas.get(50), snapshot.current_price
        )
        result = self.calculate_signal(snapshot, derivatives, timeframe)
        return TimeframeSignal(timeframe=timeframe, direction=direction, confidence=result.confidence)

    def build_intraday_signal(
        self,
        asset: str,
        timeframe: str,
        snapshot: IndicatorSnapshot,
        derivatives: Optional[DerivativesSnapshot] = None,
        adjacent: Sequence[TimeframeSignal] = (),
    ) -> IntradaySignal:
        """
        Full intraday signal: factors, confluence-adjusted confidence, levels.

        Args:
            asset: Asset symbol
            timeframe: Primary timeframe
            snapshot: Indicators of the primary timeframe
            derivatives: Derivatives snapshot, or None
            adjacent: Signals of adjacent timeframes (may be empty)

        Returns:
            IntradaySignal
        """
        result = self.calculate_signal(snapshot, derivatives, timeframe)

        primary = TimeframeSignal(timeframe=timeframe, direction=result.direction, confidence=result.confidence)
        confluence = self.confluence_analyzer.analyze(primary, adjacent)

        level_side = result.direction
        if level_side == NEUTRAL:
            ema9 = snapshot.emas.get(9)
            ema21 = snapshot.emas.get(21)
            level_side = SHORT if ema9 is not None and ema21 is not None and ema9 < ema21 else LONG
        levels = self.calculate_levels(snapshot.current_price, level_side, timeframe, snapshot.atr)

        factors = sorted(result.factors, key=lambda f: f.weight, reverse=True)[:self.MAX_FACTORS]

        return IntradaySignal(
            asset=asset,
            timeframe=timeframe,
            direction=result.direction,
            confidence=confluence.adjusted_confidence,
            entry_price=snapshot.current_price,
            factors=factors,
            confluence_score=confluence.confluence_score,
            adjacent_signals={s.timeframe: s.direction for s in adjacent},
            warnings=list(confluence.warnings),
            **levels,
        )
