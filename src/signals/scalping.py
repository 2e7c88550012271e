"""
Scalping Gate Engine - pass/fail gates for scalping entries.

Critical gates (all must pass): Trend, EMA Cross, Volume, Higher TF.
Confirmatory gates (add confidence): RSI, MACD, Volatility, Funding.
Levels are ATR based: stop 1 ATR, take-profits 1/2/3 ATR.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from analyzers.derivatives import DerivativesSnapshot
from signals.indicators import IndicatorSnapshot
from signals.models import LONG, SHORT
from signals.signal_engine import SignalEngine
from signals.trade_recommender import TradeRecommender

logger = logging.getLogger(__name__)


@dataclass
class ScalpingGate:
    name: str
    passed: bool
    reason: str
    critical: bool


@dataclass
class ScalpingSignal:
    """Gate evaluation and ATR levels for one asset/timeframe."""

    asset: str
    timeframe: str
    direction: Optional[str]
    gates: List[ScalpingGate] = field(default_factory=list)
    critical_passed: int = 0
    critical_total: int = 4
    confirmatory_passed: int = 0
    confirmatory_total: int = 4
    confidence: float = 0
    atr: float = 0.0
    entry: float = 0.0
    stop_loss: float = 0.0
    take_profit_1: float = 0.0
    take_profit_2: float = 0.0
    take_profit_3: float = 0.0
    stop_loss_percent: float = 0.0
    risk_reward: float = 0.0
    suggested_leverage: int = 1
    max_leverage: int = 1
    time_limit: str = ""

    @property
    def critical_pass(self) -> bool:
        return self.direction is not None and self.critical_passed == self.critical_total


class ScalpingGateEngine:
    """Gate-based scalping signal evaluation."""

    CROSSOVER_LOOKBACK = 5
    MIN_VOLUME_RATIO = 0.8
    RSI_RANGES = {LONG: (40, 70), SHORT: (30, 60)}
    MIN_ATR_PERCENT = 0.05
    MAX_ATR_PERCENT = 2.5
    MAX_FUNDING = 0.05

    BASE_CONFIDENCE = 65
    CONFIRMATORY_BONUS = 8
    PARTIAL_CONFIDENCE = 40

    # (atr % upper bound, base leverage); lower volatility allows more
    LEVERAGE_BUCKETS = ((0.1, 20), (0.3, 16), (0.5, 14), (1.0, 12), (1.5, 10))
    HIGH_VOLATILITY_LEVERAGE = 8
    HARD_MAX_LEVERAGE = TradeRecommender.HARD_MAX_LEVERAGE

    TIME_LIMITS = {"1m": "5-15 min", "5m": "15-30 min"}
    DEFAULT_TIME_LIMIT = "30-60 min"

    def _crossover_direction(self, snapshot: IndicatorSnapshot) -> Optional[str]:
        if 9 not in snapshot.ema_series or 21 not in snapshot.ema_series:
            return None
        crossover = SignalEngine.detect_crossover(
            snapshot.ema_series[9], snapshot.ema_series[21], self.CROSSOVER_LOOKBACK
        )
        if crossover == "bullish":
            return LONG
        if crossover == "bearish":
            return SHORT
        return None

    @staticmethod
    def _ema_side(snapshot: Optional[IndicatorSnapshot]) -> Optional[str]:
        if snapshot is None:
            return None
        ema9 = snapshot.emas.get(9)
        ema21 = snapshot.emas.get(21)
        if ema9 is None or ema21 is None:
            return None
        return LONG if ema9 > ema21 else SHORT

    # Critical gates

    def trend_gate(self, snapshot: IndicatorSnapshot, direction: str) -> ScalpingGate:
        side = self._ema_side(snapshot)
        if side is None:
            return ScalpingGate("Trend", False, "EMAs unavailable", True)
        passed = side == direction
        verb = "confirms" if passed else "contradicts"
        return ScalpingGate("Trend", passed, f"EMA9 vs EMA21 {verb} {direction}", True)

    def crossover_gate(self, crossover: Optional[str], direction: str) -> ScalpingGate:
        if crossover is None:
            return ScalpingGate("EMA Cross", False, f"No EMA9/21 cross in the last {self.CROSSOVER_LOOKBACK} bars", True)
        passed = crossover == direction
        reason = f"{crossover} EMA9/21 cross" + (" - valid trigger" if passed else f" contradicts {direction}")
        return ScalpingGate("EMA Cross", passed, reason, True)

    def volume_gate(self, volume_ratio: Optional[float]) -> ScalpingGate:
        if volume_ratio is None:
            return ScalpingGate("Volume", False, "No volume data", True)
        passed = volume_ratio > self.MIN_VOLUME_RATIO
        reason = (
            f"Volume ratio {volume_ratio:.2f}x - enough volume" if passed
            else f"Volume ratio {volume_ratio:.2f}x < {self.MIN_VOLUME_RATIO} - possible trap"
        )
        return ScalpingGate("Volume", passed, reason, True)

    def higher_timeframe_gate(self, higher: Optional[IndicatorSnapshot], direction: str) -> ScalpingGate:
        side = self._ema_side(higher)
        if side is None:
            return ScalpingGate("Higher TF", False, "Higher timeframe data unavailable", True)
        passed = side == direction
        verb = "confirms" if passed else "contradicts"
        return ScalpingGate("Higher TF", passed, f"Higher TF EMA9 vs EMA21 {verb} {direction}", True)

    # Confirmatory gates

    def rsi_gate(self, snapshot: IndicatorSnapshot, direction: str) -> ScalpingGate:
        if snapshot.rsi is None:
            return ScalpingGate("RSI", False, "RSI unavailable", False)
        low, high = self.RSI_RANGES[direction]
        value = snapshot.rsi.value
        passed = low <= value <= high
        reason = f"RSI {value:.1f} {'inside' if passed else 'outside'} {low}-{high}"
        return ScalpingGate("RSI", passed, reason, False)

    def macd_gate(self, snapshot: IndicatorSnapshot, direction: str) -> ScalpingGate:
        if snapshot.macd is None:
            return ScalpingGate("MACD", False, "MACD unavailable", False)
        histogram = snapshot.macd.histogram
        passed = histogram > 0 if direction == LONG else histogram < 0
        verb = "confirms" if passed else "contradicts"
        return ScalpingGate("MACD", passed, f"MACD histogram {histogram:.4f} {verb} {direction}", False)

    def volatility_gate(self, atr_percent: float) -> ScalpingGate:
        passed = self.MIN_ATR_PERCENT <= atr_percent <= self.MAX_ATR_PERCENT
        if atr_percent < self.MIN_ATR_PERCENT:
            reason = f"Volatility too low ({atr_percent:.3f}%)"
        elif atr_percent > self.MAX_ATR_PERCENT:
            reason = f"Extreme volatility ({atr_percent:.2f}%)"
        else:
            reason = f"ATR {atr_percent:.3f}% - optimal range"
        return ScalpingGate("Volatility", passed, reason, False)

    def funding_gate(self, derivatives: Optional[DerivativesSnapshot]) -> ScalpingGate:
        if derivatives is None:
            return ScalpingGate("Funding", True, "No funding data - assumed neutral", False)
        rate = derivatives.funding_rate_percent
        passed = abs(rate) < self.MAX_FUNDING
        reason = f"Funding {rate:.4f}% - " + ("neutral" if passed else "extreme, squeeze risk")
        return ScalpingGate("Funding", passed, reason, False)

    def suggest_leverage(
        self,
        critical_passed: int,
        critical_total: int,
        confirmatory_passed: int,
        confirmatory_total: int,
        atr_percent: float,
    ):
        """(suggested, max) leverage; calmer markets and more passed gates allow more."""
        base = self.HIGH_VOLATILITY_LEVERAGE
        for bound, leverage in self.LEVERAGE_BUCKETS:
            if atr_percent < bound:
                base = leverage
                break

        critical_ratio = critical_passed / critical_total if critical_total else 0
        confirmatory_ratio = confirmatory_passed / confirmatory_total if confirmatory_total else 0
        combined = critical_ratio * 0.7 + confirmatory_ratio * 0.3

        suggested = max(1, min(self.HARD_MAX_LEVERAGE, round(base * combined)))
        maximum = max(suggested, min(self.HARD_MAX_LEVERAGE, round(base * 1.2)))
        return suggested, maximum

    def evaluate(
        self,
        asset: str,
        timeframe: str,
        snapshot: IndicatorSnapshot,
        derivatives: Optional[DerivativesSnapshot] = None,
        higher_snapshot: Optional[IndicatorSnapshot] = None,
    ) -> ScalpingSignal:
        """
        Evaluate all gates for one asset/timeframe.

        Args:
            asset: Asset symbol
            timeframe: Scalping timeframe
            snapshot: Indicators of the scalping timeframe
            derivatives: Funding data, if any
            higher_snapshot: Indicators of the next higher timeframe

        Returns:
            ScalpingSignal (direction None when it cannot be determined)
        """
        price = snapshot.current_price
        atr = snapshot.atr or 0.0
        atr_percent = snapshot.atr_percent
        time_limit = self.TIME_LIMITS.get(timeframe, self.DEFAULT_TIME_LIMIT)

        crossover = self._crossover_direction(snapshot)
        direction = crossover or self._ema_side(snapshot)

        if direction is None:
            gates = [
                ScalpingGate("Trend", False, "Direction cannot be determined", True),
                ScalpingGate("EMA Cross", False, "No cross detected", True),
                self.volume_gate(snapshot.volume_ratio),
                self.higher_timeframe_gate(higher_snapshot, LONG),
                ScalpingGate("RSI", False, "Requires a direction", False),
                ScalpingGate("MACD", False, "Requires a direction", False),
                self.volatility_gate(atr_percent),
                self.funding_gate(derivatives),
            ]
            return ScalpingSignal(
                asset=asset,
                timeframe=timeframe,
                direction=None,
                gates=gates,
                critical_passed=sum(1 for g in gates if g.critical and g.passed),
                confirmatory_passed=sum(1 for g in gates if not g.critical and g.passed),
                atr=atr,
                entry=price,
                time_limit=time_limit,
            )

        gates = [
            self.trend_gate(snapshot, direction),
            self.crossover_gate(crossover, direction),
            self.volume_gate(snapshot.volume_ratio),
            self.higher_timeframe_gate(higher_snapshot, direction),
            self.rsi_gate(snapshot, direction),
            self.macd_gate(snapshot, direction),
            self.volatility_gate(atr_percent),
            self.funding_gate(derivatives),
        ]

        critical = [g for g in gates if g.critical]
        confirmatory = [g for g in gates if not g.critical]
        critical_passed = sum(1 for g in critical if g.passed)
        confirmatory_passed = sum(1 for g in confirmatory if g.passed)

        if critical_passed == len(critical):
            confidence = self.BASE_CONFIDENCE + confirmatory_passed * self.CONFIRMATORY_BONUS
        else:
            confidence = round(critical_passed / len(critical) * self.PARTIAL_CONFIDENCE)
        confidence = min(100, confidence)

        sign = 1 if direction == LONG else -1
        stop_loss = round(price - sign * atr, 2)
        take_profits = [round(price + sign * atr * m, 2) for m in (1, 2, 3)]
        stop_percent = atr / price * 100 if price > 0 else 0.0
        risk_reward = round((2 * atr) / atr, 2) if atr > 0 else 0.0

        suggested, maximum = self.suggest_leverage(
            critical_passed, len(critical), confirmatory_passed, len(confirmatory), atr_percent
        )

        logger.debug(
            f"Scalping {asset} {timeframe} {direction}: critical {critical_passed}/{len(critical)}, "
            f"confirmatory {confirmatory_passed}/{len(confirmatory)}, confidence {confidence}"
        )

        return ScalpingSignal(
            asset=asset,
            timeframe=timeframe,
            direction=direction,
            gates=gates,
            critical_passed=critical_passed,
            critical_total=len(critical),
            confirmatory_passed=confirmatory_passed,
            confirmatory_total=len(confirmatory),
            confidence=confidence,
            atr=atr,
            entry=price,
            stop_loss=stop_loss,
            take_profit_1=take_profits[0],
            take_profit_2=take_profits[1],
            take_profit_3=take_profits[2],
            stop_loss_percent=stop_percent,
            risk_reward=risk_reward,
            suggested_leverage=suggested,
            max_leverage=maximum,
            time_limit=time_limit,
        )
