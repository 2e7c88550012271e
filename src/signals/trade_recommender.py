"""
Trade Recommender - ranks signals and turns them into trade setups.

- rank_signals: total score per asset/timeframe, descending, rank 1..N, top K
- calculate_leverage: leverage from confidence and stop distance, hard max 20x
- generate_trade_setup: entry / stop / 3 take-profits / leverage, or None
- calculate_intraday_tps: per-timeframe TP/SL table widened by ATR
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

from signals.models import (
    LONG,
    NEUTRAL,
    SHORT,
    Candle,
    LeverageRecommendation,
    SignalScore,
    StopLoss,
    TakeProfit,
    TradeSetup,
)
from signals.scoring import calculate_total_score, clamp

logger = logging.getLogger(__name__)

# Take-profit / stop-loss percentages per timeframe
TIMEFRAME_TP_CONFIG = {
    "1m": {"tp1": 0.15, "tp2": 0.3, "tp3": 0.5, "sl": 0.2, "duration": "5-15 minutes"},
    "5m": {"tp1": 0.3, "tp2": 0.6, "tp3": 1.0, "sl": 0.5, "duration": "30-60 minutes"},
    "15m": {"tp1": 0.5, "tp2": 1.0, "tp3": 1.5, "sl": 0.8, "duration": "1-2 hours"},
    "30m": {"tp1": 0.75, "tp2": 1.5, "tp3": 2.25, "sl": 1.1, "duration": "2-4 hours"},
    "1h": {"tp1": 1.0, "tp2": 2.0, "tp3": 3.0, "sl": 1.5, "duration": "4-8 hours"},
    "4h": {"tp1": 1.5, "tp2": 3.0, "tp3": 5.0, "sl": 2.5, "duration": "12-24 hours"},
    "1d": {"tp1": 2.5, "tp2": 5.0, "tp3": 8.0, "sl": 3.5, "duration": "3-7 days"},
}


class TradeRecommender:
    """Signal ranking and trade setup generation."""

    DEFAULT_TOP_K = 3

    # Leverage policy
    HARD_MAX_LEVERAGE = 20
    CONSERVATIVE_LEVERAGE = 10
    MAX_MARGIN_LOSS_PERCENT = 30  # margin lost if the stop is hit at max leverage

    # Setup feasibility
    MIN_SETUP_CONFIDENCE = 55
    MIN_SETUP_CONFLUENCE = 40

    TP_EXIT_PERCENTS = (40, 30, 30)

    # Take-profits are widened when ATR exceeds this share of price (%)
    ATR_ADJUST_THRESHOLD = 0.1
    RANGE_LOOKBACK = 20

    def rank_signals(self, signals: Sequence[Dict], top_k: int = DEFAULT_TOP_K) -> List[SignalScore]:
        """
        Rank signals across asset/timeframe combinations.

        Args:
            signals: Dicts with asset, timeframe, direction, confidence,
                confluence_score and optional volatility / oi_change
            top_k: Number of signals to return

        Returns:
            List[SignalScore]: Sorted by total score, ranks 1..K
        """
        scored = []
        for signal in signals:
            if signal["direction"] == NEUTRAL:
                continue
            scored.append(SignalScore(
                asset=signal["asset"],
                timeframe=signal["timeframe"],
                direction=signal["direction"],
                confidence=signal["confidence"],
                confluence_score=signal["confluence_score"],
                total_score=calculate_total_score(
                    signal["confidence"],
                    signal["confluence_score"],
                    signal.get("volatility"),
                    signal.get("oi_change"),
                ),
            ))

        scored.sort(key=lambda s: s.total_score, reverse=True)
        for i, score in enumerate(scored):
            score.rank = i + 1

        return scored[:max(0, top_k)]

    def calculate_leverage(
        self,
        confidence: float,
        stop_distance_percent: float,
        timeframe: str = "1h",
        confluence_score: float = 100,
        volatility: float = 50,
        oi_change: float = 0,
    ) -> LeverageRecommendation:
        """
        Suggested leverage from confidence and stop distance.

        A tighter stop or higher confidence allows more leverage; the result
        never exceeds HARD_MAX_LEVERAGE.

        Args:
            confidence: Signal confidence 0-100
            stop_distance_percent: Distance from entry to stop in percent
            timeframe: Timeframe, only used in the reason text
            confluence_score: Confluence 0-100, used for warnings
            volatility: Volatility score 0-100, used for warnings
            oi_change: Open interest 24h change, used for warnings

        Returns:
            LeverageRecommendation
        """
        stop_distance_percent = max(stop_distance_percent, 0.01)
        ceiling = self.MAX_MARGIN_LOSS_PERCENT / stop_distance_percent
        factor = clamp((confidence - 50) / 45, 0.2, 1.0)

        suggested = int(clamp(round(ceiling * factor), 1, self.HARD_MAX_LEVERAGE))
        minimum = max(1, round(suggested / 2))
        maximum = max(suggested, int(min(self.HARD_MAX_LEVERAGE, math.floor(ceiling))))

        warnings = []
        if suggested > self.CONSERVATIVE_LEVERAGE:
            warnings.append(f"Leverage above {self.CONSERVATIVE_LEVERAGE}x - size the position carefully")
        if confidence < 70:
            warnings.append("Moderate confidence")
        if confluence_score < 60:
            warnings.append("Low multi-timeframe confluence")
        if volatility > 70:
            warnings.append("High volatility")
        if abs(oi_change) < 1:
            warnings.append("Flat open interest - possible range")

        reason = f"Based on {timeframe} with a {stop_distance_percent:.2f}% stop"
        if factor > 0.7:
            reason += " and a strong signal"
        elif factor < 0.3:
            reason += " and moderate conditions"

        return LeverageRecommendation(
            suggested=suggested,
            min=minimum,
            max=maximum,
            reason=reason,
            warnings=warnings,
        )

    def exit_percents(self, count: int) -> List[int]:
        """
        Share of the position closed at each take-profit.

        The 40/30/30 plan is rescaled so that fewer take-profits still close
        the whole position (1 TP: 100, 2 TPs: 57/43).
        """
        base = self.TP_EXIT_PERCENTS[:count]
        if not base:
            return []
        total = sum(base)
        exits = [round(p * 100 / total) for p in base[:-1]]
        exits.append(100 - sum(exits))
        return exits

    def generate_trade_setup(
        self,
        signal: SignalScore,
        current_price: float,
        stop_loss: float,
        take_profits: Sequence[float],
        volatility: Optional[float] = None,
        oi_change: Optional[float] = None,
    ) -> Optional[TradeSetup]:
        """
        Derive a complete trade setup from a ranked signal.

        Returns None (setup not generatable) when the signal is neutral or
        below the confidence/confluence minimums, when prices are invalid or
        on the wrong side of entry, or when risk/reward is not positive.

        Args:
            signal: Ranked signal
            current_price: Entry price
            stop_loss: Stop-loss price
            take_profits: Take-profit prices, nearest first
            volatility: Volatility score 0-100
            oi_change: Open interest 24h change in percent

        Returns:
            TradeSetup or None
        """
        if signal.direction not in (LONG, SHORT):
            return None

        if signal.confidence < self.MIN_SETUP_CONFIDENCE or signal.confluence_score < self.MIN_SETUP_CONFLUENCE:
            logger.debug(
                f"Setup skipped for {signal.asset} {signal.timeframe}: "
                f"confidence={signal.confidence}, confluence={signal.confluence_score}"
            )
            return None

        if not current_price or current_price <= 0 or not stop_loss or stop_loss <= 0:
            logger.warning(f"Invalid prices for setup: price={current_price}, stop={stop_loss}")
            return None

        sign = 1 if signal.direction == LONG else -1
        stop_distance = (current_price - stop_loss) * sign
        if stop_distance <= 0:
            logger.warning(f"Stop {stop_loss} is on the wrong side of entry {current_price}")
            return None

        valid_tps = [tp for tp in take_profits if tp and tp > 0 and (tp - current_price) * sign > 0]
        if not valid_tps:
            logger.warning(f"No valid take-profits for {signal.asset} {signal.timeframe}")
            return None

        reference_tp = valid_tps[1] if len(valid_tps) > 1 else valid_tps[-1]
        risk_reward = abs(reference_tp - current_price) / stop_distance
        if risk_reward <= 0:
            return None

        stop_distance_percent = stop_distance / current_price * 100
        leverage = self.calculate_leverage(
            confidence=signal.confidence,
            stop_distance_percent=stop_distance_percent,
            timeframe=signal.timeframe,
            confluence_score=signal.confluence_score,
            volatility=50 if volatility is None else volatility,
            oi_change=0 if oi_change is None else oi_change,
        )

        valid_tps = valid_tps[:len(self.TP_EXIT_PERCENTS)]
        exits = self.exit_percents(len(valid_tps))
        tps = [
            TakeProfit(
                level=i + 1,
                price=price,
                distance_percent=abs(price - current_price) / current_price * 100,
                exit_percent=exits[i],
            )
            for i, price in enumerate(valid_tps)
        ]

        config = TIMEFRAME_TP_CONFIG.get(signal.timeframe)
        return TradeSetup(
            signal=signal,
            entry=current_price,
            stop_loss=StopLoss(price=stop_loss, distance_percent=stop_distance_percent),
            take_profits=tps,
            leverage=leverage,
            risk_reward=risk_reward,
            estimated_duration=config["duration"] if config else "unknown",
        )

    def calculate_intraday_tps(
        self,
        price: float,
        direction: str,
        timeframe: str,
        atr: Optional[float] = None,
    ) -> Dict:
        """
        Timeframe take-profit table, widened by ATR when volatility is high.

        Returns:
            Dict with tp1..tp3, stop_loss, their percentages, risk_reward and duration
        """
        config = TIMEFRAME_TP_CONFIG.get(timeframe, TIMEFRAME_TP_CONFIG["1h"])
        tp_percents = [config["tp1"], config["tp2"], config["tp3"]]
        sl_percent = config["sl"]

        if atr and price > 0:
            atr_percent = atr / price * 100
            if atr_percent > self.ATR_ADJUST_THRESHOLD:
                tp_percents = [max(p, atr_percent * m) for p, m in zip(tp_percents, (1, 2, 3))]
                sl_percent = max(sl_percent, atr_percent * 1.5)

        sign = -1 if direction == SHORT else 1
        tps = [price * (1 + sign * p / 100) for p in tp_percents]

        return {
            "tp1": tps[0],
            "tp2": tps[1],
            "tp3": tps[2],
            "stop_loss": price * (1 - sign * sl_percent / 100),
            "tp_percents": tp_percents,
            "sl_percent": sl_percent,
            "risk_reward": tp_percents[1] / sl_percent,
            "duration": config["duration"],
        }

    def validate_tps_against_range(
        self,
        take_profits: Sequence[float],
        candles: Sequence[Candle],
        direction: str,
    ) -> List[Dict]:
        """
        Flag take-profits beyond the recent trading range.

        Args:
            take_profits: Take-profit prices
            candles: Recent candles (the last 20 are used)
            direction: LONG or SHORT

        Returns:
            List of {"price", "within_range", "warning"}
        """
        recent = list(candles)[-self.RANGE_LOOKBACK:]
        if not recent:
            return [{"price": tp, "within_range": True, "warning": None} for tp in take_profits]

        range_high = max(c.high for c in recent)
        range_low = min(c.low for c in recent)

        results = []
        for tp in take_profits:
            if direction == SHORT:
                within = tp >= range_low
                warning = None if within else f"TP {tp:.2f} below the recent low {range_low:.2f}"
            else:
                within = tp <= range_high
                warning = None if within else f"TP {tp:.2f} above the recent high {range_high:.2f}"
            results.append({"price": tp, "within_range": within, "warning": warning})
        return results
