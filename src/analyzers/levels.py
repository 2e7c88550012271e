"""
Support / Resistance Level Detection

Levels come from four sources:
- EMAs 25/55/99/200
- Pivot points (swing highs/lows with touch counts)
- Fibonacci 1.618 extension
- Power law floor / ceiling bands

Each level is scored by its distance from the current price, filtered by
maximum distance, deduplicated and capped.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from analyzers.base import BaseAnalyzer
from signals.indicators import count_touches, find_swing_points
from signals.models import Candle

SUPPORT = "support"
RESISTANCE = "resistance"


@dataclass
class SupportResistanceLevel:
    """
    A support or resistance level.

    Attributes:
        price: Level price
        kind: 'ema', 'pivot', 'fibonacci' or 'model'
        label: Display label, e.g. 'EMA(200)'
        timeframe_tag: Timeframe the level was derived from
        strength: 'low', 'medium' or 'high'
        score: 0-100
        distance_percent: Signed distance from the current price in percent
        touches: Number of candles that touched the level
        rationale: Why the level matters
    """

    price: float
    kind: str
    label: str
    timeframe_tag: str
    strength: str
    score: float
    distance_percent: float
    touches: int = 0
    rationale: str = ""


class LevelDetector(BaseAnalyzer):
    """Ranked supports below price and resistances above it."""

    MAX_SUPPORT_DISTANCE = 15.0
    MAX_RESISTANCE_DISTANCE = 20.0
    DEDUP_THRESHOLD = 0.005  # 0.5%

    DEFAULT_MAX_LEVELS = 5
    MAX_LEVELS_LIMIT = 7

    EMA200_SUPPORT_BONUS = 10
    FIB_EXTENSION = 1.618
    SWING_LOOKBACK = 100

    # Score bonus per touch for pivot levels, capped
    PIVOT_TOUCH_BONUS = 2
    MAX_PIVOT_BONUS = 10

    # (period, strength, support rationale, resistance rationale)
    EMA_LEVELS = (
        (25, "high", "Short-term dynamic support", "Short-term dynamic resistance"),
        (55, "high", "Mid-term dynamic support", "Mid-term dynamic resistance"),
        (99, "medium", "Long-term dynamic support", "Long-term dynamic resistance"),
        (200, "high", "Key institutional support", "Key institutional resistance"),
    )

    @staticmethod
    def support_score(distance: float) -> float:
        """Supports score best 2-5% below price."""
        if 2 <= distance <= 5:
            return 95
        if distance < 2:
            return 75
        if distance <= 8:
            return 85
        if distance <= 15:
            return 70
        return 50

    @staticmethod
    def resistance_score(distance: float) -> float:
        """Resistances score best when closest."""
        if distance <= 5:
            return 90
        if distance <= 10:
            return 80
        if distance <= 20:
            return 70
        return 60

    @staticmethod
    def _strength_from_touches(touches: int) -> str:
        if touches >= 4:
            return "high"
        if touches >= 2:
            return "medium"
        return "low"

    def _level(
        self,
        side: str,
        price: float,
        current_price: float,
        kind: str,
        label: str,
        strength: str,
        rationale: str,
        timeframe_tag: str,
        touches: int = 0,
        bonus: float = 0,
    ) -> SupportResistanceLevel:
        distance = abs(price - current_price) / current_price * 100
        base = self.support_score(distance) if side == SUPPORT else self.resistance_score(distance)
        return SupportResistanceLevel(
            price=round(price, 2),
            kind=kind,
            label=label,
            timeframe_tag=timeframe_tag,
            strength=strength,
            score=min(100, base + bonus),
            distance_percent=(price - current_price) / current_price * 100,
            touches=touches,
            rationale=rationale,
        )

    def _pivot_levels(
        self,
        side: str,
        current_price: float,
        candles: Sequence[Candle],
        timeframe_tag: str,
    ) -> List[SupportResistanceLevel]:
        swing_highs, swing_lows = find_swing_points(candles, self.SWING_LOOKBACK)
        points = swing_lows if side == SUPPORT else swing_highs

        levels = []
        for point in points:
            if side == SUPPORT and point.price >= current_price:
                continue
            if side == RESISTANCE and point.price <= current_price:
                continue
            touches = count_touches(candles, point.price)
            name = "Pivot low" if side == SUPPORT else "Pivot high"
            levels.append(self._level(
                side, point.price, current_price, "pivot", name,
                self._strength_from_touches(touches),
                f"Swing {point.type} tested {touches} times",
                timeframe_tag,
                touches=touches,
                bonus=min(self.MAX_PIVOT_BONUS, touches * self.PIVOT_TOUCH_BONUS),
            ))
        return levels

    def _deduplicate(self, levels: List[SupportResistanceLevel]) -> List[SupportResistanceLevel]:
        """Drop levels within 0.5% of the previously kept one (input sorted by price)."""
        kept: List[SupportResistanceLevel] = []
        for level in levels:
            if kept:
                previous = kept[-1].price
                if abs(level.price - previous) / max(level.price, previous) <= self.DEDUP_THRESHOLD:
                    continue
            kept.append(level)
        return kept

    def _cap(self, max_levels: int) -> int:
        return max(1, min(self.MAX_LEVELS_LIMIT, max_levels))

    def detect_supports(
        self,
        current_price: float,
        emas: Dict[int, float],
        candles: Optional[Sequence[Candle]] = None,
        model_floor: Optional[float] = None,
        max_levels: int = DEFAULT_MAX_LEVELS,
        timeframe_tag: str = "1d",
    ) -> List[SupportResistanceLevel]:
        """
        Support levels below the current price, sorted by score.

        Args:
            current_price: Current price
            emas: {period: value}, usually 25/55/99/200
            candles: Candles for pivot detection
            model_floor: Power law floor price
            max_levels: Output cap (1-7)
            timeframe_tag: Tag stored on every level

        Returns:
            List[SupportResistanceLevel]
        """
        if current_price <= 0:
            return []

        levels = []
        for period, strength, rationale, _ in self.EMA_LEVELS:
            value = emas.get(period)
            if value and value < current_price:
                bonus = self.EMA200_SUPPORT_BONUS if period == 200 else 0
                levels.append(self._level(
                    SUPPORT, value, current_price, "ema", f"EMA({period})",
                    strength, rationale, timeframe_tag, bonus=bonus,
                ))

        if candles:
            levels.extend(self._pivot_levels(SUPPORT, current_price, candles, timeframe_tag))

        if model_floor and 0 < model_floor < current_price:
            levels.append(self._level(
                SUPPORT, model_floor, current_price, "model", "Power Law floor",
                "high", "Historical power law floor (0.5x model)", timeframe_tag,
            ))

        nearby = [l for l in levels if abs(l.distance_percent) <= self.MAX_SUPPORT_DISTANCE]
        nearby.sort(key=lambda l: l.price, reverse=True)
        result = self._deduplicate(nearby)
        result.sort(key=lambda l: (-l.score, abs(l.distance_percent)))

        self.logger.debug(f"Supports: {len(levels)} candidates, {len(result)} kept")
        return result[:self._cap(max_levels)]

    def detect_resistances(
        self,
        current_price: float,
        emas: Dict[int, float],
        candles: Optional[Sequence[Candle]] = None,
        model_ceiling: Optional[float] = None,
        max_levels: int = DEFAULT_MAX_LEVELS,
        timeframe_tag: str = "1d",
    ) -> List[SupportResistanceLevel]:
        """
        Resistance levels above the current price, nearest first.

        Args:
            current_price: Current price
            emas: {period: value}, usually 25/55/99/200
            candles: Candles for pivot detection and the Fibonacci swing
            model_ceiling: Power law ceiling price
            max_levels: Output cap (1-7)
            timeframe_tag: Tag stored on every level

        Returns:
            List[SupportResistanceLevel]
        """
        if current_price <= 0:
            return []

        levels = []
        for period, strength, _, rationale in self.EMA_LEVELS:
            value = emas.get(period)
            if value and value > current_price:
                levels.append(self._level(
                    RESISTANCE, value, current_price, "ema", f"EMA({period})",
                    strength, rationale, timeframe_tag,
                ))

        fib = self.fibonacci_extension(current_price, candles, model_ceiling)
        if fib and fib > current_price:
            levels.append(self._level(
                RESISTANCE, fib, current_price, "fibonacci", "Fib 1.618",
                "medium", "Classic Fibonacci extension", timeframe_tag,
            ))

        if candles:
            levels.extend(self._pivot_levels(RESISTANCE, current_price, candles, timeframe_tag))

        if model_ceiling and model_ceiling > current_price:
            levels.append(self._level(
                RESISTANCE, model_ceiling, current_price, "model", "Power Law ceiling",
                "high", "Historical power law ceiling (3x model)", timeframe_tag,
            ))

        nearby = [l for l in levels if l.distance_percent < self.MAX_RESISTANCE_DISTANCE]
        nearby.sort(key=lambda l: l.price)
        result = self._deduplicate(nearby)

        self.logger.debug(f"Resistances: {len(levels)} candidates, {len(result)} kept")
        return result[:self._cap(max_levels)]

    def fibonacci_extension(
        self,
        current_price: float,
        candles: Optional[Sequence[Candle]] = None,
        model_ceiling: Optional[float] = None,
    ) -> Optional[float]:
        """
        1.618 extension of the recent swing range.

        Without candles the extension is taken from the current price and
        only kept below the model ceiling.
        """
        if candles:
            recent = list(candles)[-self.SWING_LOOKBACK:]
            swing_low = min(c.low for c in recent)
            swing_high = max(c.high for c in recent)
            return swing_low + self.FIB_EXTENSION * (swing_high - swing_low)

        fib = current_price * self.FIB_EXTENSION
        if model_ceiling and fib >= model_ceiling:
            return None
        return fib

    def get_score(
        self,
        supports: Sequence[SupportResistanceLevel],
        resistances: Sequence[SupportResistanceLevel],
    ) -> float:
        """
        Room-to-run bias in [-10, 10].

        Positive when the nearest resistance is further away than the nearest
        support, negative in the opposite case.
        """
        if not supports or not resistances:
            return 0.0
        support_distance = min(abs(l.distance_percent) for l in supports)
        resistance_distance = min(abs(l.distance_percent) for l in resistances)
        total = support_distance + resistance_distance
        if total <= 0:
            return 0.0
        return self.clamp((resistance_distance - support_distance) / total * 10, -10, 10)
