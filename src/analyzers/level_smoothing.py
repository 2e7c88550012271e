"""
Level smoothing - keeps support/resistance prices from jumping on every update.

The history of recent cycles is an explicit LevelHistory object owned by the
caller, so it can be reset or replayed in tests.
"""

import logging
from collections import deque
from dataclasses import replace
from typing import Deque, Dict, List, Optional, Sequence

from analyzers.levels import RESISTANCE, SUPPORT, SupportResistanceLevel

logger = logging.getLogger(__name__)


class LevelHistory:
    """Recent level prices per category plus the last smoothed output."""

    MAX_CYCLES = 5

    def __init__(self, max_cycles: int = MAX_CYCLES):
        self.max_cycles = max_cycles
        self._cycles: Dict[str, Deque[List[float]]] = {}
        self._smoothed: Dict[str, List[float]] = {}
        self._prices: Dict[str, float] = {}

    def push(self, category: str, prices: Sequence[float]) -> None:
        self._cycles.setdefault(category, deque(maxlen=self.max_cycles)).append(list(prices))

    def cycles(self, category: str) -> List[List[float]]:
        return list(self._cycles.get(category, []))

    def previous_smoothed(self, category: str) -> List[float]:
        return self._smoothed.get(category, [])

    def previous_price(self, category: str) -> Optional[float]:
        return self._prices.get(category)

    def record(self, category: str, smoothed: Sequence[float], current_price: float) -> None:
        self._smoothed[category] = list(smoothed)
        self._prices[category] = current_price

    def reset(self) -> None:
        """Forget every category."""
        self._cycles.clear()
        self._smoothed.clear()
        self._prices.clear()


class LevelSmoother:
    """
    Averages each level with its matches from recent cycles, then applies
    index-keyed exponential smoothing while the price is stable.
    """

    MIN_CYCLES = 3
    MATCH_TOLERANCE = 0.03
    PREVIOUS_WEIGHT = 0.7
    NEW_WEIGHT = 0.3
    MAX_PRICE_CHANGE_PERCENT = 2.0
    DUPLICATE_THRESHOLD = 0.01

    def __init__(self, history: Optional[LevelHistory] = None):
        self.history = history or LevelHistory()

    def _average_with_history(self, price: float, cycles: List[List[float]]) -> float:
        matches = []
        for cycle in cycles:
            similar = next((p for p in cycle if abs(p - price) < price * self.MATCH_TOLERANCE), None)
            if similar is not None:
                matches.append(similar)
        return sum(matches) / len(matches) if matches else price

    @staticmethod
    def _on_own_side(price: float, category: str, current_price: float) -> bool:
        if current_price <= 0:
            return True
        if category == SUPPORT:
            return price < current_price
        if category == RESISTANCE:
            return price > current_price
        return True

    def _remove_duplicates(self, levels: List[SupportResistanceLevel]) -> List[SupportResistanceLevel]:
        kept: List[SupportResistanceLevel] = []
        for level in levels:
            if any(abs(level.price - k.price) / max(level.price, k.price) <= self.DUPLICATE_THRESHOLD for k in kept):
                continue
            kept.append(level)
        return kept

    def smooth(
        self,
        levels: Sequence[SupportResistanceLevel],
        category: str,
        current_price: float,
    ) -> List[SupportResistanceLevel]:
        """
        Smooth one cycle of levels.

        Args:
            levels: Levels of this cycle, in display order
            category: 'support' or 'resistance'
            current_price: Price the levels were computed at

        Returns:
            List[SupportResistanceLevel]: Smoothed copies of the input levels,
            each still on its own side of current_price
        """
        levels = list(levels)
        self.history.push(category, [l.price for l in levels])
        cycles = self.history.cycles(category)

        if len(cycles) < self.MIN_CYCLES:
            self.history.record(category, [l.price for l in levels], current_price)
            return levels

        previous = self.history.previous_smoothed(category)
        previous_price = self.history.previous_price(category)
        price_stable = (
            previous_price is not None
            and previous_price > 0
            and abs(current_price - previous_price) / previous_price * 100 <= self.MAX_PRICE_CHANGE_PERCENT
        )

        smoothed = []
        for i, level in enumerate(levels):
            value = self._average_with_history(level.price, cycles)
            if price_stable and i < len(previous):
                prior = previous[i]
                if abs(prior - value) / value <= self.MATCH_TOLERANCE:
                    value = self.PREVIOUS_WEIGHT * prior + self.NEW_WEIGHT * value
            value = round(value, 2)

            if not self._on_own_side(value, category, current_price):
                if not self._on_own_side(level.price, category, current_price):
                    logger.debug(f"Dropped {category} {level.price} on the wrong side of {current_price}")
                    continue
                logger.debug(f"Smoothed {category} {value} crossed the price, keeping raw {level.price}")
                value = level.price

            distance = (value - current_price) / current_price * 100 if current_price > 0 else level.distance_percent
            smoothed.append(replace(level, price=value, distance_percent=distance))

        self.history.record(category, [l.price for l in smoothed], current_price)

        result = self._remove_duplicates(smoothed)
        if len(result) < len(smoothed):
            logger.debug(f"Removed {len(smoothed) - len(result)} duplicate {category} levels after smoothing")
        return result
