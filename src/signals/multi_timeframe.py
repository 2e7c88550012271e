"""
Multi-Timeframe Confluence Module.

Compares the direction of a primary timeframe with its adjacent timeframes
(picked from a fixed validation matrix) and produces a confluence score,
an adjusted confidence, a recommendation string and warnings.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from signals.models import LONG, NEUTRAL, SHORT

logger = logging.getLogger(__name__)


@dataclass
class TimeframeSignal:
    """Direction and confidence of a single timeframe."""

    timeframe: str
    direction: str
    confidence: float = 50.0


@dataclass
class ConfluenceResult:
    """Outcome of a confluence check."""

    confluence_score: float
    adjusted_confidence: float
    recommendation: str
    warnings: List[str] = field(default_factory=list)
    agreements: int = 0
    disagreements: int = 0


class MultiTimeframeConfluenceAnalyzer:
    """Confluence analysis across adjacent timeframes."""

    TIMEFRAME_ORDER = ["1m", "5m", "15m", "30m", "1h", "4h", "1d"]

    # Higher timeframes carry more weight (less noise)
    TIMEFRAME_WEIGHTS = {
        "1m": 0.5,
        "5m": 1.0,
        "15m": 1.5,
        "30m": 2.0,
        "1h": 2.5,
        "4h": 3.0,
        "1d": 3.5,
    }

    # Adjacent timeframes checked for each primary timeframe, at most 3
    VALIDATION_MATRIX = {
        "1m": ["5m", "15m"],
        "5m": ["1m", "15m", "30m"],
        "15m": ["5m", "30m", "1h"],
        "30m": ["15m", "1h", "4h"],
        "1h": ["30m", "4h", "1d"],
        "4h": ["1h", "1d"],
        "1d": ["4h"],
    }
    MAX_ADJACENT = 3

    STRONG_CONFLUENCE = 80
    MODERATE_CONFLUENCE = 60
    WEAK_CONFLUENCE = 40
    NO_DATA_SCORE = 50.0
    NEUTRAL_CREDIT = 0.5

    MIN_ADJUSTED_CONFIDENCE = 30
    MAX_ADJUSTED_CONFIDENCE = 95

    def get_adjacent_timeframes(self, timeframe: str) -> List[str]:
        """Adjacent timeframes from the validation matrix (empty if unknown)."""
        return self.VALIDATION_MATRIX.get(timeframe, [])[:self.MAX_ADJACENT]

    def get_upper_timeframe(self, timeframe: str) -> Optional[str]:
        """Nearest adjacent timeframe above `timeframe`."""
        rank = self._rank(timeframe)
        for tf in self.get_adjacent_timeframes(timeframe):
            if self._rank(tf) > rank:
                return tf
        return None

    def get_lower_timeframe(self, timeframe: str) -> Optional[str]:
        """Nearest adjacent timeframe below `timeframe`."""
        rank = self._rank(timeframe)
        lower = [tf for tf in self.get_adjacent_timeframes(timeframe) if self._rank(tf) < rank]
        return max(lower, key=self._rank) if lower else None

    def _rank(self, timeframe: str) -> int:
        return self.TIMEFRAME_ORDER.index(timeframe) if timeframe in self.TIMEFRAME_ORDER else -1

    @staticmethod
    def direction_from_emas(
        fast: Optional[float],
        mid: Optional[float],
        slow: Optional[float],
        price: Optional[float] = None,
    ) -> str:
        """
        Direction from EMA alignment.

        LONG if fast > mid > slow (and price above fast when a price is given),
        SHORT for the mirror case, NEUTRAL otherwise.
        """
        if fast is None or mid is None or slow is None:
            return NEUTRAL

        if fast > mid > slow and (price is None or price > fast):
            return LONG
        if fast < mid < slow and (price is None or price < fast):
            return SHORT
        return NEUTRAL

    def calculate_confluence_score(
        self,
        primary: TimeframeSignal,
        adjacent: Sequence[TimeframeSignal],
    ) -> float:
        """
        Weighted share of adjacent timeframes agreeing with the primary.

        A matching direction earns full weight. When exactly one side is
        NEUTRAL the timeframe earns half its weight; opposite directions earn
        nothing.

        Returns:
            float: 0-100, or 50 when there are no adjacent signals
        """
        total_weight = 0.0
        agreeing_weight = 0.0

        for signal in adjacent:
            weight = self.TIMEFRAME_WEIGHTS.get(signal.timeframe, 1.0)
            total_weight += weight
            if signal.direction == primary.direction:
                agreeing_weight += weight
            elif NEUTRAL in (signal.direction, primary.direction):
                agreeing_weight += weight * self.NEUTRAL_CREDIT

        if total_weight == 0:
            return self.NO_DATA_SCORE
        return agreeing_weight / total_weight * 100

    def _is_opposite(self, a: str, b: str) -> bool:
        return {a, b} == {LONG, SHORT}

    def analyze(
        self,
        primary: TimeframeSignal,
        adjacent: Sequence[TimeframeSignal],
    ) -> ConfluenceResult:
        """
        Confluence score, adjusted confidence, recommendation and warnings.

        Args:
            primary: Signal of the timeframe being evaluated
            adjacent: Signals of its adjacent timeframes

        Returns:
            ConfluenceResult
        """
        if not adjacent:
            return ConfluenceResult(
                confluence_score=self.NO_DATA_SCORE,
                adjusted_confidence=primary.confidence,
                recommendation="No data from other timeframes",
            )

        by_timeframe = {s.timeframe: s for s in adjacent}
        agreements = sum(1 for s in adjacent if s.direction == primary.direction)
        disagreements = sum(1 for s in adjacent if self._is_opposite(s.direction, primary.direction))
        score = self.calculate_confluence_score(primary, adjacent)

        adjusted = primary.confidence
        upper_tf = self.get_upper_timeframe(primary.timeframe)
        upper = by_timeframe.get(upper_tf) if upper_tf else None
        upper_disagrees = upper is not None and self._is_opposite(upper.direction, primary.direction)

        if upper_disagrees:
            penalty = 25 if upper.confidence > 60 else 15
            adjusted = max(self.MIN_ADJUSTED_CONFIDENCE, adjusted - penalty)
            logger.debug(f"Upper TF {upper_tf} disagrees ({upper.direction}), penalty -{penalty}")
        elif upper is not None and upper.direction == primary.direction:
            bonus = 10 if upper.confidence > 70 else 5
            adjusted = min(self.MAX_ADJUSTED_CONFIDENCE, adjusted + bonus)

        lower_tf = self.get_lower_timeframe(primary.timeframe)
        lower = by_timeframe.get(lower_tf) if lower_tf else None
        if lower is not None and lower.direction == primary.direction:
            bonus = 5 if lower.confidence > 70 else 3
            adjusted = min(self.MAX_ADJUSTED_CONFIDENCE, adjusted + bonus)

        if disagreements == 0 and agreements >= 2:
            adjusted = min(self.MAX_ADJUSTED_CONFIDENCE, adjusted + 5)

        warnings = []
        if score >= self.STRONG_CONFLUENCE:
            recommendation = "Strong confluence - reliable signal"
        elif score >= self.MODERATE_CONFLUENCE:
            recommendation = "Moderate confluence - proceed with caution"
        elif score >= self.WEAK_CONFLUENCE:
            recommendation = "Weak confluence - check higher timeframes"
            warnings.append("Mixed signals on other timeframes")
        else:
            recommendation = "Timeframes in conflict - wait for confirmation"
            warnings.append("Strong divergence between timeframes")

        if upper_disagrees:
            warnings.append(f"TF {upper_tf} points {upper.direction}")

        if primary.confidence > 75 and adjusted < 60:
            warnings.append("Confidence reduced by divergence with higher timeframes")

        logger.debug(
            f"Confluence {primary.timeframe}: score={score:.0f}, "
            f"confidence {primary.confidence:.0f} -> {adjusted:.0f}"
        )

        return ConfluenceResult(
            confluence_score=score,
            adjusted_confidence=round(adjusted),
            recommendation=recommendation,
            warnings=warnings,
            agreements=agreements,
            disagreements=disagreements,
        )

    def analyze_timeframes(
        self,
        timeframe: str,
        signals: Dict[str, TimeframeSignal],
    ) -> ConfluenceResult:
        """Pick the adjacent signals of `timeframe` out of `signals` and analyze."""
        primary = signals[timeframe]
        adjacent = [signals[tf] for tf in self.get_adjacent_timeframes(timeframe) if tf in signals]
        return self.analyze(primary, adjacent)
