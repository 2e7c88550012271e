"""
Tests for support/resistance detection and level smoothing.
"""

import itertools
import os
import random
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from analyzers.level_smoothing import LevelHistory, LevelSmoother
from analyzers.levels import RESISTANCE, SUPPORT, LevelDetector, SupportResistanceLevel
from signals.models import Candle


def make_candles(closes, spread=1.0):
    return [
        Candle(timestamp=i, open=c, high=c + spread, low=c - spread, close=c, volume=10.0)
        for i, c in enumerate(closes)
    ]


def make_level(price, current_price=60000.0):
    return SupportResistanceLevel(
        price=price,
        kind="ema",
        label="EMA(55)",
        timeframe_tag="1d",
        strength="high",
        score=90,
        distance_percent=(price - current_price) / current_price * 100,
    )


def assert_no_near_duplicates(levels, threshold=0.005):
    for a, b in itertools.combinations(levels, 2):
        assert abs(a.price - b.price) / max(a.price, b.price) > threshold


class TestLevelDetector:
    """Tests for LevelDetector."""

    @pytest.fixture
    def detector(self):
        """Create a detector instance."""
        return LevelDetector()

    def test_supports_below_price(self, detector):
        """Only EMAs below price become supports."""
        emas = {25: 98.0, 55: 95.0, 99: 102.0, 200: 90.0}
        supports = detector.detect_supports(100.0, emas)

        assert {l.label for l in supports} == {"EMA(25)", "EMA(55)", "EMA(200)"}
        assert all(l.price < 100 for l in supports)
        assert all(l.distance_percent < 0 for l in supports)

    def test_support_scores(self, detector):
        """Supports 2-5% away score best; EMA200 gets a bonus."""
        emas = {25: 99.0, 55: 97.0, 99: 93.0, 200: 90.0}
        supports = {l.label: l for l in detector.detect_supports(100.0, emas)}

        assert supports["EMA(55)"].score == 95
        assert supports["EMA(25)"].score == 75
        assert supports["EMA(99)"].score == 85
        assert supports["EMA(200)"].score == 80

    def test_supports_sorted_by_score(self, detector):
        """Highest score first."""
        emas = {25: 99.0, 55: 97.0, 99: 93.0, 200: 90.0}
        scores = [l.score for l in detector.detect_supports(100.0, emas)]
        assert scores == sorted(scores, reverse=True)

    def test_support_distance_filter(self, detector):
        """Supports further than 15% are dropped."""
        supports = detector.detect_supports(100.0, {25: 84.0, 55: 90.0})
        assert [l.price for l in supports] == [90.0]

    def test_deduplicates_close_levels(self, detector):
        """Levels within 0.5% of each other collapse to one."""
        emas = {25: 98.0, 55: 97.8, 99: 95.0, 200: 90.0}
        supports = detector.detect_supports(100.0, emas)

        prices = sorted(l.price for l in supports)
        assert prices == [90.0, 95.0, 98.0]
        assert_no_near_duplicates(supports)

    def test_dedup_invariant_random(self, detector):
        """No two returned levels are ever within 0.5% of each other."""
        rng = random.Random(7)
        for _ in range(50):
            price = 60000.0
            emas = {p: price * rng.uniform(0.85, 1.2) for p in (25, 55, 99, 200)}
            closes = [price * rng.uniform(0.9, 1.1) for _ in range(120)]
            candles = make_candles(closes, spread=price * 0.002)

            supports = detector.detect_supports(price, emas, candles, model_floor=price * 0.9, max_levels=7)
            resistances = detector.detect_resistances(price, emas, candles, model_ceiling=price * 1.1, max_levels=7)

            assert_no_near_duplicates(supports)
            assert_no_near_duplicates(resistances)
            assert all(l.price < price for l in supports)
            assert all(l.price > price for l in resistances)

    def test_resistances_sorted_by_price(self, detector):
        """Resistances are returned nearest first."""
        emas = {25: 110.0, 55: 104.0, 99: 107.0, 200: 95.0}
        resistances = detector.detect_resistances(100.0, emas)
        assert [l.price for l in resistances] == [104.0, 107.0, 110.0]

    def test_resistance_distance_filter(self, detector):
        """Resistances 20% or more away are dropped, including the price-based Fibonacci."""
        resistances = detector.detect_resistances(100.0, {25: 125.0, 55: 110.0})
        assert [l.price for l in resistances] == [110.0]

    def test_fibonacci_from_swing(self, detector):
        """With candles the extension uses the swing range."""
        candles = make_candles([100.0, 110.0], spread=0.0)
        assert detector.fibonacci_extension(105.0, candles) == pytest.approx(100 + 1.618 * 10)

    def test_fibonacci_without_candles(self, detector):
        """Without candles the extension is price-based and capped by the model ceiling."""
        assert detector.fibonacci_extension(100.0) == pytest.approx(161.8)
        assert detector.fibonacci_extension(100.0, model_ceiling=150.0) is None

    def test_model_bands(self, detector):
        """Power law floor and ceiling become levels when near price."""
        supports = detector.detect_supports(100.0, {}, model_floor=92.0)
        resistances = detector.detect_resistances(100.0, {}, model_ceiling=112.0)
        assert supports[0].kind == "model"
        assert any(l.kind == "model" for l in resistances)

    def test_pivot_levels(self, detector):
        """Swing lows below price become pivot supports with touch counts."""
        closes = [100, 99, 97, 99, 100, 101, 102, 101, 100, 101, 102, 103]
        supports = detector.detect_supports(103.0, {}, make_candles(closes, spread=0.5))
        pivots = [l for l in supports if l.kind == "pivot"]
        assert pivots
        assert pivots[0].touches >= 1

    def test_max_levels_cap(self, detector):
        """The output cap is clamped to 1..7."""
        emas = {25: 98.0, 55: 95.0, 99: 92.0, 200: 89.0}
        assert len(detector.detect_supports(100.0, emas, max_levels=0)) == 1
        assert len(detector.detect_supports(100.0, emas, max_levels=2)) == 2

    def test_invalid_price(self, detector):
        """A non-positive price returns no levels."""
        assert detector.detect_supports(0, {25: 1.0}) == []
        assert detector.detect_resistances(-1, {25: 1.0}) == []

    def test_get_score(self, detector):
        """Nearer support than resistance gives a positive bias."""
        supports = [make_level(99.0, 100.0)]
        resistances = [make_level(103.0, 100.0)]
        assert detector.get_score(supports, resistances) == pytest.approx(5.0)
        assert detector.get_score(resistances, supports) == pytest.approx(-5.0)
        assert detector.get_score([], resistances) == 0.0


class TestLevelSmoother:
    """Tests for LevelSmoother."""

    @pytest.fixture
    def smoother(self):
        """Create a smoother with fresh history."""
        return LevelSmoother(LevelHistory())

    def test_passthrough_until_three_cycles(self, smoother):
        """Fewer than three cycles return the input unchanged."""
        first = smoother.smooth([make_level(60000.0)], SUPPORT, 60000.0)
        second = smoother.smooth([make_level(61000.0)], SUPPORT, 60000.0)
        assert first[0].price == 60000.0
        assert second[0].price == 61000.0

    def test_identical_level_five_cycles(self, smoother):
        """Five cycles at exactly 60000 output exactly 60000."""
        result = None
        for _ in range(5):
            result = smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        assert result[0].price == 60000.0

    def test_converges_to_repeated_input(self, smoother):
        """A level fed repeatedly converges to its raw price."""
        smoother.smooth([make_level(60500.0)], SUPPORT, 62000.0)
        result = None
        for _ in range(50):
            result = smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        assert result[0].price == pytest.approx(60000.0, abs=0.01)

    def test_averages_with_history(self, smoother):
        """Matching prices from recent cycles are averaged in."""
        smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        smoother.smooth([make_level(60300.0)], SUPPORT, 72000.0)
        result = smoother.smooth([make_level(60600.0)], SUPPORT, 62000.0)
        # Price moved more than 2% since the last cycle: plain average, no EMA
        assert result[0].price == pytest.approx(60300.0)

    def test_ema_when_price_stable(self, smoother):
        """With a stable price the previous smoothed value weighs 70%."""
        smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        result = smoother.smooth([make_level(60900.0)], SUPPORT, 62000.0)
        average = (60000.0 + 60000.0 + 60900.0) / 3
        assert result[0].price == pytest.approx(round(0.7 * 60000.0 + 0.3 * average, 2))

    def test_categories_are_independent(self, smoother):
        """Support history does not leak into resistances."""
        for _ in range(3):
            smoother.smooth([make_level(60000.0)], SUPPORT, 61000.0)
        result = smoother.smooth([make_level(62000.0)], RESISTANCE, 61000.0)
        assert result[0].price == 62000.0

    def test_removes_duplicates_after_smoothing(self, smoother):
        """Levels within 1% after smoothing are collapsed."""
        levels = [make_level(60000.0), make_level(60300.0)]
        result = None
        for _ in range(3):
            result = smoother.smooth(levels, SUPPORT, 61000.0)
        assert len(result) == 1

    def test_input_not_mutated(self, smoother):
        """Smoothing returns copies."""
        for _ in range(2):
            smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        level = make_level(60900.0)
        result = smoother.smooth([level], SUPPORT, 62000.0)
        assert level.price == 60900.0
        assert result[0] is not level

    def test_distance_recomputed(self, smoother):
        """Smoothed levels carry the distance of the smoothed price."""
        for _ in range(3):
            result = smoother.smooth([make_level(60000.0, 62000.0)], SUPPORT, 62000.0)
        assert result[0].distance_percent == pytest.approx((60000.0 - 62000.0) / 62000.0 * 100)

    def test_support_never_smoothed_above_price(self, smoother):
        """A support dragged above a falling price falls back to its raw value."""
        for _ in range(3):
            smoother.smooth([make_level(59500.0)], SUPPORT, 60000.0)
        result = smoother.smooth([make_level(58500.0, 59000.0)], SUPPORT, 59000.0)

        assert len(result) == 1
        assert result[0].price == 58500.0
        assert result[0].price < 59000.0
        assert result[0].distance_percent == pytest.approx((58500.0 - 59000.0) / 59000.0 * 100)

    def test_resistance_never_smoothed_below_price(self, smoother):
        """Mirror case for resistances under a rising price."""
        for _ in range(3):
            smoother.smooth([make_level(60500.0)], RESISTANCE, 60000.0)
        result = smoother.smooth([make_level(61500.0, 61000.0)], RESISTANCE, 61000.0)

        assert result[0].price == 61500.0
        assert result[0].distance_percent > 0

    def test_wrong_side_raw_level_dropped(self, smoother):
        """A level already on the wrong side of the price is discarded."""
        for _ in range(3):
            result = smoother.smooth([make_level(59000.0), make_level(60500.0)], SUPPORT, 60000.0)
        assert [level.price for level in result] == [59000.0]

    def test_reset(self, smoother):
        """Reset forgets all history."""
        for _ in range(3):
            smoother.smooth([make_level(60000.0)], SUPPORT, 62000.0)
        smoother.history.reset()
        result = smoother.smooth([make_level(61000.0)], SUPPORT, 62000.0)
        assert result[0].price == 61000.0
