"""
Tests for liquidation zone estimation.
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from analyzers.derivatives import DerivativesAnalyzer
from analyzers.liquidations import (
    METHOD_ATR,
    METHOD_FALLBACK,
    METHOD_REAL,
    LiquidationEvent,
    LiquidationZoneEstimator,
)
from signals.models import LONG, SHORT, Candle


def flat_candles(count=30, price=100.0, spread=0.5):
    return [
        Candle(timestamp=i, open=price, high=price + spread, low=price - spread, close=price, volume=1.0)
        for i in range(count)
    ]


@pytest.fixture
def estimator():
    """Create a LiquidationZoneEstimator instance for testing."""
    return LiquidationZoneEstimator()


class TestHeuristicPools:
    """Tests for ATR and fallback pools."""

    def test_atr_method(self, estimator):
        """ATR 1% on 1h puts pools 3% away with a 0.8% buffered stop."""
        pool = estimator.estimate(100.0, "BTC", "1h", candles=flat_candles())

        assert pool.method == METHOD_ATR
        assert pool.atr_value == pytest.approx(1.0)
        assert pool.long_pool.price == pytest.approx(97.0)
        assert pool.long_pool.distance_percent == pytest.approx(-3.0)
        assert pool.short_pool.price == pytest.approx(103.0)
        assert pool.suggested_stop_loss == pytest.approx(96.2)
        assert pool.short_stop_loss == pytest.approx(103.8)
        assert pool.heat_level == "cold"
        assert pool.risk_level == "low"

    def test_pools_bracket_price(self, estimator):
        """Long pool below price, short pool above, stops beyond the pools."""
        pool = estimator.estimate(100.0, "ETH", "15m", candles=flat_candles(spread=1.0))

        assert pool.long_pool.price < 100.0 < pool.short_pool.price
        assert pool.suggested_stop_loss < pool.long_pool.price
        assert pool.short_stop_loss > pool.short_pool.price
        assert pool.stop_loss_for(LONG) == pool.suggested_stop_loss
        assert pool.stop_loss_for(SHORT) == pool.short_stop_loss

    def test_fallback_without_candles(self, estimator):
        """Without enough candles the distance scales with volatility."""
        pool = estimator.estimate(100.0, "BTC", "1h", volatility=1.0)

        assert pool.method == METHOD_FALLBACK
        assert pool.atr_value is None
        assert pool.long_pool.distance_percent == pytest.approx(-2.75)
        assert pool.suggested_stop_loss == pytest.approx(96.75)

    def test_distance_clamped_and_hot(self, estimator):
        """Tiny ATR is clamped to half the base distance and reads hot."""
        pool = estimator.estimate(100.0, "BTC", "5m", candles=flat_candles(spread=0.1))

        assert pool.long_pool.distance_percent == pytest.approx(-0.5)
        assert pool.heat_level == "hot"
        assert pool.risk_level == "high"

    def test_derivatives_tighten_zones(self, estimator):
        """Extreme funding and OI buildup pull the pools closer."""
        derivatives = DerivativesAnalyzer().analyze(1e10, 12.0, 0.08)
        plain = estimator.estimate(100.0, "BTC", "1h", candles=flat_candles())
        tightened = estimator.estimate(100.0, "BTC", "1h", candles=flat_candles(), derivatives=derivatives)

        assert tightened.derivatives_multiplier == pytest.approx(0.85 * 0.9)
        assert abs(tightened.long_pool.distance_percent) < abs(plain.long_pool.distance_percent)

    def test_oi_flush_widens_zones(self, estimator):
        """A large OI drop widens the pools."""
        derivatives = DerivativesAnalyzer().analyze(1e10, -15.0, 0.0)
        multiplier, reason = estimator.derivatives_multiplier(derivatives)
        assert multiplier == pytest.approx(1.15)
        assert "OI" in reason

    def test_invalid_price(self, estimator):
        """A non-positive price yields no pool."""
        assert estimator.estimate(0, "BTC", "1h") is None

    @pytest.mark.parametrize("timeframe,expected", [
        ("1m", (1.5, 1.0, 0.3)),
        ("1d", (4.0, 3.5, 1.0)),
        ("2h", (3.0, 2.5, 0.8)),
    ])
    def test_timeframe_config_fallbacks(self, estimator, timeframe, expected):
        """Unsupported timeframes map onto configured ones."""
        assert estimator.timeframe_config(timeframe) == expected

    def test_liquidity_estimate(self, estimator):
        """Closer pools hold more liquidity; shorts are discounted."""
        near = estimator.estimate_liquidity("BTC", 1.0)
        far = estimator.estimate_liquidity("BTC", 5.0)
        assert near == pytest.approx(70.0)
        assert far == pytest.approx(30.0)
        assert estimator.estimate_liquidity("BTC", 1.0, short_side=True) == pytest.approx(56.0)
        assert estimator.format_liquidity(near) == "~$70M"


class TestRealClusters:
    """Tests for clustering real liquidation events."""

    @pytest.fixture
    def events(self):
        """Critical long cluster below, high short cluster above 60000."""
        return [
            LiquidationEvent(58990, 70_000_000, "long", 1.0, 25),
            LiquidationEvent(59010, 50_000_000, "long", 2.0, 25),
            LiquidationEvent(61500, 60_000_000, "short", 3.0, 50),
            LiquidationEvent(70000, 500_000_000, "short", 4.0, 10),
        ]

    def test_cluster_aggregation(self, estimator, events):
        """Events are bucketed by price step and sorted by volume."""
        clusters = estimator.cluster_liquidations(events, 100)

        assert [c.total_volume for c in clusters] == [500_000_000, 120_000_000, 60_000_000]
        long_cluster = clusters[1]
        assert long_cluster.min_price == 58990
        assert long_cluster.max_price == 59010
        assert long_cluster.avg_price == pytest.approx(59000)
        assert long_cluster.dominant_side == "long"
        assert long_cluster.significance == "critical"
        assert long_cluster.leverage_profile == "medium"
        assert clusters[2].significance == "high"
        assert clusters[2].leverage_profile == "high"

    def test_nearby_clusters(self, estimator, events):
        """Only clusters within 5% count, nearest first on each side."""
        clusters = estimator.cluster_liquidations(events, 100)
        above, below = estimator.find_nearby_clusters(clusters, 60000)

        assert [c.avg_price for c in above] == [61500]
        assert [round(c.avg_price) for c in below] == [59000]

    def test_real_method(self, estimator, events):
        """Nearby clusters switch the method and drive the pools and stops."""
        pool = estimator.estimate(60000, "BTC", "1h", events=events)

        assert pool.method == METHOD_REAL
        assert pool.long_pool.price == pytest.approx(59000)
        assert pool.long_pool.volume_usd == 120_000_000
        assert pool.short_pool.price == 61500
        assert pool.suggested_stop_loss == pytest.approx(58990 * 0.995)
        assert pool.short_stop_loss == pytest.approx(61500 * 1.005)
        assert len(pool.clusters) == 3

    def test_distant_events_keep_heuristics(self, estimator):
        """Clusters outside the lookout window do not change the method."""
        events = [LiquidationEvent(90000, 200_000_000, "short", 1.0)]
        pool = estimator.estimate(60000, "BTC", "1h", events=events)
        assert pool.method == METHOD_FALLBACK

    def test_smart_stop_without_significant_cluster(self, estimator):
        """Low-volume clusters fall back to the standard 2.5% stop."""
        clusters = estimator.cluster_liquidations([LiquidationEvent(59500, 1_000_000, "long", 1.0)], 100)
        price, distance, reason = estimator.calculate_smart_stop_loss(LONG, 60000, clusters)

        assert price == pytest.approx(58500)
        assert distance == 2.5
        assert "Standard" in reason


class TestLiquidationScore:
    """Tests for get_score."""

    def test_no_pool(self, estimator):
        """No pool, no bias."""
        assert estimator.get_score(None) == 0.0

    def test_close_short_pool_is_bullish(self, estimator):
        """A large short pool just above price pulls the score up."""
        events = [
            LiquidationEvent(60300, 200_000_000, "short", 1.0),
            LiquidationEvent(57500, 20_000_000, "long", 1.0),
        ]
        pool = estimator.estimate(60000, "BTC", "1h", events=events)
        score = estimator.get_score(pool)

        assert 0 < score <= 12
        assert pool.suggested_stop_loss == pytest.approx(58500)

    def test_score_bounded(self, estimator):
        """The score stays within [-12, 12]."""
        for spread in (0.05, 0.5, 3.0):
            pool = estimator.estimate(100.0, "BTC", "5m", candles=flat_candles(spread=spread))
            assert -12 <= estimator.get_score(pool) <= 12
