"""
Tests for the scalping gate engine.
"""

import os
import sys

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from analyzers.derivatives import DerivativesAnalyzer
from signals.indicators import MACD, RSI, IndicatorSnapshot
from signals.models import LONG, SHORT
from signals.scalping import ScalpingGateEngine


def make_snapshot(direction=LONG, rsi=55.0, histogram=0.5, volume_ratio=1.2, atr=0.2, crossed=True):
    sign = 1 if direction == LONG else -1
    fast = [100 - sign] * 4 + [100 + sign] if crossed else [100 + sign] * 5
    return IndicatorSnapshot(
        current_price=100.0,
        emas={9: 100.0 + sign, 21: 100.0},
        ema_series={9: np.array(fast, dtype=float), 21: np.full(5, 100.0)},
        rsi=RSI(rsi) if rsi is not None else None,
        macd=MACD(histogram, 0.0, histogram),
        obv=None,
        volume_ratio=volume_ratio,
        volatility=0.2,
        atr=atr,
    )


def higher(direction=LONG):
    sign = 1 if direction == LONG else -1
    return IndicatorSnapshot(
        current_price=100.0,
        emas={9: 100.0 + sign, 21: 100.0},
        ema_series={},
        rsi=None,
        macd=None,
        obv=None,
        volume_ratio=None,
        volatility=0.5,
        atr=None,
    )


@pytest.fixture
def engine():
    """Create a ScalpingGateEngine instance for testing."""
    return ScalpingGateEngine()


class TestScalpingGates:
    """Tests for gate evaluation."""

    def test_all_gates_pass_long(self, engine):
        """Fresh bullish cross with every confirmation passes all eight gates."""
        signal = engine.evaluate("BTC", "5m", make_snapshot(), higher_snapshot=higher())

        assert signal.direction == LONG
        assert signal.critical_pass
        assert signal.critical_passed == 4
        assert signal.confirmatory_passed == 4
        assert signal.confidence == 97
        assert signal.stop_loss == pytest.approx(99.8)
        assert [signal.take_profit_1, signal.take_profit_2, signal.take_profit_3] == pytest.approx(
            [100.2, 100.4, 100.6]
        )
        assert signal.risk_reward == 2.0
        assert signal.time_limit == "15-30 min"

    def test_all_gates_pass_short(self, engine):
        """Mirror case for SHORT."""
        snapshot = make_snapshot(SHORT, rsi=45.0, histogram=-0.5)
        signal = engine.evaluate("ETH", "1m", snapshot, higher_snapshot=higher(SHORT))

        assert signal.direction == SHORT
        assert signal.critical_pass
        assert signal.stop_loss > signal.entry > signal.take_profit_1
        assert signal.time_limit == "5-15 min"

    def test_higher_timeframe_contradicts(self, engine):
        """One failed critical gate blocks the entry and scales confidence down."""
        signal = engine.evaluate("BTC", "5m", make_snapshot(), higher_snapshot=higher(SHORT))

        assert not signal.critical_pass
        assert signal.critical_passed == 3
        assert signal.confidence == 30
        failed = [g.name for g in signal.gates if not g.passed]
        assert failed == ["Higher TF"]

    def test_missing_higher_timeframe(self, engine):
        """Without higher timeframe data the gate fails."""
        signal = engine.evaluate("BTC", "15m", make_snapshot())
        gate = next(g for g in signal.gates if g.name == "Higher TF")
        assert not gate.passed
        assert signal.time_limit == "30-60 min"

    def test_no_cross_uses_ema_side(self, engine):
        """Without a cross the EMA side sets the direction but the cross gate fails."""
        signal = engine.evaluate("BTC", "5m", make_snapshot(crossed=False), higher_snapshot=higher())
        assert signal.direction == LONG
        assert not signal.critical_pass
        assert next(g for g in signal.gates if g.name == "EMA Cross").passed is False

    def test_direction_unknown(self, engine):
        """No EMAs means no direction and no entry."""
        snapshot = IndicatorSnapshot(
            current_price=100.0, emas={}, ema_series={}, rsi=None, macd=None, obv=None,
            volume_ratio=1.0, volatility=0.1, atr=None,
        )
        signal = engine.evaluate("BNB", "5m", snapshot)
        assert signal.direction is None
        assert not signal.critical_pass
        assert signal.confidence == 0
        assert len(signal.gates) == 8

    def test_low_volume_gate(self, engine):
        """Volume at or below 0.8x fails."""
        assert not engine.volume_gate(0.8).passed
        assert engine.volume_gate(0.81).passed
        assert not engine.volume_gate(None).passed

    def test_rsi_gate_ranges(self, engine):
        """LONG accepts 40-70, SHORT 30-60."""
        assert engine.rsi_gate(make_snapshot(rsi=70.0), LONG).passed
        assert not engine.rsi_gate(make_snapshot(rsi=75.0), LONG).passed
        assert engine.rsi_gate(make_snapshot(rsi=30.0), SHORT).passed
        assert not engine.rsi_gate(make_snapshot(rsi=None), LONG).passed

    def test_volatility_gate(self, engine):
        """ATR between 0.05% and 2.5% passes."""
        assert engine.volatility_gate(0.2).passed
        assert "too low" in engine.volatility_gate(0.01).reason
        assert "Extreme" in engine.volatility_gate(3.0).reason

    def test_funding_gate(self, engine):
        """Extreme funding fails; missing data passes as neutral."""
        analyzer = DerivativesAnalyzer()
        assert not engine.funding_gate(analyzer.analyze(1e10, 0, 0.08)).passed
        assert engine.funding_gate(analyzer.analyze(1e10, 0, 0.01)).passed
        assert engine.funding_gate(None).passed


class TestScalpingLeverage:
    """Tests for suggest_leverage."""

    def test_calm_market_all_gates(self, engine):
        """ATR 0.2% with every gate passed allows 16x."""
        assert engine.suggest_leverage(4, 4, 4, 4, 0.2) == (16, 19)

    def test_high_volatility(self, engine):
        """Volatile markets fall back to 8x."""
        assert engine.suggest_leverage(4, 4, 4, 4, 2.0) == (8, 10)

    def test_partial_gates_reduce_leverage(self, engine):
        """Critical gates weigh 70%, confirmatory 30%."""
        suggested, maximum = engine.suggest_leverage(4, 4, 0, 4, 0.05)
        assert suggested == 14
        assert maximum == 20

    def test_never_above_hard_max(self, engine):
        """Leverage is capped at 20x."""
        for atr_percent in (0.01, 0.2, 0.4, 0.8, 1.2, 3.0):
            suggested, maximum = engine.suggest_leverage(4, 4, 4, 4, atr_percent)
            assert 1 <= suggested <= maximum <= 20
