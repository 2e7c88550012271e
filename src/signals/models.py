"""
Signal data models.

Plain dataclasses exchanged between the indicator, signal and recommendation
engines and handed to whatever presents them.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

LONG = "LONG"
SHORT = "SHORT"
NEUTRAL = "NEUTRAL"
DIRECTIONS = (LONG, SHORT, NEUTRAL)


@dataclass(frozen=True)
class Candle:
    """
    OHLCV candle. Immutable once fetched; series are ordered by timestamp.

    Attributes:
        timestamp: Open time in milliseconds
        open: Open price
        high: High price
        low: Low price
        close: Close price
        volume: Base asset volume
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class SignalFactor:
    """
    One explainable contribution to a signal.

    weight is the number of points the factor added to the bullish or bearish
    score; context-only factors carry 0.
    """

    label: str
    positive: bool
    weight: float = 0.0


@dataclass
class SignalResult:
    """Raw direction/confidence output of the factor scoring."""

    direction: str
    confidence: float
    factors: List[SignalFactor]
    bullish_score: float
    bearish_score: float


@dataclass
class IntradaySignal:
    """
    Directional intraday signal with levels.

    Attributes:
        asset: Asset symbol (BTC, ETH, BNB)
        timeframe: Candle timeframe the signal was built on
        direction: LONG, SHORT or NEUTRAL
        confidence: Confidence 0-100 after confluence adjustment
        entry_price: Entry price (current price)
        stop_loss: Stop-loss price
        take_profit_1: First target (1R)
        take_profit_2: Second target (1.5R)
        take_profit_3: Third target (2R)
        risk_reward_ratio: distance(TP2) / distance(stop)
        factors: Factors sorted by weight, top 6
        confluence_score: Multi-timeframe confluence 0-100
        adjacent_signals: Direction per adjacent timeframe
        warnings: Human-readable warnings
    """

    asset: str
    timeframe: str
    direction: str
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float
    take_profit_3: float
    risk_reward_ratio: float
    factors: List[SignalFactor] = field(default_factory=list)
    confluence_score: Optional[float] = None
    adjacent_signals: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def take_profits(self) -> List[float]:
        return [self.take_profit_1, self.take_profit_2, self.take_profit_3]


@dataclass
class SignalScore:
    """Signal ranked across asset x timeframe combinations."""

    asset: str
    timeframe: str
    direction: str
    confidence: float
    confluence_score: float
    total_score: int = 0
    rank: int = 0


@dataclass
class StopLoss:
    price: float
    distance_percent: float


@dataclass
class TakeProfit:
    level: int
    price: float
    distance_percent: float
    exit_percent: int


@dataclass
class LeverageRecommendation:
    suggested: int
    min: int
    max: int
    reason: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class TradeSetup:
    """Concrete trade plan derived from a ranked signal."""

    signal: SignalScore
    entry: float
    stop_loss: StopLoss
    take_profits: List[TakeProfit]
    leverage: LeverageRecommendation
    risk_reward: float
    estimated_duration: str
