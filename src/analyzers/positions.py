"""
Position Analyzer - risk and tactical management of user-declared positions.

- parse_position: validates raw user input (raises ValueError)
- build_open_position: prices a position (size, value, PnL)
- calculate_personal_liquidation: liquidation price from leverage and maintenance margin
- PositionAnalyzer.analyze_open_position: risk level, recommendation, reasoning
  and tactical actions
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional

from analyzers.base import BaseAnalyzer
from analyzers.liquidations import LiquidationPool
from signals.models import LONG, SHORT, IntradaySignal

MAX_LEVERAGE = 125

MAINTENANCE_MARGIN_RATES = {
    "BTC": 0.004,
    "ETH": 0.005,
    "BNB": 0.01,
}
DEFAULT_MAINTENANCE_MARGIN_RATE = 0.01

# Recommendations
HOLD = "HOLD"
REDUCE = "REDUCE"
DCA = "DCA"
EXIT = "EXIT"
FLIP = "FLIP"

# Tactical action types
PARTIAL_CLOSE = "PARTIAL_CLOSE"
DCA_BUY = "DCA_BUY"
SCALP_SELL = "SCALP_SELL"
FULL_EXIT = "FULL_EXIT"

URGENCY_ORDER = {"low": 1, "medium": 2, "high": 3, "critical": 4}


@dataclass
class OpenPosition:
    """
    User-declared position plus live derived values.

    Size only changes through explicit partial closes (closed_size) and DCA
    fills (added_size).
    """

    asset: str
    direction: str
    entry_price: float
    size: float
    leverage: float
    closed_size: float = 0.0
    added_size: float = 0.0

    # Derived by build_open_position
    current_price: float = 0.0
    current_size: float = 0.0
    position_value_usdt: float = 0.0
    pnl_usdt: float = 0.0
    pnl_percent: float = 0.0

    @property
    def sign(self) -> int:
        return 1 if self.direction == LONG else -1

    def to_dict(self) -> Dict:
        """Declared fields only, for persistence."""
        return {
            "asset": self.asset,
            "direction": self.direction,
            "entry_price": self.entry_price,
            "size": self.size,
            "leverage": self.leverage,
            "closed_size": self.closed_size,
            "added_size": self.added_size,
        }


@dataclass
class ExpectedEffect:
    risk_reduction: str
    new_avg_entry: Optional[float] = None
    new_pnl: Optional[float] = None


@dataclass
class TacticalAction:
    type: str
    urgency: str
    trigger_price: float
    amount: float
    amount_percent: float
    reason: str
    expected_effect: ExpectedEffect


@dataclass
class RiskAssessment:
    nearby_liquidation_zone: Optional[float]
    distance_to_liquidation: float
    liquidation_price: float
    risk_level: str  # safe / moderate / high / critical


@dataclass
class PositionAnalysis:
    position: OpenPosition
    risk_assessment: RiskAssessment
    recommendation: str
    reasoning: List[str] = field(default_factory=list)
    tactical_actions: List[TacticalAction] = field(default_factory=list)
    urgency: str = "low"
    signal_agrees: Optional[bool] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def _positive_number(raw: Dict[str, Any], key: str) -> float:
    value = raw.get(key)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if number != number or number <= 0:
        raise ValueError(f"{key} must be positive, got {value!r}")
    return number


def _non_negative_number(raw: Dict[str, Any], key: str) -> float:
    value = raw.get(key, 0) or 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if number < 0:
        raise ValueError(f"{key} cannot be negative, got {value!r}")
    return number


def parse_position(raw: Dict[str, Any]) -> OpenPosition:
    """
    Validate user input into an (unpriced) OpenPosition.

    Args:
        raw: Dict with asset, direction, entry_price, size, leverage and
            optional closed_size / added_size

    Returns:
        OpenPosition

    Raises:
        ValueError: On unknown asset/direction, non-numeric or non-positive
            values, leverage above 125 or a fully closed position
    """
    asset = str(raw.get("asset", "")).upper()
    if asset not in MAINTENANCE_MARGIN_RATES:
        raise ValueError(f"Unsupported asset: {raw.get('asset')!r}")

    direction = str(raw.get("direction", "")).upper()
    if direction not in (LONG, SHORT):
        raise ValueError(f"Direction must be LONG or SHORT, got {raw.get('direction')!r}")

    entry_price = _positive_number(raw, "entry_price")
    size = _positive_number(raw, "size")
    leverage = _positive_number(raw, "leverage")
    if leverage > MAX_LEVERAGE:
        raise ValueError(f"Leverage {leverage} exceeds the {MAX_LEVERAGE}x maximum")

    closed_size = _non_negative_number(raw, "closed_size")
    added_size = _non_negative_number(raw, "added_size")
    if size - closed_size + added_size <= 0:
        raise ValueError("Position is fully closed")

    return OpenPosition(
        asset=asset,
        direction=direction,
        entry_price=entry_price,
        size=size,
        leverage=leverage,
        closed_size=closed_size,
        added_size=added_size,
        current_size=size - closed_size + added_size,
    )


def build_open_position(position: OpenPosition, current_price: float) -> OpenPosition:
    """
    Price a position at the live price. The input is not modified.

    Raises:
        ValueError: If current_price is not positive
    """
    if not current_price or current_price <= 0:
        raise ValueError(f"Invalid current price: {current_price!r}")

    current_size = position.size - position.closed_size + position.added_size
    pnl_usdt = (current_price - position.entry_price) * current_size * position.sign
    margin = position.entry_price * current_size / position.leverage
    pnl_percent = pnl_usdt / margin * 100 if margin > 0 else 0.0

    return replace(
        position,
        current_price=current_price,
        current_size=current_size,
        position_value_usdt=current_size * current_price,
        pnl_usdt=pnl_usdt,
        pnl_percent=pnl_percent,
    )


def get_maintenance_margin_rate(asset: str) -> float:
    """Exchange maintenance margin rate for an asset."""
    return MAINTENANCE_MARGIN_RATES.get(asset.upper(), DEFAULT_MAINTENANCE_MARGIN_RATE)


def calculate_personal_liquidation(entry_price: float, leverage: float, direction: str, asset: str) -> float:
    """Liquidation price: entry * (1 -/+ (1/leverage - maintenance margin rate))."""
    margin = max(0.0, 1 / leverage - get_maintenance_margin_rate(asset))
    if direction == SHORT:
        return entry_price * (1 + margin)
    return entry_price * (1 - margin)


class PositionAnalyzer(BaseAnalyzer):
    """Risk assessment and tactical actions for an open position."""

    # Distance to liquidation, percent
    SAFE_DISTANCE = 25
    MODERATE_DISTANCE = 15
    CRITICAL_DISTANCE = 10

    # PnL thresholds, percent of margin
    REDUCE_LOSS = -10
    HIGH_URGENCY_LOSS = -15
    EXIT_LOSS = -20
    TAKE_PROFIT_GAIN = 5

    DCA_CONFIDENCE = 70
    FLIP_CONFIDENCE = 85

    PARTIAL_CLOSE_PERCENT = 25
    PROFIT_CLOSE_PERCENT = 30
    DCA_PERCENT = 15
    SCALP_PERCENT = 8

    DCA_POOL_OFFSET = 0.015
    SCALP_MOVE = 0.015
    REBUY_OFFSET = 0.02
    HIGH_VOLATILITY = 2.0

    def risk_level(self, distance: float) -> str:
        if distance >= self.SAFE_DISTANCE:
            return "safe"
        if distance >= self.MODERATE_DISTANCE:
            return "moderate"
        if distance >= self.CRITICAL_DISTANCE:
            return "high"
        return "critical"

    def _actions(
        self,
        position: OpenPosition,
        signal: Optional[IntradaySignal],
        pool: Optional[LiquidationPool],
        agrees: bool,
        disagrees: bool,
        liquidation_price: float,
    ) -> List[TacticalAction]:
        actions = []
        price = position.current_price
        pnl = position.pnl_percent

        if pnl < self.REDUCE_LOSS and disagrees:
            actions.append(TacticalAction(
                type=PARTIAL_CLOSE,
                urgency="high" if pnl < self.HIGH_URGENCY_LOSS else "medium",
                trigger_price=price,
                amount=position.current_size * self.PARTIAL_CLOSE_PERCENT / 100,
                amount_percent=self.PARTIAL_CLOSE_PERCENT,
                reason="Reduce risk: position in loss and the signal turned against it",
                expected_effect=ExpectedEffect(
                    risk_reduction=f"Cuts exposure by {self.PARTIAL_CLOSE_PERCENT}%",
                    new_pnl=position.pnl_usdt * (1 - self.PARTIAL_CLOSE_PERCENT / 100),
                ),
            ))

        if pnl < self.EXIT_LOSS and disagrees:
            actions.append(self._full_exit(position, "Critical loss with the signal against the position"))

        if pnl < 0 and agrees and signal.confidence > self.DCA_CONFIDENCE and pool is not None:
            pool_price = pool.long_pool.price if position.direction == LONG else pool.short_pool.price
            dca_price = pool_price * (1 + position.sign * self.DCA_POOL_OFFSET)
            dca_distance = abs(dca_price - price) / price * 100
            beyond_liquidation = (dca_price - liquidation_price) * position.sign <= 0
            if 1 < dca_distance < 5 and not beyond_liquidation:
                amount = position.current_size * self.DCA_PERCENT / 100
                new_avg = (position.entry_price * position.current_size + dca_price * amount) / (
                    position.current_size + amount
                )
                actions.append(TacticalAction(
                    type=DCA_BUY,
                    urgency="medium",
                    trigger_price=dca_price,
                    amount=amount,
                    amount_percent=self.DCA_PERCENT,
                    reason=f"DCA near the liquidation pool at {pool_price:.2f} to improve the average entry",
                    expected_effect=ExpectedEffect(
                        risk_reduction=f"Entry {position.entry_price:.2f} -> {new_avg:.2f}",
                        new_avg_entry=new_avg,
                    ),
                ))

        if self.HIGH_URGENCY_LOSS < pnl < 0:
            actions.extend(self._scalp_actions(position))

        if pnl > self.TAKE_PROFIT_GAIN:
            actions.append(TacticalAction(
                type=PARTIAL_CLOSE,
                urgency="low",
                trigger_price=price,
                amount=position.current_size * self.PROFIT_CLOSE_PERCENT / 100,
                amount_percent=self.PROFIT_CLOSE_PERCENT,
                reason="Secure partial profits",
                expected_effect=ExpectedEffect(
                    risk_reduction=f"Locks in {self.PROFIT_CLOSE_PERCENT}% of the gain",
                    new_pnl=position.pnl_usdt * (1 - self.PROFIT_CLOSE_PERCENT / 100),
                ),
            ))

        actions.sort(key=lambda a: URGENCY_ORDER[a.urgency], reverse=True)
        return actions

    def _scalp_actions(self, position: OpenPosition) -> List[TacticalAction]:
        """Trim on a minor counter move that does not reach entry, then re-add."""
        price = position.current_price
        target = price * (1 + position.sign * self.SCALP_MOVE)
        if (position.entry_price - target) * position.sign <= 0:
            return []

        amount = position.current_size * self.SCALP_PERCENT / 100
        actions = [TacticalAction(
            type=SCALP_SELL,
            urgency="low",
            trigger_price=target,
            amount=amount,
            amount_percent=self.SCALP_PERCENT,
            reason="Trim on a minor rally and re-add lower to improve the average",
            expected_effect=ExpectedEffect(risk_reduction="Frees margin to re-add 1-2% better"),
        )]

        if position.direction == LONG:
            rebuy = target * (1 - self.REBUY_OFFSET)
            rebuy_amount = amount * 1.1
            remaining = position.current_size - amount
            new_avg = (position.entry_price * remaining + rebuy * rebuy_amount) / (remaining + rebuy_amount)
            actions.append(TacticalAction(
                type=DCA_BUY,
                urgency="low",
                trigger_price=rebuy,
                amount=rebuy_amount,
                amount_percent=round(self.SCALP_PERCENT * 1.1),
                reason=f"Rebuy after the rally at {rebuy:.2f}",
                expected_effect=ExpectedEffect(
                    risk_reduction="Slightly lowers the average entry",
                    new_avg_entry=new_avg,
                ),
            ))
        return actions

    @staticmethod
    def _full_exit(position: OpenPosition, reason: str) -> TacticalAction:
        return TacticalAction(
            type=FULL_EXIT,
            urgency="critical",
            trigger_price=position.current_price,
            amount=position.current_size,
            amount_percent=100,
            reason=reason,
            expected_effect=ExpectedEffect(risk_reduction="Removes the risk completely"),
        )

    def _recommendation(self, position: OpenPosition, risk_level: str, agrees: bool,
                        disagrees: bool, confidence: float) -> str:
        if risk_level == "critical" or position.pnl_percent < self.EXIT_LOSS:
            return EXIT
        if disagrees and position.pnl_percent < self.REDUCE_LOSS:
            return REDUCE
        if disagrees and confidence > self.FLIP_CONFIDENCE:
            return FLIP
        if agrees and confidence > self.DCA_CONFIDENCE and position.pnl_percent < 0:
            return DCA
        return HOLD

    def _reasoning(
        self,
        position: OpenPosition,
        signal: Optional[IntradaySignal],
        agrees: bool,
        risk: RiskAssessment,
        pool: Optional[LiquidationPool],
        volatility: float,
    ) -> List[str]:
        reasoning = []
        if position.pnl_percent < 0:
            reasoning.append(f"Position in loss: {position.pnl_percent:.2f}%")
        else:
            reasoning.append(f"Position in profit: +{position.pnl_percent:.2f}%")

        if signal is None:
            reasoning.append("No current signal - agreement unknown")
        elif agrees:
            reasoning.append(
                f"✅ Current {signal.direction} signal agrees with your position ({signal.confidence:.0f}%)"
            )
        else:
            reasoning.append(f"⚠️ Current {signal.direction} signal does not support your {position.direction}")

        distance = risk.distance_to_liquidation
        if risk.risk_level == "critical":
            reasoning.append(f"🔴 CRITICAL RISK: only {distance:.1f}% to liquidation")
        elif risk.risk_level == "high":
            reasoning.append(f"🟠 High risk: {distance:.1f}% to liquidation")
        elif risk.risk_level == "moderate":
            reasoning.append(f"🟡 Moderate risk: {distance:.1f}% to liquidation")
        else:
            reasoning.append(f"🟢 Low risk: {distance:.1f}% margin to liquidation")

        if pool is not None and risk.nearby_liquidation_zone:
            pool_distance = abs(risk.nearby_liquidation_zone - position.current_price) / position.current_price * 100
            reasoning.append(f"Liquidation pool at {risk.nearby_liquidation_zone:.2f} ({pool_distance:.1f}% away)")

        if volatility > self.HIGH_VOLATILITY:
            reasoning.append(f"High volatility ({volatility:.1f}%)")

        return reasoning

    def analyze_open_position(
        self,
        position: OpenPosition,
        signal: Optional[IntradaySignal] = None,
        liquidation_pool: Optional[LiquidationPool] = None,
        volatility: float = 1.0,
    ) -> PositionAnalysis:
        """
        Recommendation and tactical actions for a priced position.

        A distance to liquidation under 10% always yields a critical FULL_EXIT
        first, recommendation EXIT and no DCA.

        Args:
            position: Position priced by build_open_position
            signal: Current signal for the asset, if any
            liquidation_pool: Liquidation pools around the price, if any
            volatility: Volatility in percent

        Returns:
            PositionAnalysis
        """
        if position.current_price <= 0:
            raise ValueError("Position must be priced with build_open_position first")

        liquidation_price = calculate_personal_liquidation(
            position.entry_price, position.leverage, position.direction, position.asset
        )
        distance = (position.current_price - liquidation_price) / position.current_price * 100 * position.sign

        nearby_zone = None
        if liquidation_pool is not None:
            zone = liquidation_pool.long_pool if position.direction == LONG else liquidation_pool.short_pool
            nearby_zone = zone.price

        risk = RiskAssessment(
            nearby_liquidation_zone=nearby_zone,
            distance_to_liquidation=distance,
            liquidation_price=liquidation_price,
            risk_level=self.risk_level(distance),
        )

        agrees = signal is not None and signal.direction == position.direction
        disagrees = signal is not None and {signal.direction, position.direction} == {LONG, SHORT}
        confidence = signal.confidence if signal is not None else 0

        if risk.risk_level == "critical":
            actions = [self._full_exit(position, f"Only {distance:.1f}% to liquidation at {liquidation_price:.2f}")]
            recommendation = EXIT
            self.logger.warning(
                f"{position.asset} {position.direction}: {distance:.1f}% to liquidation, exit recommended"
            )
        else:
            actions = self._actions(position, signal, liquidation_pool, agrees, disagrees, liquidation_price)
            recommendation = self._recommendation(position, risk.risk_level, agrees, disagrees, confidence)

        urgency = max((a.urgency for a in actions), key=URGENCY_ORDER.get, default="low")

        return PositionAnalysis(
            position=position,
            risk_assessment=risk,
            recommendation=recommendation,
            reasoning=self._reasoning(position, signal, agrees, risk, liquidation_pool, volatility),
            tactical_actions=actions,
            urgency=urgency,
            signal_agrees=agrees if signal is not None else None,
        )

    def get_score(self, analysis: PositionAnalysis) -> float:
        """Position health 0-100; 100 at or beyond the safe distance to liquidation."""
        distance = analysis.risk_assessment.distance_to_liquidation
        return self.clamp(distance / self.SAFE_DISTANCE * 100, 0, 100)
