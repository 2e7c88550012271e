"""
Power Law Valuation Module

Bitcoin fair value from the power law of price against time since genesis:

    P(t) = 10^(-1.847796462) * t^5.616314045,  t = years since genesis

On top of the fair value:
- Valuation zone and portfolio allocation
- Collateralized loan sizing (LTV, liquidation / margin call prices)
- Security / total score and loan decision
- 6-month projection and suggested leverage band
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from analyzers.base import BaseAnalyzer
from signals.scoring import normalize_to_range

GENESIS_DATE = datetime(2009, 1, 3, tzinfo=timezone.utc)
DAYS_PER_YEAR = 365.25

POWER_LAW_INTERCEPT = -1.847796462
POWER_LAW_EXPONENT = 5.616314045

DEFAULT_INTEREST_RATE = 0.0537


def days_since_genesis(now: Optional[datetime] = None) -> int:
    """Whole days elapsed since the genesis block (2009-01-03 UTC)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(0, (now - GENESIS_DATE).days)


def fair_value(days: float) -> float:
    """Power law model price; 0 when no time has elapsed."""
    years = days / DAYS_PER_YEAR
    if years <= 0:
        return 0.0
    return math.pow(10, POWER_LAW_INTERCEPT) * math.pow(years, POWER_LAW_EXPONENT)


@dataclass
class ValuationZone:
    key: str
    label: str
    opportunity_score: int
    allocation_percent: int


@dataclass
class PowerLawAnalysis:
    """
    Complete power law valuation for one price/time/portfolio input.

    Prices are in USD, percents are 0-100, ratios are plain floats.
    """

    # Time
    days_since_genesis: float
    years_since_genesis: float

    # Price
    current_price: float
    model_price: float
    ratio: float
    floor_price: float
    ceiling_price: float

    # Valuation
    zone: ValuationZone
    opportunity_score: float
    opportunity_message: str
    opportunity_emoji: str

    # Loan
    allocation_percent: int
    collateral_usd: float
    collateral_btc: float
    base_ltv: float
    ltv: float
    loan_usd: float
    btc_purchase: float
    total_exposure_btc: float
    leverage_ratio: float
    liquidation_price: float
    margin_call_price: float
    liquidation_margin_percent: float

    # Scores and decision
    security_score: int
    total_score: float
    decision_key: str
    decision: str
    risk_level: str

    # 6-month projection
    interest_cost_6m: float
    net_gain_6m: float
    return_percent_6m: float

    # Leverage band
    suggested_leverage: str
    leverage_risk: str


class PowerLawValuationModel(BaseAnalyzer):
    """Power law fair value, valuation zones and loan-risk scoring."""

    FLOOR_MULTIPLIER = 0.5
    CEILING_MULTIPLIER = 3.0

    # (upper ratio bound, inclusive?, zone)
    ZONES = (
        (0.3, False, ValuationZone("extreme_under", "EXTREMADAMENTE INFRAVALORADO", 100, 80)),
        (0.5, False, ValuationZone("floor", "PISO HISTÓRICO", 90, 60)),
        (0.85, True, ValuationZone("undervalued", "INFRAVALORADO", 75, 40)),
        (1.2, False, ValuationZone("fair", "JUSTO (FAIR VALUE)", 50, 20)),
        (2.0, False, ValuationZone("overvalued", "SOBREVALORADO", 30, 0)),
        (3.0, False, ValuationZone("ceiling", "TECHO HISTÓRICO", 10, 0)),
    )
    EXTREME_OVER_ZONE = ValuationZone("extreme_over", "EXTREMADAMENTE SOBREVALORADO", 0, 0)

    BASE_LTV = 0.60
    OVERVALUED_LTV_FACTOR = 0.85
    LIQUIDATION_LTV = 0.91
    MARGIN_CALL_LTV = 0.85

    OPPORTUNITY_WEIGHT = 0.6
    SECURITY_WEIGHT = 0.4

    def classify_zone(self, ratio: float) -> ValuationZone:
        """Valuation zone for a price / model ratio."""
        for bound, inclusive, zone in self.ZONES:
            if ratio < bound or (inclusive and ratio == bound):
                return zone
        return self.EXTREME_OVER_ZONE

    def opportunity_score(self, ratio: float) -> float:
        """
        Continuous opportunity score (0-100).

        100 up to ratio 0.5, linear to 50 at ratio 1.0, linear to 0 at 3.0.
        """
        if ratio <= 0.5:
            return 100.0
        if ratio <= 1.0:
            return float(round(normalize_to_range(ratio, 0.5, 1.0, 100, 50)))
        if ratio <= 3.0:
            return float(round(normalize_to_range(ratio, 1.0, 3.0, 50, 0)))
        return 0.0

    @staticmethod
    def opportunity_message(score: float):
        """Emoji and message for an opportunity score."""
        if score > 80:
            return "🟢", "Excellent time to buy"
        if score > 60:
            return "🟢", "Good opportunity"
        if score > 40:
            return "🔵", "Neutral"
        if score > 20:
            return "🟡", "Caution - Overvalued"
        return "🔴", "High risk - Consider selling"

    def security_score(self, ltv: float) -> int:
        if ltv < 0.50:
            return 100
        if ltv < 0.60:
            return 80
        if ltv < 0.70:
            return 60
        return 40

    @staticmethod
    def decide(total_score: float):
        """(decision_key, decision, risk_level) for a total score."""
        if total_score >= 70:
            return "execute", "EJECUTAR PRÉSTAMO", "BAJO"
        if total_score >= 50:
            return "caution", "CONSIDERAR CON PRECAUCIÓN", "MEDIO"
        return "reject", "NO SOLICITAR", "ALTO"

    @staticmethod
    def suggested_leverage(ratio: float):
        """(leverage band, risk) for a ratio."""
        if ratio < 0.5:
            return "2x", "low"
        if ratio <= 0.85:
            return "1.5x", "low"
        if ratio < 1.2:
            return "1.2x", "medium"
        return "1x", "high"

    def analyze(
        self,
        current_price: float,
        days: float,
        portfolio_value: float,
        annual_interest_rate: float = DEFAULT_INTEREST_RATE,
    ) -> PowerLawAnalysis:
        """
        Full valuation for a price and a point in time.

        Args:
            current_price: BTC price in USD (> 0)
            days: Days since genesis
            portfolio_value: Portfolio value in USD
            annual_interest_rate: Loan interest rate as a fraction (0.0537 = 5.37%)

        Returns:
            PowerLawAnalysis
        """
        years = days / DAYS_PER_YEAR
        model_price = fair_value(days)
        ratio = current_price / model_price if model_price > 0 else 0.0

        zone = self.classify_zone(ratio)
        continuous_score = self.opportunity_score(ratio)
        emoji, message = self.opportunity_message(continuous_score)

        collateral_usd = portfolio_value * zone.allocation_percent / 100
        collateral_btc = collateral_usd / current_price if current_price > 0 else 0.0

        ltv = self.BASE_LTV * self.OVERVALUED_LTV_FACTOR if ratio > 1.0 else self.BASE_LTV
        loan_usd = collateral_usd * ltv
        btc_purchase = loan_usd / current_price if current_price > 0 else 0.0
        exposure = collateral_btc + btc_purchase

        if collateral_btc > 0:
            leverage_ratio = exposure / collateral_btc
            liquidation_price = loan_usd / (collateral_btc * self.LIQUIDATION_LTV)
            margin_call_price = loan_usd / (collateral_btc * self.MARGIN_CALL_LTV)
            liquidation_margin = (current_price - liquidation_price) / current_price * 100
        else:
            leverage_ratio = liquidation_price = margin_call_price = liquidation_margin = 0.0

        security = self.security_score(ltv)
        total = zone.opportunity_score * self.OPPORTUNITY_WEIGHT + security * self.SECURITY_WEIGHT
        decision_key, decision, risk_level = self.decide(total)

        interest_6m = loan_usd * annual_interest_rate / 2
        net_gain = exposure * model_price - exposure * current_price - interest_6m
        return_percent = net_gain / collateral_usd * 100 if collateral_usd > 0 else 0.0

        leverage_band, leverage_risk = self.suggested_leverage(ratio)

        self.logger.debug(
            f"Power law: price={current_price:.0f}, model={model_price:.0f}, "
            f"ratio={ratio:.3f}, zone={zone.key}, decision={decision_key}"
        )

        return PowerLawAnalysis(
            days_since_genesis=days,
            years_since_genesis=years,
            current_price=current_price,
            model_price=model_price,
            ratio=ratio,
            floor_price=model_price * self.FLOOR_MULTIPLIER,
            ceiling_price=model_price * self.CEILING_MULTIPLIER,
            zone=zone,
            opportunity_score=continuous_score,
            opportunity_message=message,
            opportunity_emoji=emoji,
            allocation_percent=zone.allocation_percent,
            collateral_usd=collateral_usd,
            collateral_btc=collateral_btc,
            base_ltv=self.BASE_LTV,
            ltv=ltv,
            loan_usd=loan_usd,
            btc_purchase=btc_purchase,
            total_exposure_btc=exposure,
            leverage_ratio=leverage_ratio,
            liquidation_price=liquidation_price,
            margin_call_price=margin_call_price,
            liquidation_margin_percent=liquidation_margin,
            security_score=security,
            total_score=total,
            decision_key=decision_key,
            decision=decision,
            risk_level=risk_level,
            interest_cost_6m=interest_6m,
            net_gain_6m=net_gain,
            return_percent_6m=return_percent,
            suggested_leverage=leverage_band,
            leverage_risk=leverage_risk,
        )

    def get_score(self, current_price: float, days: float) -> float:
        """Continuous opportunity score (0-100) for a price at a point in time."""
        model_price = fair_value(days)
        if model_price <= 0:
            return 0.0
        return self.opportunity_score(current_price / model_price)
