"""
Derivatives Analysis Module

Turns raw open interest and funding rate readings into:
- Funding rate bands with squeeze-risk signals
- Open interest trend and signal
- A combined bias score used by the signal engine
- Open interest history for the 24h change
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

from analyzers.base import BaseAnalyzer

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


@dataclass
class FundingClassification:
    level: str
    signal: str
    description: str


@dataclass
class OpenInterestClassification:
    trend: str
    signal: str
    description: str


@dataclass
class DerivativesSnapshot:
    """
    Open interest + funding state of one asset.

    Attributes:
        open_interest_usd: Open interest in USD
        open_interest_change_24h: 24h change in percent
        funding_rate_percent: Funding rate in percent (0.01 = 0.01%)
        next_funding_time: Next funding time in ms, if known
        combined_score: Bias score in [-50, 50]
        funding: Funding band classification
        open_interest: Open interest classification
        is_stale: True when served from the last-known-good cache or fallback
        error: Why fresh data could not be used
        timestamp: When the underlying data was fetched (seconds)
    """

    open_interest_usd: float
    open_interest_change_24h: float
    funding_rate_percent: float
    next_funding_time: Optional[int] = None
    combined_score: float = 0.0
    funding: Optional[FundingClassification] = None
    open_interest: Optional[OpenInterestClassification] = None
    is_stale: bool = False
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "DerivativesSnapshot":
        """Rebuild a snapshot from to_dict() output. Raises KeyError/TypeError on bad input."""
        data = dict(data)
        if data.get("funding"):
            data["funding"] = FundingClassification(**data["funding"])
        if data.get("open_interest"):
            data["open_interest"] = OpenInterestClassification(**data["open_interest"])
        return cls(**data)


class OpenInterestHistory:
    """
    Rolling open interest samples (48h, at most 576) used to derive the 24h change.
    """

    MAX_AGE_HOURS = 48
    MAX_SAMPLES = 576
    LOOKBACK_HOURS = 24

    def __init__(self, samples: Optional[List[Tuple[float, float]]] = None):
        self.samples: List[Tuple[float, float]] = sorted(samples or [])

    def add(self, timestamp: float, value: float) -> None:
        """Append a sample and drop samples older than 48h."""
        self.samples.append((timestamp, value))
        cutoff = timestamp - self.MAX_AGE_HOURS * HOUR_SECONDS
        self.samples = [s for s in self.samples if s[0] >= cutoff][-self.MAX_SAMPLES:]

    def change_24h(self, now: float, current_value: float) -> Optional[float]:
        """
        Percent change against the sample closest to 24h ago (or the oldest).

        Returns:
            float or None when no usable reference sample exists
        """
        older = [s for s in self.samples if s[0] < now]
        if not older:
            return None

        target = now - self.LOOKBACK_HOURS * HOUR_SECONDS
        _, reference = min(older, key=lambda s: abs(s[0] - target))
        if reference <= 0:
            return None
        return (current_value - reference) / reference * 100

    def to_list(self) -> List[List[float]]:
        return [[ts, value] for ts, value in self.samples]

    @classmethod
    def from_list(cls, data: List) -> "OpenInterestHistory":
        return cls([(float(ts), float(value)) for ts, value in data])


class DerivativesAnalyzer(BaseAnalyzer):
    """Funding / open interest classification and combined bias score."""

    # Funding bands, percent per 8h
    FUNDING_EXTREME_POSITIVE = 0.05
    FUNDING_HIGH_POSITIVE = 0.03
    FUNDING_NORMAL = 0.01
    FUNDING_LOW = -0.01
    FUNDING_NEGATIVE = -0.05

    # Open interest 24h change, percent
    OI_TREND_THRESHOLD = 5
    OI_STRONG_CHANGE = 10

    SCORE_LIMIT = 50

    # Used when nothing was ever fetched
    FALLBACK_OPEN_INTEREST_USD = 9_500_000_000
    FALLBACK_FUNDING_RATE_PERCENT = 0.01

    def classify_funding(self, rate_percent: float) -> FundingClassification:
        """
        Funding band and squeeze-risk signal.

        Args:
            rate_percent: Funding rate in percent (0.08 = 0.08%)
        """
        if rate_percent > self.FUNDING_EXTREME_POSITIVE:
            return FundingClassification(
                "extreme_positive", "long_squeeze_risk", "Longs paying extreme funding, squeeze risk"
            )
        if rate_percent > self.FUNDING_HIGH_POSITIVE:
            return FundingClassification("high_positive", "crowded_longs", "Longs crowded")
        if rate_percent > self.FUNDING_NORMAL:
            return FundingClassification("normal", "neutral", "Normal funding")
        if rate_percent >= self.FUNDING_LOW:
            return FundingClassification("low", "neutral", "Low funding, balanced market")
        if rate_percent >= self.FUNDING_NEGATIVE:
            return FundingClassification("negative", "crowded_shorts", "Shorts crowded")
        return FundingClassification(
            "extreme_negative", "short_squeeze_risk", "Shorts paying extreme funding, squeeze risk"
        )

    def classify_open_interest(self, change_24h: float) -> OpenInterestClassification:
        """Open interest trend (rising/falling/stable) and signal."""
        if change_24h > self.OI_TREND_THRESHOLD:
            trend = "rising"
        elif change_24h < -self.OI_TREND_THRESHOLD:
            trend = "falling"
        else:
            trend = "stable"

        if change_24h >= self.OI_STRONG_CHANGE:
            return OpenInterestClassification(trend, "buildup", "Strong position buildup")
        if change_24h >= self.OI_TREND_THRESHOLD:
            return OpenInterestClassification(trend, "bullish", "New positions entering")
        if change_24h <= -self.OI_TREND_THRESHOLD:
            return OpenInterestClassification(trend, "bearish", "Positions closing")
        return OpenInterestClassification(trend, "neutral", "Open interest stable")

    def calculate_combined_score(self, oi_change: float, funding: FundingClassification) -> float:
        """
        Weighted additive bias from open interest and funding, clipped to +-50.
        """
        score = 0.0

        if oi_change >= self.OI_STRONG_CHANGE:
            score += 15
        elif oi_change >= self.OI_TREND_THRESHOLD:
            score += 10
        elif oi_change <= -self.OI_STRONG_CHANGE:
            score -= 15
        elif oi_change <= -self.OI_TREND_THRESHOLD:
            score -= 10

        if funding.signal == "short_squeeze_risk":
            score += 10
        elif funding.signal == "long_squeeze_risk":
            score -= 10
        elif funding.signal == "crowded_shorts":
            score += 5
        elif funding.signal == "crowded_longs":
            score -= 5

        if funding.level == "extreme_positive":
            score -= 20

        return self.clamp(score, -self.SCORE_LIMIT, self.SCORE_LIMIT)

    def get_score(self, oi_change: float, funding_rate_percent: float) -> float:
        """Combined score in [-50, 50]."""
        return self.calculate_combined_score(oi_change, self.classify_funding(funding_rate_percent))

    def analyze(
        self,
        open_interest_usd: float,
        open_interest_change_24h: float,
        funding_rate_percent: float,
        next_funding_time: Optional[int] = None,
        timestamp: Optional[float] = None,
    ) -> DerivativesSnapshot:
        """
        Build a classified snapshot from raw readings.

        Returns:
            DerivativesSnapshot
        """
        funding = self.classify_funding(funding_rate_percent)
        open_interest = self.classify_open_interest(open_interest_change_24h)
        score = self.calculate_combined_score(open_interest_change_24h, funding)

        self.logger.debug(
            f"Derivatives: OI {format_open_interest(open_interest_usd)} "
            f"({open_interest_change_24h:+.2f}%), funding {format_funding_rate(funding_rate_percent)} "
            f"-> {funding.level}/{open_interest.signal}, score {score:+.0f}"
        )

        return DerivativesSnapshot(
            open_interest_usd=open_interest_usd,
            open_interest_change_24h=open_interest_change_24h,
            funding_rate_percent=funding_rate_percent,
            next_funding_time=next_funding_time,
            combined_score=score,
            funding=funding,
            open_interest=open_interest,
            timestamp=time.time() if timestamp is None else timestamp,
        )

    def fallback_snapshot(self, error: str) -> DerivativesSnapshot:
        """Stale placeholder used when no valid snapshot was ever obtained."""
        snapshot = self.analyze(self.FALLBACK_OPEN_INTEREST_USD, 0.0, self.FALLBACK_FUNDING_RATE_PERCENT)
        snapshot.is_stale = True
        snapshot.error = error
        return snapshot


def format_open_interest(value_usd: float) -> str:
    """Format open interest as $B / $M / $K."""
    if value_usd >= 1e9:
        return f"${value_usd / 1e9:.2f}B"
    if value_usd >= 1e6:
        return f"${value_usd / 1e6:.2f}M"
    if value_usd >= 1e3:
        return f"${value_usd / 1e3:.2f}K"
    return f"${value_usd:.2f}"


def format_funding_rate(rate_percent: float) -> str:
    """Format a funding rate in percent with sign, e.g. +0.0100%."""
    return f"{rate_percent:+.4f}%"


def format_funding_countdown(next_funding_time: Optional[int], now: Optional[float] = None) -> str:
    """Time left until the next funding, e.g. '3h 12m'."""
    if not next_funding_time:
        return "--"
    now = time.time() if now is None else now
    remaining = max(0, int(next_funding_time / 1000 - now))
    hours, remainder = divmod(remaining, 3600)
    return f"{hours}h {remainder // 60}m"
