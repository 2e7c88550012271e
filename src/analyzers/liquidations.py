"""
Liquidation Zone Estimator - where leveraged longs and shorts get liquidated.

Three tiers, tried in order:
1. coinglass_real - clusters of real liquidation events near the price
2. atr_volatility - ATR-based distance adjusted by derivatives state
3. fallback_fixed - fixed distance scaled by volatility
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from analyzers.base import BaseAnalyzer
from analyzers.derivatives import DerivativesSnapshot
from signals.indicators import calculate_atr
from signals.models import LONG, SHORT, Candle

METHOD_REAL = "coinglass_real"
METHOD_ATR = "atr_volatility"
METHOD_FALLBACK = "fallback_fixed"


@dataclass
class LiquidationEvent:
    """Single liquidation (or aggregated bucket) from a liquidation feed."""

    price: float
    volume_usd: float
    side: str  # 'long' or 'short'
    timestamp: float = field(default_factory=time.time)
    leverage: float = 20


@dataclass
class LiquidationCluster:
    min_price: float
    max_price: float
    avg_price: float
    total_volume: float
    long_volume: float
    short_volume: float
    dominant_side: str
    leverage_profile: str
    last_timestamp: float
    significance: str  # critical / high / medium / low


@dataclass
class LiquidationZone:
    """One side of the liquidation map."""

    price: float
    distance_percent: float
    estimated_liquidity: str
    side: str
    volume_usd: float = 0.0


@dataclass
class LiquidationPool:
    """
    Long pool below price, short pool above it, and a stop loss beyond them.

    Attributes:
        current_price: Price the pools were estimated at
        long_pool: Nearest long liquidation zone (below price)
        short_pool: Nearest short liquidation zone (above price)
        suggested_stop_loss: Stop for a LONG trade, beyond the long pool
        suggested_stop_loss_percent: Its distance from price in percent
        short_stop_loss: Stop for a SHORT trade, beyond the short pool
        risk_level: low / medium / high
        method: coinglass_real / atr_volatility / fallback_fixed
        heat_level: hot / warm / cold
        reason: How the distance was derived
        atr_value: ATR in price units when it was used
        derivatives_multiplier: Applied OI / funding adjustment
        clusters: Real liquidation clusters, if any
    """

    current_price: float
    long_pool: LiquidationZone
    short_pool: LiquidationZone
    suggested_stop_loss: float
    suggested_stop_loss_percent: float
    short_stop_loss: float
    risk_level: str
    method: str
    heat_level: str
    reason: str = ""
    atr_value: Optional[float] = None
    derivatives_multiplier: float = 1.0
    clusters: List[LiquidationCluster] = field(default_factory=list)

    def stop_loss_for(self, direction: str) -> float:
        """Suggested stop for a trade direction."""
        return self.short_stop_loss if direction == SHORT else self.suggested_stop_loss

    def nearest_pool(self) -> LiquidationZone:
        if abs(self.short_pool.distance_percent) < abs(self.long_pool.distance_percent):
            return self.short_pool
        return self.long_pool


class LiquidationZoneEstimator(BaseAnalyzer):
    """Liquidation pools, heat and a pool-aware stop loss."""

    ATR_PERIOD = 14

    # timeframe: (atr multiplier, base distance %, stop buffer %)
    TIMEFRAME_CONFIG = {
        "5m": (1.5, 1.0, 0.3),
        "15m": (2.0, 1.5, 0.5),
        "30m": (2.5, 2.0, 0.7),
        "1h": (3.0, 2.5, 0.8),
        "4h": (4.0, 3.5, 1.0),
    }
    TIMEFRAME_FALLBACK = {"1m": "5m", "1d": "4h"}

    FALLBACK_DISTANCE = 2.5
    FALLBACK_BUFFER = 0.5

    # Real clusters
    PRICE_STEPS = {"BTC": 100, "ETH": 10, "BNB": 1}
    DEFAULT_PRICE_STEP = 1
    LOOKOUT_PERCENT = 5
    SMART_SL_BUFFER = 0.005
    CRITICAL_VOLUME = 100_000_000
    HIGH_VOLUME = 50_000_000
    MEDIUM_VOLUME = 20_000_000

    # Heat from distance to the nearer pool
    HOT_DISTANCE = 1.5
    WARM_DISTANCE = 2.5

    # Estimated liquidity, $M
    ASSET_LIQUIDITY_BASE = {"BTC": 50, "ETH": 30, "BNB": 10}
    DEFAULT_LIQUIDITY_BASE = 20
    SHORT_LIQUIDITY_FACTOR = 0.8
    MIN_LIQUIDITY_FACTOR = 0.3

    MAX_SCORE = 12
    MIN_SCORE_VOLUME = 50_000_000

    def timeframe_config(self, timeframe: str) -> Tuple[float, float, float]:
        key = self.TIMEFRAME_FALLBACK.get(timeframe, timeframe)
        return self.TIMEFRAME_CONFIG.get(key, self.TIMEFRAME_CONFIG["1h"])

    # ------------------------------------------------------------------
    # Real liquidation clusters
    # ------------------------------------------------------------------

    @staticmethod
    def _classify_leverage(leverage: float) -> str:
        if leverage >= 50:
            return "high"
        if leverage >= 20:
            return "medium"
        return "low"

    def _significance(self, volume: float) -> str:
        if volume > self.CRITICAL_VOLUME:
            return "critical"
        if volume > self.HIGH_VOLUME:
            return "high"
        if volume > self.MEDIUM_VOLUME:
            return "medium"
        return "low"

    def cluster_liquidations(
        self,
        events: Sequence[LiquidationEvent],
        price_step: float,
    ) -> List[LiquidationCluster]:
        """
        Group liquidation events into price buckets.

        Returns:
            List[LiquidationCluster]: Sorted by total volume, largest first
        """
        buckets: Dict[float, List[LiquidationEvent]] = {}
        for event in events:
            if event.price <= 0:
                continue
            key = round(event.price / price_step) * price_step
            buckets.setdefault(key, []).append(event)

        clusters = []
        for bucket in buckets.values():
            prices = [e.price for e in bucket]
            long_volume = sum(e.volume_usd for e in bucket if e.side == "long")
            short_volume = sum(e.volume_usd for e in bucket if e.side != "long")
            total = long_volume + short_volume
            leverage_profile = Counter(self._classify_leverage(e.leverage) for e in bucket).most_common(1)[0][0]

            clusters.append(LiquidationCluster(
                min_price=min(prices),
                max_price=max(prices),
                avg_price=sum(prices) / len(prices),
                total_volume=total,
                long_volume=long_volume,
                short_volume=short_volume,
                dominant_side="long" if long_volume > short_volume else "short",
                leverage_profile=leverage_profile,
                last_timestamp=max(e.timestamp for e in bucket),
                significance=self._significance(total),
            ))

        clusters.sort(key=lambda c: c.total_volume, reverse=True)
        return clusters

    def find_nearby_clusters(
        self,
        clusters: Sequence[LiquidationCluster],
        current_price: float,
        max_distance_percent: float = LOOKOUT_PERCENT,
    ) -> Tuple[List[LiquidationCluster], List[LiquidationCluster]]:
        """
        Clusters within the lookout window.

        Returns:
            Tuple of (above nearest first, below nearest first)
        """
        max_distance = current_price * max_distance_percent / 100
        above = sorted(
            (c for c in clusters if current_price < c.avg_price <= current_price + max_distance),
            key=lambda c: c.avg_price,
        )
        below = sorted(
            (c for c in clusters if current_price - max_distance <= c.avg_price < current_price),
            key=lambda c: c.avg_price,
            reverse=True,
        )
        return above, below

    def calculate_smart_stop_loss(
        self,
        direction: str,
        current_price: float,
        clusters: Sequence[LiquidationCluster],
    ) -> Tuple[float, float, str]:
        """
        Stop beyond the nearest high/critical cluster on the losing side.

        Returns:
            Tuple of (price, distance percent, reason)
        """
        above, below = self.find_nearby_clusters(clusters, current_price)
        significant = ("critical", "high")

        if direction == SHORT:
            cluster = next((c for c in above if c.significance in significant), None)
            if cluster:
                price = cluster.max_price * (1 + self.SMART_SL_BUFFER)
                return price, (price - current_price) / current_price * 100, (
                    f"Above cluster at {cluster.avg_price:.0f} (${cluster.total_volume / 1e6:.0f}M liquidated)"
                )
        else:
            cluster = next((c for c in below if c.significance in significant), None)
            if cluster:
                price = cluster.min_price * (1 - self.SMART_SL_BUFFER)
                return price, (current_price - price) / current_price * 100, (
                    f"Below cluster at {cluster.avg_price:.0f} (${cluster.total_volume / 1e6:.0f}M liquidated)"
                )

        sign = 1 if direction == SHORT else -1
        price = current_price * (1 + sign * self.FALLBACK_DISTANCE / 100)
        return price, self.FALLBACK_DISTANCE, "Standard distance (no significant clusters)"

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def derivatives_multiplier(self, derivatives: Optional[DerivativesSnapshot]) -> Tuple[float, str]:
        """Tighten zones on extreme funding / OI buildup, widen them on OI flush."""
        if derivatives is None:
            return 1.0, "No derivatives data"

        multiplier = 1.0
        reasons = []

        funding = abs(derivatives.funding_rate_percent)
        if funding > 0.05:
            multiplier *= 0.85
            reasons.append(f"extreme funding ({derivatives.funding_rate_percent:.3f}%)")
        elif funding > 0.02:
            multiplier *= 0.92
            reasons.append(f"high funding ({derivatives.funding_rate_percent:.3f}%)")

        oi_change = derivatives.open_interest_change_24h
        if oi_change > 10:
            multiplier *= 0.9
            reasons.append(f"OI +{oi_change:.1f}%")
        elif oi_change < -10:
            multiplier *= 1.15
            reasons.append(f"OI {oi_change:.1f}%")

        return multiplier, ", ".join(reasons) if reasons else "Normal derivatives"

    def heat_level(self, distance_percent: float) -> str:
        if distance_percent < self.HOT_DISTANCE:
            return "hot"
        if distance_percent < self.WARM_DISTANCE:
            return "warm"
        return "cold"

    @staticmethod
    def risk_level(volatility: float, distance: float, base_distance: float) -> str:
        if volatility > 2 or distance < base_distance * 0.7:
            return "high"
        if volatility > 1.2 or distance < base_distance:
            return "medium"
        return "low"

    def estimate_liquidity(self, asset: str, distance_percent: float, short_side: bool = False) -> float:
        """Rough liquidity estimate in $M; closer pools hold more."""
        base = self.ASSET_LIQUIDITY_BASE.get(asset, self.DEFAULT_LIQUIDITY_BASE)
        value = base * max(self.MIN_LIQUIDITY_FACTOR, 1 + (3 - distance_percent) * 0.2)
        if short_side:
            value *= self.SHORT_LIQUIDITY_FACTOR
        return value

    @staticmethod
    def format_liquidity(value_millions: float) -> str:
        return f"~${value_millions:.0f}M"

    def _heuristic_zone(self, side: str, current_price: float, distance: float, asset: str) -> LiquidationZone:
        sign = -1 if side == "long" else 1
        liquidity = self.estimate_liquidity(asset, distance, short_side=side == "short")
        return LiquidationZone(
            price=current_price * (1 + sign * distance / 100),
            distance_percent=sign * distance,
            estimated_liquidity=self.format_liquidity(liquidity),
            side=side,
            volume_usd=liquidity * 1e6,
        )

    def _cluster_zone(self, side: str, current_price: float, cluster: LiquidationCluster) -> LiquidationZone:
        volume = cluster.long_volume if side == "long" else cluster.short_volume
        volume = volume or cluster.total_volume
        return LiquidationZone(
            price=cluster.avg_price,
            distance_percent=(cluster.avg_price - current_price) / current_price * 100,
            estimated_liquidity=self.format_liquidity(volume / 1e6),
            side=side,
            volume_usd=volume,
        )

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(
        self,
        current_price: float,
        asset: str,
        timeframe: str,
        candles: Optional[Sequence[Candle]] = None,
        derivatives: Optional[DerivativesSnapshot] = None,
        volatility: float = 1.0,
        events: Optional[Sequence[LiquidationEvent]] = None,
    ) -> Optional[LiquidationPool]:
        """
        Estimate liquidation pools around the current price.

        Args:
            current_price: Current price
            asset: BTC / ETH / BNB
            timeframe: Trading timeframe
            candles: Recent candles for ATR
            derivatives: Derivatives snapshot for the distance multiplier
            volatility: Volatility in percent
            events: Real liquidation events, if a source is configured

        Returns:
            LiquidationPool or None for an invalid price
        """
        if not current_price or current_price <= 0:
            return None

        atr_multiplier, base_distance, buffer = self.timeframe_config(timeframe)
        multiplier, derivatives_reason = self.derivatives_multiplier(derivatives)
        reasons = []

        atr_value = None
        if candles and len(candles) >= self.ATR_PERIOD + 1:
            atr_value = calculate_atr(candles, self.ATR_PERIOD)

        if atr_value:
            atr_percent = atr_value / current_price * 100
            distance = atr_percent * atr_multiplier * multiplier
            distance = self.clamp(distance, base_distance * 0.5, base_distance * 3.0)
            method = METHOD_ATR
            reasons.append(f"ATR {atr_percent:.2f}%")
            if multiplier != 1.0:
                reasons.append(derivatives_reason)
        else:
            distance = self.FALLBACK_DISTANCE * (1 + volatility * 0.1)
            base_distance = self.FALLBACK_DISTANCE
            buffer = self.FALLBACK_BUFFER
            method = METHOD_FALLBACK
            reasons.append("Fallback: volatility-scaled fixed distance")

        long_pool = self._heuristic_zone("long", current_price, distance, asset)
        short_pool = self._heuristic_zone("short", current_price, distance, asset)
        long_stop = current_price * (1 - (distance + buffer) / 100)
        short_stop = current_price * (1 + (distance + buffer) / 100)

        clusters: List[LiquidationCluster] = []
        if events:
            step = self.PRICE_STEPS.get(asset, self.DEFAULT_PRICE_STEP)
            clusters = self.cluster_liquidations(events, step)
            above, below = self.find_nearby_clusters(clusters, current_price)
            if above or below:
                method = METHOD_REAL
                if below:
                    long_pool = self._cluster_zone("long", current_price, below[0])
                if above:
                    short_pool = self._cluster_zone("short", current_price, above[0])
                long_stop, _, long_reason = self.calculate_smart_stop_loss(LONG, current_price, clusters)
                short_stop, _, _ = self.calculate_smart_stop_loss(SHORT, current_price, clusters)
                reasons = [f"{len(clusters)} real liquidation clusters", long_reason]

        nearer = min(abs(long_pool.distance_percent), abs(short_pool.distance_percent))
        pool = LiquidationPool(
            current_price=current_price,
            long_pool=long_pool,
            short_pool=short_pool,
            suggested_stop_loss=long_stop,
            suggested_stop_loss_percent=(current_price - long_stop) / current_price * 100,
            short_stop_loss=short_stop,
            risk_level=self.risk_level(volatility, nearer, base_distance),
            method=method,
            heat_level=self.heat_level(nearer),
            reason=" | ".join(reasons),
            atr_value=atr_value,
            derivatives_multiplier=multiplier,
            clusters=clusters,
        )

        self.logger.debug(
            f"Liquidation pools {asset} {timeframe}: method={method}, "
            f"long={long_pool.price:.2f} ({long_pool.distance_percent:+.2f}%), "
            f"short={short_pool.price:.2f} ({short_pool.distance_percent:+.2f}%), heat={pool.heat_level}"
        )
        return pool

    def get_score(self, pool: Optional[LiquidationPool]) -> float:
        """
        Pool-proximity bias in [-12, 12].

        A close short pool above pulls price up (+), a close long pool below
        pulls it down (-). Larger pools pull harder.
        """
        if pool is None:
            return 0.0

        score = 0.0
        for zone, sign in ((pool.short_pool, 1), (pool.long_pool, -1)):
            distance = abs(zone.distance_percent)
            if distance >= self.LOOKOUT_PERCENT:
                continue
            volume_factor = min(zone.volume_usd / self.MIN_SCORE_VOLUME, 2.0)
            distance_factor = (self.LOOKOUT_PERCENT - distance) / self.LOOKOUT_PERCENT
            score += sign * 6.0 * volume_factor * distance_factor

        return self.clamp(score, -self.MAX_SCORE, self.MAX_SCORE)
