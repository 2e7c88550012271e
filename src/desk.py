"""
BTC Signal Desk - Recalculation loop

Polls market data, gates recomputation per asset on price movement and runs
every engine: indicators, signals with confluence, ranking and trade setups,
support/resistance levels, liquidation pools, scalping gates, Power Law
valuation (BTC) and open position analysis.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from analyzers.derivatives import DerivativesSnapshot
from analyzers.level_smoothing import LevelSmoother
from analyzers.levels import RESISTANCE, SUPPORT, LevelDetector, SupportResistanceLevel
from analyzers.liquidations import LiquidationPool, LiquidationZoneEstimator
from analyzers.positions import PositionAnalysis, PositionAnalyzer, build_open_position
from analyzers.power_law import PowerLawAnalysis, PowerLawValuationModel, days_since_genesis
from config import Settings, settings as default_settings
from feeds.derivatives_feed import DerivativesFeed
from feeds.liquidation_source import LiquidationSource, create_liquidation_source
from feeds.market_data import MarketDataClient
from feeds.storage import KeyValueStore, PositionBook, SQLiteStore
from signals.indicators import (
    DAILY_EMA_PERIODS,
    IndicatorSnapshot,
    build_indicator_snapshot,
    calculate_ema_set,
)
from signals.models import Candle, IntradaySignal, SignalScore, TradeSetup
from signals.scalping import ScalpingGateEngine, ScalpingSignal
from signals.scoring import normalize_to_range
from signals.signal_engine import SignalEngine
from signals.stable_cache import StableCache
from signals.trade_recommender import TradeRecommender

logger = structlog.get_logger()

DAILY_TIMEFRAME = "1d"
DAILY_CANDLE_LIMIT = 250


@dataclass
class AssetReport:
    """Everything computed for one asset in one cycle."""

    asset: str
    price: float
    change_24h: float
    derivatives: DerivativesSnapshot
    signals: Dict[str, IntradaySignal] = field(default_factory=dict)
    volatility: Dict[str, float] = field(default_factory=dict)
    supports: List[SupportResistanceLevel] = field(default_factory=list)
    resistances: List[SupportResistanceLevel] = field(default_factory=list)
    liquidation_pool: Optional[LiquidationPool] = None
    scalping: Optional[ScalpingSignal] = None
    power_law: Optional[PowerLawAnalysis] = None
    positions: List[PositionAnalysis] = field(default_factory=list)
    from_cache: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def is_stale(self) -> bool:
        return self.derivatives.is_stale


@dataclass
class DeskReport:
    """Result of one run_cycle()."""

    assets: Dict[str, AssetReport] = field(default_factory=dict)
    ranked: List[SignalScore] = field(default_factory=list)
    setups: List[TradeSetup] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


class TradingDesk:
    """
    Caller-controlled recalculation loop over all configured assets.

    Every engine is synchronous; only the feeds are awaited. Per-asset state
    (StableCache, LevelSmoother) is owned by the desk and can be reset.
    """

    PRIMARY_TIMEFRAMES = ("1h", "4h", "30m", "15m", "5m")
    SCALPING_TIMEFRAMES = ("5m", "1m", "15m")
    CACHE_KEY = "report"

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[MarketDataClient] = None,
        store: Optional[KeyValueStore] = None,
        liquidation_source: Optional[LiquidationSource] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = config or default_settings
        self._clock = clock or time.time
        self.client = client or MarketDataClient()
        self.store = store or SQLiteStore(self.settings.storage_path)
        self.liquidation_source = liquidation_source or create_liquidation_source(self.settings)

        self.derivatives_feed = DerivativesFeed(
            self.client,
            self.store,
            min_interval=self.settings.derivatives_poll_interval,
            clock=self._clock,
        )
        self.position_book = PositionBook(self.store)

        self.signal_engine = SignalEngine()
        self.recommender = TradeRecommender()
        self.scalping_engine = ScalpingGateEngine()
        self.power_law = PowerLawValuationModel()
        self.level_detector = LevelDetector()
        self.liquidation_estimator = LiquidationZoneEstimator()
        self.position_analyzer = PositionAnalyzer()

        self.caches: Dict[str, StableCache] = {}
        self.smoothers: Dict[str, LevelSmoother] = {}
        self.last_report: Optional[DeskReport] = None

    def _cache(self, asset: str) -> StableCache:
        if asset not in self.caches:
            self.caches[asset] = StableCache(
                clock=self._clock,
                forced_recalc_minutes=self.settings.recalc_ttl_minutes,
            )
        return self.caches[asset]

    def _smoother(self, asset: str) -> LevelSmoother:
        return self.smoothers.setdefault(asset, LevelSmoother())

    def reset(self) -> None:
        """Drop all per-asset caches and smoothing history."""
        for cache in self.caches.values():
            cache.clear()
        self.caches.clear()
        self.smoothers.clear()
        self.last_report = None

    def _primary_timeframe(self, snapshots: Dict[str, IndicatorSnapshot]) -> Optional[str]:
        return next((tf for tf in self.PRIMARY_TIMEFRAMES if tf in snapshots), None)

    async def _fetch_candles(self, asset: str) -> Dict[str, List[Candle]]:
        timeframes = list(dict.fromkeys(list(self.settings.timeframes) + [DAILY_TIMEFRAME]))
        results = await asyncio.gather(*(
            self.client.get_klines(
                asset, tf,
                DAILY_CANDLE_LIMIT if tf == DAILY_TIMEFRAME else self.settings.candle_limit,
            )
            for tf in timeframes
        ))

        candles = {}
        for tf, series in zip(timeframes, results):
            if not series:
                logger.warning("Candles unavailable, skipping timeframe", asset=asset, timeframe=tf)
                continue
            candles[tf] = series
        return candles

    def _build_signals(
        self,
        asset: str,
        snapshots: Dict[str, IndicatorSnapshot],
        derivatives: DerivativesSnapshot,
    ) -> Dict[str, IntradaySignal]:
        confluence = self.signal_engine.confluence_analyzer
        tf_signals = {
            tf: self.signal_engine.timeframe_signal(snapshot, derivatives, tf)
            for tf, snapshot in snapshots.items()
        }

        signals = {}
        for tf in self.settings.timeframes:
            snapshot = snapshots.get(tf)
            if snapshot is None:
                continue
            adjacent = [tf_signals[a] for a in confluence.get_adjacent_timeframes(tf) if a in tf_signals]
            signals[tf] = self.signal_engine.build_intraday_signal(asset, tf, snapshot, derivatives, adjacent)
        return signals

    def _build_levels(self, asset: str, daily: Optional[List[Candle]], price: float,
                      power_law: Optional[PowerLawAnalysis]):
        emas = {}
        if daily:
            emas = calculate_ema_set([c.close for c in daily], DAILY_EMA_PERIODS)

        floor = power_law.floor_price if power_law else None
        ceiling = power_law.ceiling_price if power_law else None

        supports = self.level_detector.detect_supports(price, emas, daily, model_floor=floor)
        resistances = self.level_detector.detect_resistances(price, emas, daily, model_ceiling=ceiling)

        smoother = self._smoother(asset)
        supports = smoother.smooth(supports, SUPPORT, price)
        resistances = smoother.smooth(resistances, RESISTANCE, price)
        return supports, resistances

    def _build_scalping(
        self,
        asset: str,
        snapshots: Dict[str, IndicatorSnapshot],
        derivatives: DerivativesSnapshot,
    ) -> Optional[ScalpingSignal]:
        timeframe = next((tf for tf in self.SCALPING_TIMEFRAMES if tf in snapshots), None)
        if timeframe is None:
            return None
        upper = self.signal_engine.confluence_analyzer.get_upper_timeframe(timeframe)
        return self.scalping_engine.evaluate(
            asset, timeframe, snapshots[timeframe], derivatives, snapshots.get(upper) if upper else None
        )

    def _analyze_positions(
        self,
        asset: str,
        price: float,
        signal: Optional[IntradaySignal],
        pool: Optional[LiquidationPool],
        volatility: float,
    ) -> List[PositionAnalysis]:
        analyses = []
        for position in self.position_book.list(asset):
            try:
                priced = build_open_position(position, price)
                analyses.append(self.position_analyzer.analyze_open_position(priced, signal, pool, volatility))
            except ValueError as e:
                logger.warning("Skipping position", asset=asset, error=str(e))
        return analyses

    async def analyze_asset(self, asset: str) -> Optional[AssetReport]:
        """
        Run every engine for one asset, or reuse the cached result while the
        price has not moved past the recalculation threshold.

        Returns:
            AssetReport or None when no price is available
        """
        ticker = await self.client.get_ticker(asset)
        if ticker is None:
            logger.warning("No ticker, skipping asset", asset=asset)
            return None

        price = ticker["price"]
        cache = self._cache(asset)
        cached: Optional[AssetReport] = cache.get(self.CACHE_KEY)
        if cached is not None and not cache.should_recalculate(price, self.settings.recalc_price_threshold):
            logger.debug("Price stable, reusing results", asset=asset, price=price,
                         change=round(cache.get_price_change_percent(price), 3))
            cached.from_cache = True
            return cached

        candles, derivatives, events = await asyncio.gather(
            self._fetch_candles(asset),
            self.derivatives_feed.get_snapshot(asset),
            self.liquidation_source.fetch_liquidations(asset),
        )

        snapshots = {}
        for tf, series in candles.items():
            snapshot = build_indicator_snapshot(series)
            if snapshot is not None:
                snapshots[tf] = snapshot

        report = AssetReport(
            asset=asset,
            price=price,
            change_24h=ticker["change_24h"],
            derivatives=derivatives,
            timestamp=self._clock(),
        )
        report.volatility = {tf: s.volatility for tf, s in snapshots.items()}
        report.signals = self._build_signals(asset, snapshots, derivatives)

        if asset == "BTC":
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            report.power_law = self.power_law.analyze(
                price,
                days_since_genesis(now),
                self.settings.portfolio_value,
                self.settings.interest_rate,
            )

        report.supports, report.resistances = self._build_levels(
            asset, candles.get(DAILY_TIMEFRAME), price, report.power_law
        )

        primary = self._primary_timeframe(snapshots)
        volatility = snapshots[primary].volatility if primary else 1.0
        report.liquidation_pool = self.liquidation_estimator.estimate(
            price,
            asset,
            primary or "1h",
            candles=snapshots[primary].candles if primary else None,
            derivatives=derivatives,
            volatility=volatility,
            events=events,
        )
        report.scalping = self._build_scalping(asset, snapshots, derivatives)
        report.positions = self._analyze_positions(
            asset, price, report.signals.get(primary) if primary else None, report.liquidation_pool, volatility
        )

        cache.set(self.CACHE_KEY, report, self.settings.recalc_ttl_minutes, base_price=price)
        cache.mark_recalculated(price)
        return report

    def _rank_and_plan(self, reports: Dict[str, AssetReport]):
        candidates = []
        for report in reports.values():
            for tf, signal in report.signals.items():
                candidates.append({
                    "asset": signal.asset,
                    "timeframe": tf,
                    "direction": signal.direction,
                    "confidence": signal.confidence,
                    "confluence_score": signal.confluence_score or 0,
                    "volatility": normalize_to_range(report.volatility.get(tf, 1.0), 0, 5),
                    "oi_change": report.derivatives.open_interest_change_24h,
                })

        ranked = self.recommender.rank_signals(candidates, self.settings.top_signals)

        setups = []
        for score in ranked:
            report = reports[score.asset]
            signal = report.signals[score.timeframe]
            setup = self.recommender.generate_trade_setup(
                score,
                signal.entry_price,
                signal.stop_loss,
                signal.take_profits,
                volatility=normalize_to_range(report.volatility.get(score.timeframe, 1.0), 0, 5),
                oi_change=report.derivatives.open_interest_change_24h,
            )
            if setup is not None:
                setups.append(setup)
        return ranked, setups

    async def run_cycle(self) -> DeskReport:
        """
        One recalculation pass over all configured assets.

        Returns:
            DeskReport
        """
        results = await asyncio.gather(*(self.analyze_asset(asset) for asset in self.settings.assets))
        reports = {r.asset: r for r in results if r is not None}

        ranked, setups = self._rank_and_plan(reports)
        desk_report = DeskReport(assets=reports, ranked=ranked, setups=setups, timestamp=self._clock())
        self.last_report = desk_report
        self._log_summary(desk_report)
        return desk_report

    def _log_summary(self, report: DeskReport) -> None:
        for asset, asset_report in report.assets.items():
            pool = asset_report.liquidation_pool
            logger.info(
                "Asset analysed",
                asset=asset,
                price=asset_report.price,
                from_cache=asset_report.from_cache,
                stale=asset_report.is_stale,
                funding=asset_report.derivatives.funding_rate_percent,
                supports=[l.price for l in asset_report.supports],
                resistances=[l.price for l in asset_report.resistances],
                heat=pool.heat_level if pool else None,
                positions=len(asset_report.positions),
            )
            if asset_report.power_law:
                logger.info(
                    "Power Law",
                    ratio=round(asset_report.power_law.ratio, 3),
                    zone=asset_report.power_law.zone.label,
                    decision=asset_report.power_law.decision,
                )
            for analysis in asset_report.positions:
                if analysis.urgency in ("high", "critical"):
                    logger.warning(
                        "Position needs attention",
                        asset=asset,
                        recommendation=analysis.recommendation,
                        urgency=analysis.urgency,
                        risk=analysis.risk_assessment.risk_level,
                    )

        for setup in report.setups:
            logger.info(
                "Trade setup",
                rank=setup.signal.rank,
                asset=setup.signal.asset,
                timeframe=setup.signal.timeframe,
                direction=setup.signal.direction,
                entry=setup.entry,
                stop=setup.stop_loss.price,
                leverage=setup.leverage.suggested,
                risk_reward=round(setup.risk_reward, 2),
            )

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """
        Run cycles every price_poll_interval seconds.

        Args:
            max_cycles: Stop after this many cycles (None = forever)
        """
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            await self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(self.settings.price_poll_interval)

    async def close(self) -> None:
        """Close feed sessions."""
        await self.client.close()
        await self.liquidation_source.close()
