"""
BTC Signal Desk - Derivatives feed

Fetches open interest and funding, derives the 24h open interest change from
persisted history and classifies the result. Always returns a snapshot:
fresh, last-known-good (stale) or the static fallback (stale).
"""

import asyncio
import time
from dataclasses import replace
from typing import Callable, Dict, Optional

import structlog

from analyzers.derivatives import DerivativesAnalyzer, DerivativesSnapshot, OpenInterestHistory
from feeds.market_data import MarketDataClient
from feeds.storage import KeyValueStore

logger = structlog.get_logger()


class DerivativesFeed:
    """
    Derivatives snapshots per asset with last-known-good persistence.

    Store keys:
        derivatives:<asset>  - last valid snapshot (valid for 24h)
        oi_history:<asset>   - open interest samples for the 24h change
    """

    LAST_GOOD_MAX_AGE_HOURS = 24

    def __init__(
        self,
        client: MarketDataClient,
        store: KeyValueStore,
        analyzer: Optional[DerivativesAnalyzer] = None,
        min_interval: float = 0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            client: Market data client
            store: Persistence for history and last-known-good snapshots
            analyzer: Classifier (default DerivativesAnalyzer())
            min_interval: Seconds during which a fresh snapshot is reused
            clock: Returns the current time in seconds (default time.time)
        """
        self.client = client
        self.store = store
        self.analyzer = analyzer or DerivativesAnalyzer()
        self.min_interval = min_interval
        self._clock = clock or time.time
        self._latest: Dict[str, DerivativesSnapshot] = {}

    @staticmethod
    def _snapshot_key(asset: str) -> str:
        return f"derivatives:{asset.upper()}"

    @staticmethod
    def _history_key(asset: str) -> str:
        return f"oi_history:{asset.upper()}"

    def _load_history(self, asset: str) -> OpenInterestHistory:
        raw = self.store.get(self._history_key(asset))
        if not raw:
            return OpenInterestHistory()
        try:
            return OpenInterestHistory.from_list(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable open interest history", asset=asset, error=str(e))
            return OpenInterestHistory()

    def load_last_good(self, asset: str) -> Optional[DerivativesSnapshot]:
        """Last valid snapshot if it is younger than 24h."""
        raw = self.store.get(self._snapshot_key(asset))
        if not raw:
            return None
        try:
            snapshot = DerivativesSnapshot.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable derivatives snapshot", asset=asset, error=str(e))
            return None

        age = self._clock() - snapshot.timestamp
        if age > self.LAST_GOOD_MAX_AGE_HOURS * 3600:
            logger.info("Last derivatives snapshot expired", asset=asset, age_hours=round(age / 3600, 1))
            return None
        return snapshot

    def _degraded(self, asset: str, error: str) -> DerivativesSnapshot:
        last_good = self.load_last_good(asset)
        if last_good is not None:
            logger.warning("Serving last-known-good derivatives", asset=asset, error=error)
            return replace(last_good, is_stale=True, error=error)

        logger.warning("Serving fallback derivatives", asset=asset, error=error)
        return self.analyzer.fallback_snapshot(error)

    async def get_snapshot(self, asset: str) -> DerivativesSnapshot:
        """
        Current derivatives snapshot for an asset.

        Args:
            asset: BTC / ETH / BNB

        Returns:
            DerivativesSnapshot (is_stale=True when fresh data was unavailable)
        """
        now = self._clock()
        cached = self._latest.get(asset)
        if cached is not None and self.min_interval > 0 and now - cached.timestamp < self.min_interval:
            return cached

        open_interest, funding = await asyncio.gather(
            self.client.get_open_interest(asset),
            self.client.get_funding(asset),
        )

        if open_interest is None or funding is None:
            missing = "open interest" if open_interest is None else "funding"
            return self._degraded(asset, f"{missing} unavailable")

        mark_price = funding["mark_price"]
        if mark_price <= 0 or open_interest <= 0:
            return self._degraded(asset, "invalid open interest or mark price")

        open_interest_usd = open_interest * mark_price
        history = self._load_history(asset)
        change = history.change_24h(now, open_interest_usd)
        history.add(now, open_interest_usd)
        self.store.set(self._history_key(asset), history.to_list())

        snapshot = self.analyzer.analyze(
            open_interest_usd,
            0.0 if change is None else change,
            funding["funding_rate_percent"],
            next_funding_time=funding.get("next_funding_time"),
            timestamp=now,
        )
        self.store.set(self._snapshot_key(asset), snapshot.to_dict())
        self._latest[asset] = snapshot

        logger.info(
            "Derivatives updated",
            asset=asset,
            open_interest_usd=round(open_interest_usd),
            oi_change_24h=round(snapshot.open_interest_change_24h, 2),
            funding_rate=round(snapshot.funding_rate_percent, 4),
            score=snapshot.combined_score,
        )
        return snapshot
