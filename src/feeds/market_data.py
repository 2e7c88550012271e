"""
BTC Signal Desk - Binance market data client

Candles and 24h tickers from the spot REST API, open interest and funding
from the USD-M futures REST API. Public endpoints, no API key required.

Features:
- One lazily created aiohttp session per client
- Retry with exponential backoff (network errors only)
- Failures after the last attempt are logged and returned as None
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from config import settings
from signals.models import Candle

logger = structlog.get_logger()

# ===== Endpoints =====
KLINES_PATH = "/api/v3/klines"
TICKER_PATH = "/api/v3/ticker/24hr"
OPEN_INTEREST_PATH = "/fapi/v1/openInterest"
PREMIUM_INDEX_PATH = "/fapi/v1/premiumIndex"

# ===== Asset -> Binance symbol =====
SYMBOLS = {
    "BTC": "BTCUSDT",
    "ETH": "ETHUSDT",
    "BNB": "BNBUSDT",
}

MAX_KLINES_LIMIT = 1000


def get_symbol(asset: str) -> str:
    """
    Binance symbol for an asset.

    Raises:
        ValueError: Unknown asset
    """
    symbol = SYMBOLS.get(asset.upper())
    if symbol is None:
        raise ValueError(f"Unsupported asset: {asset}")
    return symbol


def parse_kline(row: List[Any]) -> Candle:
    """Convert one Binance kline row into a Candle."""
    return Candle(
        timestamp=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class MarketDataClient:
    """
    Async client for the public Binance REST endpoints.

    Every public method returns None when the upstream is unavailable or the
    payload cannot be parsed; callers decide how to degrade.
    """

    def __init__(
        self,
        spot_url: Optional[str] = None,
        futures_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.spot_url = (spot_url or settings.binance_api_url).rstrip("/")
        self.futures_url = (futures_url or settings.binance_futures_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    @retry(
        stop=stop_after_attempt(settings.retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _make_request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        GET a JSON payload.

        Args:
            url: Full URL
            params: Query parameters

        Returns:
            Decoded JSON, or None on a non-200 status
        """
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with session.get(url, params=params, timeout=timeout) as response:
            if response.status == 200:
                return await response.json()
            logger.warning("Binance API error", url=url, status=response.status)
            return None

    async def _fetch(self, url: str, params: Dict[str, Any]) -> Optional[Any]:
        """_make_request with network failures mapped to None."""
        try:
            return await self._make_request(url, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Binance request failed", url=url, error=str(e))
            return None

    async def get_klines(self, asset: str, timeframe: str, limit: int = 200) -> Optional[List[Candle]]:
        """
        OHLCV candles, oldest first.

        Args:
            asset: BTC / ETH / BNB
            timeframe: Binance interval, e.g. '15m'
            limit: Number of candles (capped at 1000)

        Returns:
            List[Candle] or None
        """
        params = {
            "symbol": get_symbol(asset),
            "interval": timeframe,
            "limit": max(1, min(limit, MAX_KLINES_LIMIT)),
        }
        data = await self._fetch(f"{self.spot_url}{KLINES_PATH}", params)
        if data is None:
            return None

        try:
            candles = [parse_kline(row) for row in data]
        except (ValueError, TypeError, IndexError) as e:
            logger.warning("Malformed klines payload", asset=asset, timeframe=timeframe, error=str(e))
            return None

        candles.sort(key=lambda c: c.timestamp)
        logger.debug("Klines fetched", asset=asset, timeframe=timeframe, count=len(candles))
        return candles

    async def get_ticker(self, asset: str) -> Optional[Dict[str, float]]:
        """
        24h ticker.

        Returns:
            Dict with price, change_24h (%), high_24h, low_24h and
            volume_24h (quote volume), or None
        """
        data = await self._fetch(f"{self.spot_url}{TICKER_PATH}", {"symbol": get_symbol(asset)})
        if data is None:
            return None

        try:
            ticker = {
                "price": float(data["lastPrice"]),
                "change_24h": float(data["priceChangePercent"]),
                "high_24h": float(data["highPrice"]),
                "low_24h": float(data["lowPrice"]),
                "volume_24h": float(data["quoteVolume"]),
            }
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Malformed ticker payload", asset=asset, error=str(e))
            return None

        if ticker["price"] <= 0:
            logger.warning("Ticker price is not positive", asset=asset, price=ticker["price"])
            return None
        return ticker

    async def get_open_interest(self, asset: str) -> Optional[float]:
        """
        Open interest in contracts (base asset units).

        Multiply by the mark price for a USD value.
        """
        data = await self._fetch(f"{self.futures_url}{OPEN_INTEREST_PATH}", {"symbol": get_symbol(asset)})
        if data is None:
            return None

        try:
            return float(data["openInterest"])
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Malformed open interest payload", asset=asset, error=str(e))
            return None

    async def get_funding(self, asset: str) -> Optional[Dict[str, float]]:
        """
        Current funding from the premium index.

        Returns:
            Dict with mark_price, funding_rate_percent (0.01 = 0.01%) and
            next_funding_time (ms), or None
        """
        data = await self._fetch(f"{self.futures_url}{PREMIUM_INDEX_PATH}", {"symbol": get_symbol(asset)})
        if data is None:
            return None

        try:
            return {
                "mark_price": float(data["markPrice"]),
                "funding_rate_percent": float(data["lastFundingRate"]) * 100,
                "next_funding_time": int(data["nextFundingTime"]),
            }
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Malformed premium index payload", asset=asset, error=str(e))
            return None
