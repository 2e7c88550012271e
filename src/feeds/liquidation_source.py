"""
BTC Signal Desk - Liquidation history sources

Real liquidation events are optional. When no proxy is configured the desk
uses NullLiquidationSource and the estimator falls back to ATR zones.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from analyzers.liquidations import LiquidationEvent
from config import Settings, settings

logger = structlog.get_logger()

LIQUIDATION_HISTORY_ENDPOINT = "/api/futures/liquidation/history"
DEFAULT_LEVERAGE = 20


def parse_liquidation_item(item: Dict[str, Any]) -> List[LiquidationEvent]:
    """
    Convert one upstream record into liquidation events.

    Aggregated records (longLiquidationUsd / shortLiquidationUsd) yield up to
    two events, individual liquidations yield one.
    """
    timestamp = float(item.get("createTime") or item.get("time") or time.time() * 1000) / 1000
    price = float(item.get("price") or 0)

    if item.get("longLiquidationUsd") or item.get("shortLiquidationUsd"):
        events = []
        long_volume = float(item.get("longLiquidationUsd") or 0)
        short_volume = float(item.get("shortLiquidationUsd") or 0)
        if long_volume > 0:
            events.append(LiquidationEvent(price, long_volume, "long", timestamp, DEFAULT_LEVERAGE))
        if short_volume > 0:
            events.append(LiquidationEvent(price, short_volume, "short", timestamp, DEFAULT_LEVERAGE))
        return events

    volume = float(item.get("volume") or item.get("usd") or 0)
    side = "long" if item.get("side") == "sell" or item.get("type") == 1 else "short"
    leverage = float(item.get("leverage") or DEFAULT_LEVERAGE)
    return [LiquidationEvent(price, volume, side, timestamp, leverage)]


class LiquidationSource(ABC):
    """Provider of recent liquidation events for an asset."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the source can return real data."""

    @abstractmethod
    async def fetch_liquidations(self, asset: str) -> List[LiquidationEvent]:
        """Recent liquidation events, empty when unavailable."""

    async def close(self) -> None:
        """Release resources."""


class NullLiquidationSource(LiquidationSource):
    """Source used when no liquidation backend is configured."""

    @property
    def is_configured(self) -> bool:
        return False

    async def fetch_liquidations(self, asset: str) -> List[LiquidationEvent]:
        return []


class ProxyLiquidationSource(LiquidationSource):
    """
    Liquidation history through an HTTP proxy.

    The proxy receives {"endpoint", "params"} as a JSON body and answers with
    {"data": [...]} or {"error": ..., "message": ...}.
    """

    def __init__(self, url: str, api_key: str = "", timeout: Optional[int] = None, time_type: str = "24h"):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout or settings.http_timeout
        self.time_type = time_type
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

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
    async def _make_request(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        async with session.post(self.url, json=payload, headers=headers, timeout=timeout) as response:
            if response.status == 200:
                return await response.json()
            logger.warning("Liquidation proxy error", url=self.url, status=response.status)
            return None

    async def fetch_liquidations(self, asset: str) -> List[LiquidationEvent]:
        """
        Liquidation events of the last `time_type` window.

        Args:
            asset: BTC / ETH / BNB

        Returns:
            List[LiquidationEvent], empty on any failure
        """
        if not self.is_configured:
            return []

        payload = {
            "endpoint": LIQUIDATION_HISTORY_ENDPOINT,
            "params": {"symbol": asset.upper(), "timeType": self.time_type},
        }
        try:
            data = await self._make_request(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Liquidation proxy request failed", asset=asset, error=str(e))
            return []

        if not data:
            return []
        if data.get("error"):
            logger.warning("Liquidation proxy returned an error", asset=asset, error=data.get("message") or data["error"])
            return []

        raw = data.get("data") or []
        if not isinstance(raw, list):
            logger.warning("Unexpected liquidation payload", asset=asset, payload_type=type(raw).__name__)
            return []

        events: List[LiquidationEvent] = []
        for item in raw:
            try:
                events.extend(parse_liquidation_item(item))
            except (ValueError, TypeError, AttributeError) as e:
                logger.debug("Skipping malformed liquidation record", asset=asset, error=str(e))

        events = [e for e in events if e.price > 0 and e.volume_usd > 0]
        logger.info("Liquidation events fetched", asset=asset, count=len(events))
        return events


def create_liquidation_source(config: Optional[Settings] = None) -> LiquidationSource:
    """Proxy source when a URL is configured, otherwise the null source."""
    config = config or settings
    if config.liquidation_proxy_url:
        return ProxyLiquidationSource(config.liquidation_proxy_url, config.liquidation_proxy_key, config.http_timeout)
    return NullLiquidationSource()
