"""
Tests for market data, liquidation sources, storage and the derivatives feed.
"""

import os
import sqlite3
import sys
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from analyzers.derivatives import DerivativesAnalyzer
from config import Settings
from feeds.derivatives_feed import DerivativesFeed
from feeds.liquidation_source import (
    LIQUIDATION_HISTORY_ENDPOINT,
    NullLiquidationSource,
    ProxyLiquidationSource,
    create_liquidation_source,
    parse_liquidation_item,
)
from feeds.market_data import MarketDataClient, get_symbol
from feeds.storage import MemoryStore, PositionBook, SQLiteStore
from signals.models import LONG

HOUR = 3600


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def kline(ts, close):
    return [ts, str(close), str(close + 1), str(close - 1), str(close), "12.5", ts + 59_999, "0", 10, "0", "0", "0"]


class TestMarketDataClient:
    """Tests for MarketDataClient parsing."""

    @pytest.fixture
    def client(self):
        """Create a client with fixed URLs."""
        return MarketDataClient(spot_url="https://spot.test/", futures_url="https://futures.test")

    def test_symbols(self):
        """Assets map to USDT pairs; others are rejected."""
        assert get_symbol("btc") == "BTCUSDT"
        with pytest.raises(ValueError):
            get_symbol("DOGE")

    @pytest.mark.asyncio
    async def test_get_klines(self, client):
        """Rows are parsed and sorted oldest first."""
        rows = [kline(120_000, 101.0), kline(60_000, 100.0)]
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = rows
            candles = await client.get_klines("BTC", "1m", limit=5000)

        assert [c.timestamp for c in candles] == [60_000, 120_000]
        assert candles[1].close == 101.0
        assert candles[1].high == 102.0
        assert candles[0].volume == 12.5
        url, params = mock_request.call_args[0]
        assert url == "https://spot.test/api/v3/klines"
        assert params == {"symbol": "BTCUSDT", "interval": "1m", "limit": 1000}

    @pytest.mark.asyncio
    async def test_malformed_klines(self, client):
        """Unparseable rows yield None."""
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = [["not-a-timestamp"]]
            assert await client.get_klines("ETH", "1h") is None

    @pytest.mark.asyncio
    async def test_get_ticker(self, client):
        """The 24h ticker is mapped to floats."""
        payload = {
            "lastPrice": "60000.5",
            "priceChangePercent": "-1.25",
            "highPrice": "61000",
            "lowPrice": "59000",
            "quoteVolume": "123456789.0",
        }
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = payload
            ticker = await client.get_ticker("BTC")

        assert ticker == {
            "price": 60000.5,
            "change_24h": -1.25,
            "high_24h": 61000.0,
            "low_24h": 59000.0,
            "volume_24h": 123456789.0,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"lastPrice": "0", "priceChangePercent": "0", "highPrice": "0", "lowPrice": "0", "quoteVolume": "0"},
        {"lastPrice": "100"},
        None,
    ])
    async def test_invalid_ticker(self, client, payload):
        """Zero prices, missing fields and failed requests yield None."""
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = payload
            assert await client.get_ticker("BNB") is None

    @pytest.mark.asyncio
    async def test_get_open_interest(self, client):
        """Open interest is returned in contracts."""
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"symbol": "BTCUSDT", "openInterest": "81234.567", "time": 1}
            assert await client.get_open_interest("BTC") == pytest.approx(81234.567)
            url, _ = mock_request.call_args[0]
            assert url == "https://futures.test/fapi/v1/openInterest"

    @pytest.mark.asyncio
    async def test_get_funding(self, client):
        """The funding rate is converted to percent."""
        payload = {"markPrice": "60010.1", "lastFundingRate": "0.00010000", "nextFundingTime": 1700000000000}
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = payload
            funding = await client.get_funding("BTC")

        assert funding["mark_price"] == pytest.approx(60010.1)
        assert funding["funding_rate_percent"] == pytest.approx(0.01)
        assert funding["next_funding_time"] == 1700000000000

    @pytest.mark.asyncio
    async def test_network_error_returns_none(self, client):
        """Network errors after retries are mapped to None."""
        with patch.object(client, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = aiohttp.ClientError("connection reset")
            assert await client.get_funding("ETH") is None
            assert await client.get_klines("ETH", "5m") is None


class TestLiquidationSources:
    """Tests for liquidation sources."""

    def test_parse_aggregated_record(self):
        """Aggregated long/short volumes become separate events."""
        events = parse_liquidation_item({
            "price": 60000,
            "longLiquidationUsd": 2_000_000,
            "shortLiquidationUsd": 0,
            "createTime": 1_700_000_000_000,
        })
        assert len(events) == 1
        assert events[0].side == "long"
        assert events[0].volume_usd == 2_000_000
        assert events[0].timestamp == 1_700_000_000

    def test_parse_individual_records(self):
        """Sell-side or type 1 liquidations are longs."""
        sell = parse_liquidation_item({"price": "61000", "volume": "5000", "side": "sell", "time": 1000})
        typed = parse_liquidation_item({"price": 61000, "usd": 10, "type": 2, "leverage": 50})
        assert sell[0].side == "long"
        assert sell[0].price == 61000.0
        assert typed[0].side == "short"
        assert typed[0].leverage == 50

    @pytest.mark.asyncio
    async def test_null_source(self):
        """The null source is unconfigured and empty."""
        source = NullLiquidationSource()
        assert source.is_configured is False
        assert await source.fetch_liquidations("BTC") == []

    @pytest.mark.asyncio
    async def test_proxy_source_filters_records(self):
        """Malformed and empty records are dropped."""
        source = ProxyLiquidationSource("https://proxy.test", api_key="secret")
        data = {"data": [
            {"price": 60000, "longLiquidationUsd": 1e6, "shortLiquidationUsd": 3e6, "time": 1000},
            {"price": "abc", "volume": 1},
            {"price": 0, "volume": 5},
            "junk",
        ]}
        with patch.object(source, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = data
            events = await source.fetch_liquidations("btc")

        assert sorted(e.side for e in events) == ["long", "short"]
        payload = mock_request.call_args[0][0]
        assert payload["endpoint"] == LIQUIDATION_HISTORY_ENDPOINT
        assert payload["params"] == {"symbol": "BTC", "timeType": "24h"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        {"error": True, "message": "invalid key"},
        {"data": {"unexpected": "shape"}},
        None,
    ])
    async def test_proxy_source_bad_payloads(self, response):
        """Error payloads yield no events."""
        source = ProxyLiquidationSource("https://proxy.test")
        with patch.object(source, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = response
            assert await source.fetch_liquidations("ETH") == []

    @pytest.mark.asyncio
    async def test_proxy_source_network_error(self):
        """Network failures yield no events."""
        source = ProxyLiquidationSource("https://proxy.test")
        with patch.object(source, '_make_request', new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = aiohttp.ClientError("down")
            assert await source.fetch_liquidations("BTC") == []

    @pytest.mark.asyncio
    async def test_unconfigured_proxy_skips_request(self):
        """An empty URL never hits the network."""
        source = ProxyLiquidationSource("")
        with patch.object(source, '_make_request', new_callable=AsyncMock) as mock_request:
            assert await source.fetch_liquidations("BTC") == []
            mock_request.assert_not_called()

    def test_factory(self):
        """The factory picks the proxy only when a URL is configured."""
        configured = Settings(_env_file=None, liquidation_proxy_url="https://proxy.test", liquidation_proxy_key="k")
        assert isinstance(create_liquidation_source(configured), ProxyLiquidationSource)
        assert isinstance(create_liquidation_source(Settings(_env_file=None)), NullLiquidationSource)


class TestStores:
    """Tests for the key-value stores."""

    @pytest.fixture(params=["memory", "sqlite"])
    def store(self, request, tmp_path):
        """Each store implementation."""
        if request.param == "memory":
            return MemoryStore()
        return SQLiteStore(str(tmp_path / "nested" / "desk.db"))

    def test_set_get_remove(self, store):
        """Values round-trip through JSON and can be removed."""
        store.set("derivatives:BTC", {"a": 1, "b": [1.5, 2]})
        assert store.get("derivatives:BTC") == {"a": 1, "b": [1.5, 2]}
        store.set("derivatives:BTC", {"a": 2})
        assert store.get("derivatives:BTC") == {"a": 2}
        store.remove("derivatives:BTC")
        assert store.get("derivatives:BTC") is None
        store.remove("missing")

    def test_sqlite_persists_across_instances(self, tmp_path):
        """A new SQLiteStore on the same file sees earlier writes."""
        path = str(tmp_path / "desk.db")
        SQLiteStore(path).set("k", [1, 2, 3])
        assert SQLiteStore(path).get("k") == [1, 2, 3]

    def test_corrupt_entries_read_as_missing(self, tmp_path):
        """Undecodable values are treated as a miss."""
        memory = MemoryStore()
        memory._data["k"] = "{not json"
        assert memory.get("k") is None

        path = tmp_path / "desk.db"
        store = SQLiteStore(str(path))
        with sqlite3.connect(path) as conn:
            conn.execute("INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)", ("k", "{not json", 0))
            conn.commit()
        assert store.get("k") is None


class TestPositionBook:
    """Tests for PositionBook."""

    @pytest.fixture
    def book(self):
        """Create a position book over a memory store."""
        return PositionBook(MemoryStore())

    @pytest.fixture
    def raw(self):
        """Valid position input."""
        return {"asset": "btc", "direction": "long", "entry_price": 50000, "size": 1, "leverage": 10}

    def test_add_and_list(self, book, raw):
        """Added positions are listed per asset."""
        position = book.add(raw)
        assert position.asset == "BTC"
        assert [p.direction for p in book.list("BTC")] == [LONG]
        assert book.list("ETH") == []

    def test_add_invalid(self, book, raw):
        """Invalid input is rejected and not stored."""
        raw["leverage"] = 0
        with pytest.raises(ValueError):
            book.add(raw)
        assert book.list("BTC") == []

    def test_partial_close_and_dca(self, book, raw):
        """Size changes only through recorded closes and DCA fills."""
        book.add(raw)
        closed = book.record_partial_close("BTC", 0, 0.4)
        assert closed.closed_size == pytest.approx(0.4)
        assert closed.current_size == pytest.approx(0.6)

        added = book.record_dca("BTC", 0, 0.2)
        assert added.added_size == pytest.approx(0.2)
        assert book.list("BTC")[0].current_size == pytest.approx(0.8)

    def test_full_close_removes_position(self, book, raw):
        """Closing the remaining size removes the position."""
        book.add(raw)
        assert book.record_partial_close("BTC", 0, 1.0) is None
        assert book.list("BTC") == []

    def test_invalid_updates(self, book, raw):
        """Bad indexes and non-positive amounts raise."""
        book.add(raw)
        with pytest.raises(ValueError):
            book.record_partial_close("BTC", 3, 0.1)
        with pytest.raises(ValueError):
            book.record_dca("BTC", 0, 0)

    def test_invalid_stored_entries_skipped(self, book, raw):
        """Corrupted stored positions are skipped."""
        book.add(raw)
        stored = book.store.get("positions:BTC")
        stored.append({"asset": "BTC", "direction": "SIDEWAYS"})
        book.store.set("positions:BTC", stored)
        assert len(book.list("BTC")) == 1

    def test_clear(self, book, raw):
        """clear() drops every position of the asset."""
        book.add(raw)
        book.clear("BTC")
        assert book.list("BTC") == []


class TestDerivativesFeed:
    """Tests for DerivativesFeed."""

    @pytest.fixture
    def clock(self):
        """Create a fake clock."""
        return FakeClock()

    @pytest.fixture
    def client(self):
        """Market data client returning 1000 BTC of open interest at 60000."""
        client = Mock()
        client.get_open_interest = AsyncMock(return_value=1000.0)
        client.get_funding = AsyncMock(return_value={
            "mark_price": 60000.0,
            "funding_rate_percent": 0.01,
            "next_funding_time": 1_700_000_100_000,
        })
        return client

    @pytest.fixture
    def store(self):
        """Create a memory store."""
        return MemoryStore()

    @pytest.fixture
    def feed(self, client, store, clock):
        """Create a feed without reuse interval."""
        return DerivativesFeed(client, store, clock=clock)

    @pytest.mark.asyncio
    async def test_fresh_snapshot(self, feed, store, clock):
        """Fresh data is classified and persisted."""
        snapshot = await feed.get_snapshot("BTC")

        assert snapshot.is_stale is False
        assert snapshot.open_interest_usd == pytest.approx(6e7)
        assert snapshot.open_interest_change_24h == 0.0
        assert snapshot.funding.level == "low"
        assert snapshot.timestamp == clock.now
        assert store.get("derivatives:BTC") is not None
        assert store.get("oi_history:BTC") == [[clock.now, 6e7]]

    @pytest.mark.asyncio
    async def test_change_from_history(self, feed, store, clock):
        """The 24h change is measured against persisted history."""
        store.set("oi_history:BTC", [[clock.now - 24 * HOUR, 5e7], [clock.now - 2 * HOUR, 5.5e7]])
        snapshot = await feed.get_snapshot("BTC")
        assert snapshot.open_interest_change_24h == pytest.approx(20.0)
        assert snapshot.open_interest.signal == "buildup"

    @pytest.mark.asyncio
    async def test_failure_serves_last_good(self, feed, client, clock):
        """A failed fetch returns the last valid snapshot marked stale."""
        fresh = await feed.get_snapshot("BTC")
        client.get_funding.return_value = None
        clock.now += HOUR

        snapshot = await feed.get_snapshot("BTC")
        assert snapshot.is_stale is True
        assert snapshot.error == "funding unavailable"
        assert snapshot.open_interest_usd == fresh.open_interest_usd
        assert snapshot.timestamp == fresh.timestamp

    @pytest.mark.asyncio
    async def test_expired_last_good_uses_fallback(self, feed, client, clock):
        """After 24h the static fallback replaces the last valid snapshot."""
        await feed.get_snapshot("BTC")
        client.get_open_interest.return_value = None
        clock.now += 25 * HOUR

        snapshot = await feed.get_snapshot("BTC")
        assert snapshot.is_stale is True
        assert snapshot.error == "open interest unavailable"
        assert snapshot.open_interest_usd == DerivativesAnalyzer.FALLBACK_OPEN_INTEREST_USD

    @pytest.mark.asyncio
    async def test_invalid_mark_price(self, feed, client):
        """A zero mark price is treated as a failure."""
        client.get_funding.return_value = {"mark_price": 0.0, "funding_rate_percent": 0.01}
        snapshot = await feed.get_snapshot("ETH")
        assert snapshot.is_stale is True
        assert snapshot.error == "invalid open interest or mark price"

    @pytest.mark.asyncio
    async def test_unreadable_last_good(self, feed, store):
        """A corrupted stored snapshot is ignored."""
        store.set("derivatives:BNB", {"bogus": 1})
        assert feed.load_last_good("BNB") is None

    @pytest.mark.asyncio
    async def test_min_interval_reuses_snapshot(self, client, store, clock):
        """Fresh snapshots are reused within the minimum interval."""
        feed = DerivativesFeed(client, store, min_interval=300, clock=clock)
        first = await feed.get_snapshot("BTC")
        clock.now += 100
        assert await feed.get_snapshot("BTC") is first
        assert client.get_open_interest.await_count == 1

        clock.now += 400
        await feed.get_snapshot("BTC")
        assert client.get_open_interest.await_count == 2
