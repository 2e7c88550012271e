"""
BTC Signal Desk - Feeds

Async market data clients, liquidation sources and persistence.
"""

from .derivatives_feed import DerivativesFeed
from .liquidation_source import (
    LiquidationSource,
    NullLiquidationSource,
    ProxyLiquidationSource,
    create_liquidation_source,
)
from .market_data import MarketDataClient
from .storage import KeyValueStore, MemoryStore, PositionBook, SQLiteStore

__all__ = [
    "DerivativesFeed",
    "KeyValueStore",
    "LiquidationSource",
    "MarketDataClient",
    "MemoryStore",
    "NullLiquidationSource",
    "PositionBook",
    "ProxyLiquidationSource",
    "SQLiteStore",
    "create_liquidation_source",
]
