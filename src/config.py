"""
BTC Signal Desk - Application configuration

Settings are loaded from environment variables (and an optional .env file)
and validated through Pydantic.
"""

from functools import lru_cache
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SUPPORTED_ASSETS = ("BTC", "ETH", "BNB")
SUPPORTED_TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(
        default="INFO",
        description="Root logging level",
    )

    # Market data
    binance_api_url: str = Field(
        default="https://api.binance.com",
        description="Binance spot REST base URL (klines, 24h ticker)",
    )
    binance_futures_url: str = Field(
        default="https://fapi.binance.com",
        description="Binance USD-M futures REST base URL (open interest, funding)",
    )
    liquidation_proxy_url: str = Field(
        default="",
        description="Liquidation history proxy URL; empty disables real liquidation data",
    )
    liquidation_proxy_key: str = Field(
        default="",
        description="API key sent to the liquidation proxy",
    )
    http_timeout: int = Field(
        default=10,
        description="Total HTTP request timeout in seconds",
    )
    retry_attempts: int = Field(
        default=2,
        description="Attempts per HTTP request before giving up",
    )

    # Recalculation loop
    price_poll_interval: int = Field(
        default=300,
        description="Seconds between price/candle polls",
    )
    derivatives_poll_interval: int = Field(
        default=300,
        description="Seconds between open interest / funding polls",
    )
    recalc_price_threshold: float = Field(
        default=0.005,
        description="Relative price move that forces a recalculation (0.005 = 0.5%)",
    )
    recalc_ttl_minutes: int = Field(
        default=15,
        description="Minutes after which results are recalculated regardless of price",
    )

    assets: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["BTC", "ETH", "BNB"],
        description="Assets analysed on every cycle",
    )
    timeframes: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["5m", "15m", "30m", "1h", "4h"],
        description="Intraday timeframes analysed on every cycle",
    )
    candle_limit: int = Field(
        default=200,
        description="Candles requested per asset/timeframe",
    )
    top_signals: int = Field(
        default=3,
        description="Number of ranked signals reported per cycle",
    )

    # Power Law / portfolio
    portfolio_value: float = Field(
        default=10000.0,
        description="Portfolio value in USD used for loan sizing",
    )
    interest_rate: float = Field(
        default=0.0537,
        description="Annual loan interest rate (0.0537 = 5.37%)",
    )

    # Persistence
    storage_path: str = Field(
        default="data/desk.db",
        description="SQLite file for last-known-good snapshots and positions",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Uppercase and validate the log level."""
        level = str(v).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("assets", mode="before")
    @classmethod
    def parse_assets(cls, v):
        """Parse assets from a comma separated string and validate them."""
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        assets = [str(item).upper() for item in v]
        unknown = [a for a in assets if a not in SUPPORTED_ASSETS]
        if unknown:
            raise ValueError(f"Unsupported assets: {unknown}")
        return assets

    @field_validator("timeframes", mode="before")
    @classmethod
    def parse_timeframes(cls, v):
        """Parse timeframes from a comma separated string and validate them."""
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        unknown = [tf for tf in v if tf not in SUPPORTED_TIMEFRAMES]
        if unknown:
            raise ValueError(f"Unsupported timeframes: {unknown}")
        return list(v)

    @field_validator("price_poll_interval", "derivatives_poll_interval")
    @classmethod
    def check_interval(cls, v: int) -> int:
        """Reject polling intervals under 10 seconds."""
        if v < 10:
            raise ValueError("Polling interval must be at least 10 seconds")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return cached application settings.

    Returns:
        Settings: Application settings
    """
    return Settings()


settings = get_settings()
