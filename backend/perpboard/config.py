"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream endpoints
    okx_rest_base: str = "https://www.okx.com"
    okx_ws_public: str = "wss://ws.okx.com:8443/ws/v5/public"
    coingecko_base: str = "https://api.coingecko.com/api/v3"

    # Redis (indicator cache persistence)
    redis_url: str = "redis://localhost:6379/0"

    # Market selection
    inst_type: str = "SWAP"
    quote_currency: str = "USDT"

    # Ticker feed
    reconnect_delay: float = 1.2
    # REST ticker polling while the push feed is down
    ticker_poll_interval: float = 5.0

    # Indicator scheduler (seconds)
    indicator_ttl: float = 15 * 60
    scheduler_initial_delay: float = 2.0
    scheduler_interval: float = 15 * 60
    item_delay: float = 0.18
    failure_cooldown: float = 0.6
    request_delay: float = 0.1  # between candle requests for one instrument
    daily_candle_limit: int = 60
    weekly_candle_limit: int = 100
    hourly_candle_limit: int = 24
    priority_n: int = 50
    priority_criterion: Literal["volume", "market_cap"] = "volume"

    # Rate-limited fetcher
    fetch_max_attempts: int = 4
    backoff_base: float = 0.4
    backoff_cap: float = 4.0

    # Fundamentals (market cap + funding rates)
    fundamentals_interval: float = 5 * 60

    # Dashboard stream
    stream_interval: float = 2.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
