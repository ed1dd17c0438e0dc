"""Exchange and data-provider clients."""

from perpboard.clients.coingecko import CoinGeckoClient
from perpboard.clients.okx_rest import OkxRestClient, RateLimitedFetcher
from perpboard.clients.okx_ws_ticker import TickerFeed

__all__ = [
    "CoinGeckoClient",
    "OkxRestClient",
    "RateLimitedFetcher",
    "TickerFeed",
]
