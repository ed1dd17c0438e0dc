"""Error taxonomy for the market-data engine.

None of these are fatal to the process. Fetch errors are retried inside
the rate-limited fetcher, item errors are logged by the scheduler, parse
errors are dropped by the feed, and connection errors trigger a reconnect.
"""


class MarketDataError(Exception):
    """Base class for market-data failures."""


class TransientNetworkError(MarketDataError):
    """Transport-level failure (connect, read, timeout)."""


class RateLimitError(MarketDataError):
    """Upstream signalled throttling, by status code or response body."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FetchError(MarketDataError):
    """Request completed but the response cannot be used."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(MarketDataError):
    """Malformed feed message, candle row or payload."""


class SchedulerItemError(MarketDataError):
    """A single instrument failed during an indicator pass."""

    def __init__(self, inst_id: str, message: str):
        super().__init__(f"{inst_id}: {message}")
        self.inst_id = inst_id


class FeedConnectionError(MarketDataError):
    """Push connection could not be established or was lost."""
