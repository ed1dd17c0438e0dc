"""Tests for REST ticker polling."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from perpboard.clients.okx_ws_ticker import TickerFeed
from perpboard.core.models import FeedState
from perpboard.errors import TransientNetworkError
from perpboard.services import TickerPoller

SNAPSHOT = [
    {"instId": "BTC-USDT-SWAP", "last": "65000", "open24h": "64000", "volCcy24h": "3000000000"},
    {"instId": "ETH-USDT-SWAP", "last": "3000", "open24h": "3100"},
    {"instId": "BROKEN-USDT-SWAP"},
]


def make_poller(feed=None, interval: float = 0.01):
    source = AsyncMock()
    source.get_tickers = AsyncMock(return_value=SNAPSHOT)
    return TickerPoller(source, feed or TickerFeed(), interval=interval), source


class TestPoll:
    """Tests for one snapshot merge."""

    @pytest.mark.asyncio
    async def test_seeds_feed(self):
        poller, source = make_poller()

        merged = await poller.poll()

        assert merged == 2
        source.get_tickers.assert_awaited_once_with("SWAP")
        assert poller.feed.get("BTC-USDT-SWAP").open_24h == 64000.0
        assert poller.feed.get("ETH-USDT-SWAP").volume_quote_24h is None
        assert poller.feed.get("BROKEN-USDT-SWAP") is None

    @pytest.mark.asyncio
    async def test_snapshot_keeps_fields_it_lacks(self):
        poller, source = make_poller()
        await poller.poll()
        source.get_tickers.return_value = [{"instId": "BTC-USDT-SWAP", "last": "66000"}]

        await poller.poll()

        btc = poller.feed.get("BTC-USDT-SWAP")
        assert btc.last_price == 66000.0
        assert btc.open_24h == 64000.0

    @pytest.mark.asyncio
    async def test_failure_returns_zero(self):
        poller, source = make_poller()
        source.get_tickers.side_effect = TransientNetworkError("down")

        assert await poller.poll() == 0
        assert poller.polls == 0
        assert poller.feed.tickers == {}


class TestPollingLoop:
    """Tests for background polling while the feed is down."""

    @pytest.mark.asyncio
    async def test_polls_while_feed_closed(self):
        poller, source = make_poller()
        assert poller.feed.state == FeedState.CLOSED

        await poller.start()
        for _ in range(100):
            if poller.polls >= 2:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        assert poller.polls >= 2
        assert "BTC-USDT-SWAP" in poller.feed.tickers

    @pytest.mark.asyncio
    async def test_idle_while_feed_open(self):
        feed = TickerFeed()
        feed._set_state(FeedState.OPEN)
        poller, source = make_poller(feed)

        await poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()

        source.get_tickers.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_cancels(self):
        poller, _ = make_poller(interval=3600)

        await poller.start()
        task = poller._task
        await poller.start()
        assert poller._task is task

        await poller.stop()
        assert poller._task is None
        assert task.cancelled() or task.done()
