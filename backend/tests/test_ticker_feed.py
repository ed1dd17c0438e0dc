"""Tests for the OKX ticker feed."""

import asyncio

import orjson
import pytest

from perpboard.clients.okx_ws_ticker import TickerFeed
from perpboard.core.models import FeedState


def tickers_message(*deltas: dict) -> str:
    return orjson.dumps({
        "arg": {"channel": "tickers", "instType": "SWAP"},
        "data": list(deltas),
    }).decode()


class FakeTransport:
    """Stands in for a picows transport; disconnect notifies the listener."""

    def __init__(self, listener):
        self.listener = listener
        self.sent: list[bytes] = []
        self.closed = False
        self.disconnected = False

    def send(self, msg_type, payload):
        self.sent.append(payload)

    def send_close(self, code):
        self.closed = True

    def disconnect(self):
        if self.disconnected:
            return
        self.disconnected = True
        self.listener.on_ws_disconnected(self)


class FakeConnector:
    """Records connections; the first ``fail`` attempts raise."""

    def __init__(self, fail: int = 0):
        self.fail = fail
        self.attempts = 0
        self.transports: list[FakeTransport] = []

    async def __call__(self, listener_factory, url):
        self.attempts += 1
        if self.fail:
            self.fail -= 1
            raise OSError("connection refused")
        listener = listener_factory()
        transport = FakeTransport(listener)
        self.transports.append(transport)
        listener.on_ws_connected(transport)
        return transport, listener


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestMessageHandling:
    """Tests for delta merging and control messages."""

    def test_new_instrument(self):
        feed = TickerFeed(clock=lambda: 1000.0)

        merged = feed.handle_message(tickers_message({
            "instId": "BTC-USDT-SWAP",
            "last": "65000.5",
            "open24h": "64000",
            "volCcy24h": "1234567.8",
            "ts": "1700000000000",
        }))

        assert merged == 1
        ticker = feed.get("BTC-USDT-SWAP")
        assert ticker.last_price == 65000.5
        assert ticker.open_24h == 64000.0
        assert ticker.volume_quote_24h == 1234567.8
        assert ticker.observed_at == 1700000000000
        assert ticker.base_symbol == "BTC"
        assert ticker.change_24h_pct == pytest.approx(1000.5 / 64000)
        assert feed.messages_received == 1
        assert feed.last_message_at == 1000.0

    def test_partial_update_keeps_other_fields(self):
        """A delta with only ``last`` leaves open24h and volume untouched."""
        feed = TickerFeed()
        feed.handle_message(tickers_message({
            "instId": "ETH-USDT-SWAP", "last": "3000", "open24h": "2900", "volCcy24h": "500",
        }))

        feed.handle_message(tickers_message({"instId": "ETH-USDT-SWAP", "last": "3100"}))

        ticker = feed.get("ETH-USDT-SWAP")
        assert ticker.last_price == 3100.0
        assert ticker.open_24h == 2900.0
        assert ticker.volume_quote_24h == 500.0

    def test_unparsable_field_keeps_previous(self):
        feed = TickerFeed()
        feed.handle_message(tickers_message({"instId": "ETH-USDT-SWAP", "last": "3000", "open24h": "2900"}))

        feed.handle_message(tickers_message({"instId": "ETH-USDT-SWAP", "last": "", "open24h": "abc"}))

        ticker = feed.get("ETH-USDT-SWAP")
        assert ticker.last_price == 3000.0
        assert ticker.open_24h == 2900.0

    def test_new_instrument_without_last_dropped(self):
        feed = TickerFeed()

        merged = feed.handle_message(tickers_message(
            {"instId": "NEW-USDT-SWAP", "open24h": "1"},
            {"instId": "SOL-USDT-SWAP", "last": "150"},
        ))

        assert merged == 1
        assert feed.get("NEW-USDT-SWAP") is None
        assert feed.get("SOL-USDT-SWAP") is not None

    def test_control_messages_ignored(self):
        feed = TickerFeed()

        assert feed.handle_message("pong") == 0
        assert feed.handle_message(orjson.dumps({
            "event": "subscribe", "arg": {"channel": "tickers", "instType": "SWAP"},
        }).decode()) == 0
        assert feed.handle_message(orjson.dumps({
            "event": "error", "code": "60012", "msg": "Invalid request",
        }).decode()) == 0
        assert feed.messages_received == 0
        assert len(feed.tickers) == 0

    def test_malformed_dropped(self):
        feed = TickerFeed()

        assert feed.handle_message("{not json") == 0
        assert feed.handle_message("[1, 2]") == 0
        assert feed.handle_message(orjson.dumps({"arg": {"channel": "trades"}, "data": []}).decode()) == 0
        assert feed.handle_message(orjson.dumps({"arg": {"channel": "tickers"}, "data": "x"}).decode()) == 0

    def test_tickers_view_is_read_only(self):
        feed = TickerFeed()
        feed.handle_message(tickers_message({"instId": "BTC-USDT-SWAP", "last": "1"}))

        with pytest.raises(TypeError):
            feed.tickers["X"] = None

        snapshot = feed.snapshot()
        snapshot.clear()
        assert len(feed.tickers) == 1

    def test_seed_from_rest_snapshot(self):
        feed = TickerFeed()

        merged = feed.seed([
            {"instId": "BTC-USDT-SWAP", "last": "1", "volCcy24h": "10"},
            {"instId": "BAD-USDT-SWAP"},
        ])

        assert merged == 1
        assert feed.get("BTC-USDT-SWAP").volume_quote_24h == 10.0


class TestConnectionLifecycle:
    """Tests for subscribe, reconnect and stop."""

    @pytest.mark.asyncio
    async def test_subscribes_on_open(self):
        connector = FakeConnector()
        feed = TickerFeed(inst_type="SWAP", reconnect_delay=0.01, connector=connector)

        await feed.start()
        await wait_until(lambda: feed.state == FeedState.OPEN)

        sent = orjson.loads(connector.transports[0].sent[0])
        assert sent == {"op": "subscribe", "args": [{"channel": "tickers", "instType": "SWAP"}]}
        await feed.stop()

    @pytest.mark.asyncio
    async def test_one_reconnect_per_disconnect(self):
        connector = FakeConnector()
        states = []
        feed = TickerFeed(reconnect_delay=0.01, connector=connector)
        feed.on_state_change(states.append)

        await feed.start()
        await wait_until(lambda: len(connector.transports) == 1)

        connector.transports[0].disconnect()
        await wait_until(lambda: len(connector.transports) == 2)
        await asyncio.sleep(0.05)

        assert len(connector.transports) == 2
        assert states == [
            FeedState.CONNECTING, FeedState.OPEN, FeedState.CLOSED,
            FeedState.CONNECTING, FeedState.OPEN,
        ]
        await feed.stop()

    @pytest.mark.asyncio
    async def test_connect_failure_goes_to_error_then_retries(self):
        connector = FakeConnector(fail=1)
        states = []
        feed = TickerFeed(reconnect_delay=0.01, connector=connector)
        feed.on_state_change(states.append)

        await feed.start()
        await wait_until(lambda: feed.state == FeedState.OPEN)

        assert connector.attempts == 2
        assert feed.connect_attempts == 2
        assert states == [FeedState.CONNECTING, FeedState.ERROR, FeedState.CONNECTING, FeedState.OPEN]
        await feed.stop()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        connector = FakeConnector()
        feed = TickerFeed(reconnect_delay=0.01, connector=connector)

        await feed.connect()
        await feed.connect()
        await wait_until(lambda: feed.state == FeedState.OPEN)
        await asyncio.sleep(0.02)

        assert connector.attempts == 1
        await feed.stop()

    @pytest.mark.asyncio
    async def test_stop_suppresses_reconnect(self):
        connector = FakeConnector()
        feed = TickerFeed(reconnect_delay=0.01, connector=connector)

        await feed.start()
        await wait_until(lambda: len(connector.transports) == 1)

        await feed.stop()
        await asyncio.sleep(0.05)

        assert connector.transports[0].closed
        assert connector.attempts == 1
        assert feed.state == FeedState.CLOSED

    @pytest.mark.asyncio
    async def test_state_callback_error_does_not_break_feed(self):
        connector = FakeConnector()
        feed = TickerFeed(reconnect_delay=0.01, connector=connector)

        def broken(state):
            raise RuntimeError("observer bug")

        feed.on_state_change(broken)
        await feed.start()
        await wait_until(lambda: feed.state == FeedState.OPEN)
        await feed.stop()
