"""OKX public WebSocket ticker feed using picows.

Subscribes to the ``tickers`` channel for a whole market type and merges
every incoming delta into a live instrument map. Fields missing from a
delta keep their previous values.
"""

import asyncio
import logging
import math
import time
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

import orjson
from picows import WSCloseCode, WSFrame, WSListener, WSMsgType, WSTransport, ws_connect

from perpboard.core.models import FeedState, Ticker
from perpboard.errors import ParseError

logger = logging.getLogger(__name__)

StateCallback = Callable[[FeedState], None]
ListenerFactory = Callable[[], WSListener]
Connector = Callable[[ListenerFactory, str], Awaitable[Any]]


async def picows_connector(listener_factory: ListenerFactory, url: str) -> Any:
    """Open a picows connection with protocol-level keepalive."""
    return await ws_connect(
        listener_factory,
        url,
        enable_auto_ping=True,
        auto_ping_idle_timeout=20,
        auto_ping_reply_timeout=10,
    )


def _parse_float(value: Any) -> float | None:
    """OKX sends numbers as strings; empty or non-finite counts as absent."""
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class OkxTickerListener(WSListener):
    """picows listener forwarding connection events to the TickerFeed."""

    def __init__(self, feed: "TickerFeed"):
        self._feed = feed

    def on_ws_connected(self, transport: WSTransport):
        """Called when WebSocket connection is established."""
        self._feed._on_open(transport)

    def on_ws_disconnected(self, transport: WSTransport):
        """Called when WebSocket is disconnected."""
        self._feed._on_disconnected()

    def on_ws_frame(self, transport: WSTransport, frame: WSFrame):
        """Called when a new frame is received."""
        if frame.msg_type == WSMsgType.TEXT:
            self._feed.handle_message(frame.get_payload_as_utf8_text())
        elif frame.msg_type == WSMsgType.PING:
            transport.send_pong(frame.get_payload_as_bytes())
        elif frame.msg_type == WSMsgType.CLOSE:
            transport.disconnect()


class TickerFeed:
    """Live OKX ticker map with automatic reconnection.

    State machine: CONNECTING -> OPEN -> CLOSED/ERROR -> (reconnect_delay)
    -> CONNECTING, repeated until ``stop()``.
    """

    WS_URL = "wss://ws.okx.com:8443/ws/v5/public"

    def __init__(
        self,
        url: str | None = None,
        inst_type: str = "SWAP",
        reconnect_delay: float = 1.2,
        connector: Connector = picows_connector,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url or self.WS_URL
        self.inst_type = inst_type
        self.reconnect_delay = reconnect_delay
        self._connector = connector
        self._clock = clock

        self._tickers: dict[str, Ticker] = {}
        self._state = FeedState.CLOSED
        self._state_callbacks: list[StateCallback] = []

        self._running = False
        self._task: asyncio.Task | None = None
        self._transport: WSTransport | None = None
        self._disconnected = asyncio.Event()

        self.connect_attempts = 0
        self.messages_received = 0
        self.last_message_at: float | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def tickers(self) -> Mapping[str, Ticker]:
        """Read-only view of the live map (no copy)."""
        return MappingProxyType(self._tickers)

    def get(self, inst_id: str) -> Ticker | None:
        return self._tickers.get(inst_id)

    def snapshot(self) -> dict[str, Ticker]:
        """Shallow copy of the live map."""
        return dict(self._tickers)

    def on_state_change(self, callback: StateCallback) -> None:
        """Register an observer for connection state transitions."""
        self._state_callbacks.append(callback)

    def _set_state(self, state: FeedState) -> None:
        if state == self._state:
            return
        self._state = state
        for callback in self._state_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Feed state callback error: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, subscribe, and keep reconnecting until stopped."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    connect = start

    async def stop(self) -> None:
        """Close the connection and suppress further reconnects."""
        self._running = False
        if self._transport:
            self._transport.send_close(WSCloseCode.OK)
            self._transport.disconnect()
            self._transport = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(FeedState.CLOSED)
        logger.info("Ticker feed stopped")

    async def _run(self) -> None:
        """Connection loop: one reconnect per disconnect, fixed delay."""
        while self._running:
            try:
                await self._connect_and_process()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ticker feed connection error: {e!r}")
                self._set_state(FeedState.ERROR)

            if self._running:
                logger.info(f"Reconnecting ticker feed in {self.reconnect_delay}s...")
                await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_process(self) -> None:
        """Connect and wait until the connection drops."""
        self._disconnected.clear()
        self._set_state(FeedState.CONNECTING)
        self.connect_attempts += 1

        logger.info(f"Connecting to {self.url}")
        await self._connector(lambda: OkxTickerListener(self), self.url)
        await self._disconnected.wait()

    def _on_open(self, transport: WSTransport) -> None:
        self._transport = transport
        if not self._running:
            transport.disconnect()
            return
        self._set_state(FeedState.OPEN)
        self._send_subscribe()

    def _on_disconnected(self) -> None:
        self._transport = None
        if self._state != FeedState.ERROR:
            self._set_state(FeedState.CLOSED)
        self._disconnected.set()

    def _send_subscribe(self) -> None:
        """Subscribe to tickers for every instrument of the market type."""
        if not self._transport:
            return

        msg = {
            "op": "subscribe",
            "args": [{"channel": "tickers", "instType": self.inst_type}],
        }
        self._transport.send(WSMsgType.TEXT, orjson.dumps(msg))
        logger.info(f"Subscribed to {self.inst_type} tickers")

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def handle_message(self, message: str) -> int:
        """
        Apply one inbound frame to the live map.

        Control frames (``pong``, anything carrying ``event``) and malformed
        payloads are dropped without raising.

        Returns:
            Number of instrument deltas merged
        """
        if message == "pong":
            return 0

        try:
            data = orjson.loads(message)
        except orjson.JSONDecodeError as e:
            logger.debug(f"Dropping malformed ticker frame: {e}")
            return 0

        if not isinstance(data, dict):
            return 0

        # subscribe acks and error events
        if "event" in data:
            if data.get("event") == "error":
                logger.warning(f"Ticker feed error event: {data.get('msg')}")
            return 0

        arg = data.get("arg")
        deltas = data.get("data")
        if not isinstance(arg, dict) or arg.get("channel") != "tickers":
            return 0
        if not isinstance(deltas, list):
            return 0

        self.messages_received += 1
        self.last_message_at = self._clock()

        merged = 0
        for delta in deltas:
            try:
                self._merge(delta)
                merged += 1
            except ParseError as e:
                logger.debug(f"Dropping ticker delta: {e}")
        return merged

    def seed(self, rows: list[Any]) -> int:
        """Merge a REST ticker snapshot (same row shape as feed deltas)."""
        merged = 0
        for row in rows:
            try:
                self._merge(row)
                merged += 1
            except ParseError as e:
                logger.debug(f"Dropping snapshot row: {e}")
        return merged

    def _merge(self, delta: Any) -> None:
        """Field-level last-write-wins merge of one instrument delta."""
        if not isinstance(delta, dict):
            raise ParseError(f"delta is {type(delta).__name__}, expected object")

        inst_id = delta.get("instId")
        if not isinstance(inst_id, str) or not inst_id:
            raise ParseError("delta without instId")

        last = _parse_float(delta.get("last"))
        open_24h = _parse_float(delta.get("open24h"))
        volume = _parse_float(delta.get("volCcy24h"))
        ts = _parse_int(delta.get("ts"))
        observed_at = ts if ts is not None else int(self._clock() * 1000)

        ticker = self._tickers.get(inst_id)
        if ticker is None:
            if last is None:
                raise ParseError(f"first delta for {inst_id} has no last price")
            self._tickers[inst_id] = Ticker(
                inst_id=inst_id,
                last_price=last,
                open_24h=open_24h,
                volume_quote_24h=volume,
                observed_at=observed_at,
            )
            return

        if last is not None:
            ticker.last_price = last
        if open_24h is not None:
            ticker.open_24h = open_24h
        if volume is not None:
            ticker.volume_quote_24h = volume
        ticker.observed_at = observed_at
