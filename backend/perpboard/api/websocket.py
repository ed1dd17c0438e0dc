"""WebSocket stream of composite records and status for dashboard clients.

Clients start subscribed to every channel and can narrow that with
``{"type": "subscribe", "channels": [...]}``. A ``{"type": "ping"}`` gets a
``pong`` back.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

import orjson
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CHANNELS = frozenset({"records", "status"})
SEND_TIMEOUT = 5.0
IDLE_TIMEOUT = 60.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StreamMessage(BaseModel):
    """Envelope for every frame sent to a client."""

    type: str  # "connected", "records", "status", "subscribed", "pong", "ping", "error"
    data: Any = None
    timestamp: datetime

    def encode(self) -> str:
        return orjson.dumps(self.model_dump(), default=str).decode()


def make_message(type_: str, data: Any = None) -> StreamMessage:
    return StreamMessage(type=type_, data=data, timestamp=_now())


class StreamHub:
    """Tracks connected clients and the channels each one wants."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT):
        self.send_timeout = send_timeout
        # id(websocket) -> (websocket, channels)
        self._clients: dict[int, tuple[WebSocket, set[str]]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def subscribers(self, channel: str) -> int:
        return sum(1 for _, channels in self._clients.values() if channel in channels)

    async def register(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients[id(websocket)] = (websocket, set(CHANNELS))
        logger.info(f"Stream client connected ({self.connection_count} total)")

    def unregister(self, websocket: WebSocket) -> None:
        if self._clients.pop(id(websocket), None) is not None:
            logger.info(f"Stream client disconnected ({self.connection_count} total)")

    def subscribe(self, websocket: WebSocket, channels: Iterable[str]) -> set[str]:
        """Replace a client's channel set. Unknown channel names raise ValueError."""
        wanted = set(channels)
        unknown = wanted - CHANNELS
        if unknown:
            raise ValueError(f"Unknown channels: {sorted(unknown)}")
        self._clients[id(websocket)] = (websocket, wanted)
        return wanted

    async def publish(self, channel: str, data: Any) -> int:
        """
        Send one frame to every client subscribed to ``channel``.

        The frame is encoded once. Clients that fail or time out are dropped.

        Returns:
            Number of clients the frame was delivered to
        """
        targets = [ws for ws, channels in self._clients.values() if channel in channels]
        if not targets:
            return 0

        text = make_message(channel, data).encode()
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(text), self.send_timeout) for ws in targets),
            return_exceptions=True,
        )

        delivered = 0
        for ws, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(f"Dropping stream client after send failure: {result!r}")
                self.unregister(ws)
            else:
                delivered += 1
        return delivered

    async def publish_records(self, records: list[dict]) -> int:
        return await self.publish("records", records)

    async def publish_status(self, status: dict) -> int:
        return await self.publish("status", status)


hub = StreamHub()


async def websocket_endpoint(websocket: WebSocket):
    """Stream endpoint; frames are ``{"type", "data", "timestamp"}`` objects."""
    await hub.register(websocket)
    try:
        await websocket.send_text(
            make_message("connected", {"channels": sorted(CHANNELS)}).encode()
        )

        while True:
            try:
                text = await asyncio.wait_for(websocket.receive_text(), timeout=IDLE_TIMEOUT)
            except asyncio.TimeoutError:
                await websocket.send_text(make_message("ping").encode())
                continue

            reply = handle_client_message(websocket, text)
            await websocket.send_text(reply.encode())

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Stream client error: {e!r}")
    finally:
        hub.unregister(websocket)


def handle_client_message(websocket: WebSocket, text: str) -> StreamMessage:
    """Build the reply to one client frame."""
    try:
        message = orjson.loads(text)
    except orjson.JSONDecodeError:
        return make_message("error", {"message": "Invalid JSON"})
    if not isinstance(message, dict):
        return make_message("error", {"message": "Expected a JSON object"})

    msg_type = message.get("type", "")
    if msg_type == "ping":
        return make_message("pong")
    if msg_type == "subscribe":
        channels = message.get("channels")
        if not isinstance(channels, list) or not all(isinstance(c, str) for c in channels):
            return make_message("error", {"message": "channels must be a list of names"})
        try:
            wanted = hub.subscribe(websocket, channels)
        except ValueError as e:
            return make_message("error", {"message": str(e)})
        return make_message("subscribed", {"channels": sorted(wanted)})

    return make_message("error", {"message": f"Unknown message type: {msg_type}"})
