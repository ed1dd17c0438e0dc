"""API endpoints."""

from perpboard.api.routes import build_status, router
from perpboard.api.websocket import StreamHub, hub, websocket_endpoint

__all__ = [
    "build_status",
    "router",
    "hub",
    "websocket_endpoint",
    "StreamHub",
]
