"""Transport layer for the event store client.

This package contains the WebSocket IO used by the connection session.

Components:
- ws: WebSocket connection establishment
- ws_client: WebSocket message send/receive and iteration
"""

from .ws import connect_websocket
from .ws_client import EventStoreWsClient, WsMessage, WsMessageType

__all__ = [
    "EventStoreWsClient",
    "WsMessage",
    "WsMessageType",
    "connect_websocket",
]
