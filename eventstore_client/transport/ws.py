"""WebSocket helpers for event store node transport."""

from __future__ import annotations

import asyncio

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    EventStoreConnectionError,
    EventStoreHandshakeError,
)


async def connect_websocket(
    host: str,
    port: int,
    *,
    path: str = "/",
    secure: bool = False,
    ping_interval: float | None = None,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a node's WebSocket endpoint.

    Uses the websockets library which properly implements RFC 6455 frame masking.
    Application-level heartbeats are handled by the session, so protocol pings
    are disabled unless ``ping_interval`` is given.

    Args:
        host: Target host
        port: Target port
        path: WebSocket path (default: /)
        secure: Use wss:// instead of ws://
        ping_interval: Interval for protocol ping frames
        timeout: Connection timeout

    Raises:
        EventStoreConnectionError: If the endpoint is unreachable or times out
        EventStoreHandshakeError: If the WebSocket upgrade is rejected
    """
    scheme = "wss" if secure else "ws"
    ws_url = f"{scheme}://{host}:{port}{path}"
    try:
        return await asyncio.wait_for(
            websockets.connect(
                ws_url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise EventStoreConnectionError(
            f"WebSocket connection to {host}:{port} timed out"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise EventStoreHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise EventStoreConnectionError(
            f"WebSocket connection to {host}:{port} failed"
        ) from err
