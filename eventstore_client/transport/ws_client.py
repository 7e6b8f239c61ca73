"""WebSocket client wrapper for event store nodes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import EventStoreConnectionError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class WsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    BINARY = "binary"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class WsMessage:
    """Normalized WebSocket message payload."""

    type: WsMessageType
    data: str | bytes | None = None


class EventStoreWsClient:
    """Wrapper around websockets library for event store nodes."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    async def connect(
        self,
        host: str,
        port: int,
        *,
        path: str = "/",
        secure: bool = False,
        ping_interval: float | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the node websocket."""
        self._ws = await connect_websocket(
            host,
            port,
            path=path,
            secure=secure,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send(self, data: str | bytes) -> None:
        """Send a text or binary message.

        Raises:
            EventStoreConnectionError: If not connected or the send fails
        """
        if self._ws is None:
            raise EventStoreConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(data)
        except ConnectionClosed as err:
            raise EventStoreConnectionError("WebSocket closed during send") from err

    async def receive(self) -> WsMessage:
        """Receive the next message, skipping frames that cannot be normalized."""
        if self._ws is None:
            raise EventStoreConnectionError("WebSocket is not connected")

        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed:
                return WsMessage(type=WsMessageType.CLOSED)
            normalized = self._normalize_message(raw)
            if normalized is not None:
                return normalized

    def __aiter__(self) -> AsyncIterator[WsMessage]:
        if self._ws is None:
            raise EventStoreConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[WsMessage]:
        if self._ws is None:
            raise EventStoreConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield WsMessage(type=WsMessageType.CLOSED)
        except Exception:
            yield WsMessage(type=WsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield WsMessage(type=WsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> WsMessage | None:
        """Normalize raw frames into WsMessage."""
        if isinstance(msg, str):
            return WsMessage(WsMessageType.TEXT, msg)
        if isinstance(msg, (bytes, bytearray, memoryview)):
            return WsMessage(WsMessageType.BINARY, bytes(msg))
        return None
