"""Pytest configuration and fixtures for eventstore_client tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from eventstore_client import (
    ConnectionSettings,
    EndPoint,
    EventStoreClient,
    Frame,
    FrameKind,
    JsonFrameCodec,
    UserCredentials,
)
from eventstore_client.errors import EventStoreConnectionError
from eventstore_client.transport.ws_client import WsMessage, WsMessageType

ENDPOINT = EndPoint("localhost", 1113)

Responder = Callable[[Frame], Frame | list[Frame] | None]


class FakeWsClient:
    """In-memory stand-in for EventStoreWsClient, driven by a FakeServer."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.inbound: asyncio.Queue[WsMessage] = asyncio.Queue()
        self.sent: list[Frame] = []
        self.connected = False
        self.closed = False
        self.connect_kwargs: dict[str, Any] = {}

    async def connect(self, host: str, port: int, **kwargs: Any) -> None:
        if self.server.refuse_connect:
            self.server.refuse_connect -= 1
            raise EventStoreConnectionError(f"Connection to {host}:{port} refused")
        self.connected = True
        self.connect_kwargs = {"host": host, "port": port, **kwargs}
        self.server.connect_count += 1

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(WsMessage(WsMessageType.CLOSED))

    async def send(self, data: str | bytes) -> None:
        if self.closed:
            raise EventStoreConnectionError("WebSocket closed during send")
        frame = self.server.codec.decode(data)
        self.sent.append(frame)
        self.server.handle(self, frame)

    async def receive(self) -> WsMessage:
        return await self.inbound.get()

    def __aiter__(self) -> AsyncIterator[WsMessage]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[WsMessage]:
        while True:
            msg = await self.inbound.get()
            yield msg
            if msg.type in (WsMessageType.CLOSED, WsMessageType.ERROR):
                return

    def push(self, frame: Frame) -> None:
        """Deliver a frame from the server to the client."""
        self.inbound.put_nowait(WsMessage(WsMessageType.TEXT, self.server.codec.encode(frame)))

    def drop(self) -> None:
        """Simulate the server dropping the connection."""
        self.closed = True
        self.inbound.put_nowait(WsMessage(WsMessageType.CLOSED))


class FakeServer:
    """Scripted server: answers the handshake and dispatches to responders."""

    def __init__(self) -> None:
        self.codec = JsonFrameCodec()
        self.clients: list[FakeWsClient] = []
        self.responders: dict[FrameKind, Responder] = {}
        self.connect_count = 0
        self.refuse_connect = 0
        self.reject_auth = False
        self.silent_handshake = False
        self.ignore_heartbeats = False

    @property
    def client(self) -> FakeWsClient:
        """The most recently created connection."""
        return self.clients[-1]

    def received(self, kind: FrameKind | None = None) -> list[Frame]:
        frames = [frame for client in self.clients for frame in client.sent]
        if kind is None:
            return frames
        return [frame for frame in frames if frame.kind is kind]

    def respond(self, kind: FrameKind, responder: Responder) -> None:
        self.responders[kind] = responder

    def make_client(self, *args: Any, **kwargs: Any) -> FakeWsClient:
        client = FakeWsClient(self)
        self.clients.append(client)
        return client

    def handle(self, client: FakeWsClient, frame: Frame) -> None:
        if frame.kind is FrameKind.IDENTIFY_CLIENT:
            if not self.silent_handshake:
                client.push(Frame(FrameKind.CLIENT_IDENTIFIED, frame.correlation_id))
            return
        if frame.kind is FrameKind.AUTHENTICATE:
            kind = FrameKind.NOT_AUTHENTICATED if self.reject_auth else FrameKind.AUTHENTICATED
            client.push(Frame(kind, frame.correlation_id, {"message": "Bad credentials"}))
            return
        if frame.kind is FrameKind.HEARTBEAT_REQUEST:
            if not self.ignore_heartbeats:
                client.push(Frame(FrameKind.HEARTBEAT_RESPONSE, frame.correlation_id))
            return

        responder = self.responders.get(frame.kind)
        if responder is None:
            return
        result = responder(frame)
        if result is None:
            return
        for reply in result if isinstance(result, list) else [result]:
            client.push(reply)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


def completed(kind: FrameKind, body: dict[str, Any] | None = None) -> Responder:
    """Responder replying with ``kind`` and ``body`` to every request."""

    def responder(frame: Frame) -> Frame:
        return Frame(kind, frame.correlation_id, body or {})

    return responder


def failed(code: str, message: str = "failed") -> Responder:
    """Responder replying with OPERATION_FAILED carrying ``code``."""
    return completed(FrameKind.OPERATION_FAILED, {"code": code, "message": message})


@pytest.fixture
def fake_server() -> Any:
    """Patch the session transport with an in-memory scripted server."""
    server = FakeServer()
    with patch(
        "eventstore_client.session.EventStoreWsClient", side_effect=server.make_client
    ):
        yield server


@pytest.fixture
def admin() -> UserCredentials:
    return UserCredentials("admin", "changeit")


@pytest.fixture
def settings() -> ConnectionSettings:
    """Fast settings for tests."""
    return ConnectionSettings(
        connection_name="test",
        operation_timeout=1.0,
        reconnection_delay=0.01,
        max_reconnection_delay=0.05,
        client_connection_timeout=0.5,
    )


@pytest.fixture
async def client(fake_server: FakeServer, settings: ConnectionSettings) -> Any:
    """Connected client talking to the fake server."""
    client = EventStoreClient(ENDPOINT, settings)
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: dict[str, Any] | list[Any] | None = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response
