"""Connection session for event store node communication.

This module owns the single logical connection to a node. It handles:
- Endpoint discovery and WebSocket connection
- Client identification and authentication handshake
- Connection state machine
- Heartbeats and dead-connection detection
- Reconnection with capped exponential backoff
- Outbound frame queue and inbound frame routing

Operation correlation lives in the dispatcher; the session only moves frames.
All state is mutated from the session's own methods on the event loop, so
callers never need external locking.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from .errors import (
    ConnectionClosed,
    EventStoreConnectionError,
    EventStoreHandshakeError,
)
from .protocol import PROTOCOL_VERSION, Frame, FrameKind, new_correlation_id
from .settings import ConnectionSettings
from .transport.ws_client import EventStoreWsClient, WsMessage, WsMessageType

if TYPE_CHECKING:
    from .discovery import EndPoint, EndPointDiscoverer

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


StateListener = Callable[[ConnectionState, ConnectionState], None]
FrameHandler = Callable[[Frame], None]


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff delay for the given zero-based attempt, capped."""
    return min(base_delay * (2**attempt), max_delay)


class ConnectionSession:
    """Long-lived, reconnecting connection to an event store node.

    Usage:
        session = ConnectionSession(StaticEndPointDiscoverer(EndPoint("localhost", 2113)))
        session.set_frame_handler(my_frame_handler)
        session.add_state_listener(my_state_listener)
        await session.connect()
        session.enqueue_send(frame)
        await session.close()
    """

    def __init__(
        self,
        discoverer: EndPointDiscoverer,
        settings: ConnectionSettings | None = None,
    ) -> None:
        self._discoverer = discoverer
        self._settings = settings or ConnectionSettings()
        self._name = self._settings.connection_name

        # Connection state
        self._state = ConnectionState.DISCONNECTED
        self._ws: EventStoreWsClient | None = None
        self._endpoint: EndPoint | None = None
        self._outbound: asyncio.Queue[Frame] | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._write_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._reconnect_attempts = 0

        # Keepalive
        self._keepalive_task: asyncio.Task[None] | None = None
        self._last_received: float = 0.0

        # Callbacks
        self._frame_handler: FrameHandler | None = None
        self._state_listeners: list[StateListener] = []

    # -------------------------------------------------------------------------
    # Public API: Properties
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def connection_name(self) -> str:
        return self._name

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def endpoint(self) -> EndPoint | None:
        """Endpoint of the current (or last) connection."""
        return self._endpoint

    # -------------------------------------------------------------------------
    # Public API: Callbacks
    # -------------------------------------------------------------------------

    def set_frame_handler(self, handler: FrameHandler) -> None:
        """Register the handler that receives every inbound non-heartbeat frame."""
        self._frame_handler = handler

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with ``(old_state, new_state)``.

        Returns:
            A callable that removes the listener
        """
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and perform the handshake.

        Raises:
            ConnectionClosed: If the session was closed
            EventStoreConnectionError: If the node is unreachable or rejects
                the handshake; the session is left disconnected
        """
        if self._state is ConnectionState.CLOSED:
            raise ConnectionClosed.with_name(self._name)
        if self._state is not ConnectionState.DISCONNECTED:
            _LOGGER.debug("[%s] Connect ignored: already %s", self._name, self._state.value)
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._establish(None)
        except EventStoreConnectionError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self._name, err)
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            raise

    async def close(self) -> None:
        """Close the session. Calling it again is a no-op."""
        if self._state is ConnectionState.CLOSED:
            return

        _LOGGER.info("[%s] Closing session", self._name)
        ws = self._ws
        self._ws = None
        self._outbound = None
        self._set_state(ConnectionState.CLOSED)

        for task in (
            self._reconnect_task,
            self._keepalive_task,
            self._listen_task,
            self._write_task,
        ):
            await self._cancel_task(task)

        self._reconnect_task = None
        self._keepalive_task = None
        self._listen_task = None
        self._write_task = None

        if ws is not None:
            await self._close_ws(ws)

        current = asyncio.current_task()
        pending = [task for task in self._background_tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def enqueue_send(self, frame: Frame) -> None:
        """Queue a frame for the writer task.

        Raises:
            EventStoreConnectionError: If the session is not connected
        """
        if self._state is not ConnectionState.CONNECTED or self._outbound is None:
            raise EventStoreConnectionError(
                f"Connection '{self._name}' is {self._state.value}"
            )
        self._outbound.put_nowait(frame)

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify listeners."""
        if self._state is state:
            return
        old = self._state
        _LOGGER.debug("[%s] State: %s → %s", self._name, old.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(old, state)
            except Exception as err:
                _LOGGER.exception("[%s] State listener error: %s", self._name, err)

    async def _establish(self, failed_endpoint: EndPoint | None) -> None:
        """Discover, connect and handshake; switch to CONNECTED on success."""
        endpoint = await self._discoverer.discover(failed_endpoint)

        _LOGGER.info(
            "[%s] Connecting to %s (attempt #%d)",
            self._name,
            endpoint,
            self._reconnect_attempts + 1,
        )

        ws = EventStoreWsClient()
        await ws.connect(
            endpoint.host,
            endpoint.port,
            path=self._settings.path,
            secure=self._settings.use_tls,
            timeout=self._settings.client_connection_timeout,
        )

        try:
            self._check_still_connecting()
            await self._handshake(ws)
            self._check_still_connecting()
        except BaseException:
            await self._close_ws(ws)
            raise

        self._ws = ws
        self._endpoint = endpoint
        self._last_received = time.monotonic()
        self._reconnect_attempts = 0
        self._outbound = asyncio.Queue()
        self._listen_task = asyncio.create_task(self._listen(ws))
        self._write_task = asyncio.create_task(self._write_loop(ws, self._outbound))
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))

        _LOGGER.info("[%s] Connected to %s", self._name, endpoint)
        self._set_state(ConnectionState.CONNECTED)

    def _check_still_connecting(self) -> None:
        """Abort a connect that close() overtook."""
        if self._state is not ConnectionState.CONNECTING:
            raise ConnectionClosed.with_name(self._name)

    async def _handshake(self, ws: EventStoreWsClient) -> None:
        """Identify the client and authenticate default credentials."""
        await self._exchange(
            ws,
            Frame(
                kind=FrameKind.IDENTIFY_CLIENT,
                correlation_id=new_correlation_id(),
                body={"version": PROTOCOL_VERSION, "connection_name": self._name},
            ),
            FrameKind.CLIENT_IDENTIFIED,
        )

        credentials = self._settings.default_credentials
        if credentials is not None:
            await self._exchange(
                ws,
                Frame(
                    kind=FrameKind.AUTHENTICATE,
                    correlation_id=new_correlation_id(),
                    credentials=credentials,
                ),
                FrameKind.AUTHENTICATED,
            )
            _LOGGER.debug("[%s] Authenticated as %s", self._name, credentials)

    async def _exchange(
        self, ws: EventStoreWsClient, request: Frame, expected: FrameKind
    ) -> Frame:
        """Send a handshake frame and wait for its correlated reply."""
        await ws.send(self._settings.codec.encode(request))
        try:
            return await asyncio.wait_for(
                self._await_reply(ws, request, expected),
                timeout=self._settings.client_connection_timeout,
            )
        except TimeoutError as err:
            raise EventStoreConnectionError(
                f"Handshake timed out waiting for {expected.value}"
            ) from err

    async def _await_reply(
        self, ws: EventStoreWsClient, request: Frame, expected: FrameKind
    ) -> Frame:
        while True:
            msg = await ws.receive()
            if msg.type in (WsMessageType.CLOSED, WsMessageType.ERROR):
                raise EventStoreConnectionError("Connection closed during handshake")

            reply = self._decode(msg)
            if reply is None:
                continue
            if reply.kind is FrameKind.HEARTBEAT_REQUEST:
                await ws.send(self._settings.codec.encode(self._heartbeat_response(reply)))
                continue
            if reply.correlation_id != request.correlation_id:
                continue
            if reply.kind is expected:
                return reply

            message = reply.body.get("message") or reply.kind.value
            raise EventStoreHandshakeError(f"Handshake rejected: {message}")

    def _connection_lost(self, ws: EventStoreWsClient, reason: str) -> None:
        """Tear down the current transport and schedule reconnection."""
        if ws is not self._ws or self._state is not ConnectionState.CONNECTED:
            return

        _LOGGER.warning("[%s] Connection lost: %s", self._name, reason)
        failed_endpoint = self._endpoint
        self._ws = None
        self._outbound = None

        current = asyncio.current_task()
        for task in (self._keepalive_task, self._listen_task, self._write_task):
            if task is not None and task is not current:
                task.cancel()
        self._keepalive_task = None
        self._listen_task = None
        self._write_task = None

        self._spawn(self._close_ws(ws))
        self._set_state(ConnectionState.CONNECTING)
        self._schedule_reconnect(failed_endpoint)

    def _schedule_reconnect(self, failed_endpoint: EndPoint | None) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        if self._state is not ConnectionState.CONNECTING or self._reconnect_task:
            return

        max_reconnections = self._settings.max_reconnections
        if 0 <= max_reconnections <= self._reconnect_attempts:
            _LOGGER.error(
                "[%s] Reconnection limit reached (%d attempts)",
                self._name,
                self._reconnect_attempts,
            )
            self._spawn(self.close())
            return

        delay = reconnect_delay(
            self._reconnect_attempts,
            self._settings.reconnection_delay,
            self._settings.max_reconnection_delay,
        )
        self._reconnect_attempts += 1

        _LOGGER.info(
            "[%s] Reconnecting in %.2fs (attempt %d)",
            self._name,
            delay,
            self._reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(delay, failed_endpoint)
        )

    async def _reconnect_after_delay(
        self, delay: float, failed_endpoint: EndPoint | None
    ) -> None:
        """Reconnect after delay."""
        retry = False
        try:
            await asyncio.sleep(delay)
            await self._establish(failed_endpoint)
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self._name)
        except EventStoreConnectionError as err:
            _LOGGER.warning("[%s] Reconnect failed: %s", self._name, err)
            retry = True
        finally:
            self._reconnect_task = None

        if retry:
            self._schedule_reconnect(failed_endpoint)

    # -------------------------------------------------------------------------
    # Internal: Reader / Writer
    # -------------------------------------------------------------------------

    async def _listen(self, ws: EventStoreWsClient) -> None:
        """Read frames from the node until the connection ends."""
        message_count = 0
        lost_reason: str | None = None

        try:
            async for msg in ws:
                if msg.type in (WsMessageType.TEXT, WsMessageType.BINARY):
                    frame = self._decode(msg)
                    if frame is None:
                        continue
                    message_count += 1
                    self._last_received = time.monotonic()
                    self._handle_frame(frame)

                elif msg.type == WsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by node", self._name)
                    lost_reason = "closed by node"
                    break

                elif msg.type == WsMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error", self._name)
                    lost_reason = "websocket error"
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self._name, message_count
            )
            raise
        except EventStoreConnectionError as err:
            _LOGGER.warning("[%s] Client error: %s", self._name, err)
            lost_reason = str(err)
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self._name, err)
            lost_reason = "unexpected listener error"
        finally:
            if lost_reason is not None:
                self._connection_lost(ws, lost_reason)

    def _handle_frame(self, frame: Frame) -> None:
        if frame.kind is FrameKind.HEARTBEAT_REQUEST:
            try:
                self.enqueue_send(self._heartbeat_response(frame))
            except EventStoreConnectionError:
                _LOGGER.debug("[%s] Heartbeat response skipped: not connected", self._name)
            return
        if frame.kind is FrameKind.HEARTBEAT_RESPONSE:
            return

        if self._frame_handler is None:
            _LOGGER.debug("[%s] No frame handler for %s", self._name, frame.kind.value)
            return
        try:
            self._frame_handler(frame)
        except Exception as err:
            _LOGGER.exception(
                "[%s] Frame handler error for %s: %s", self._name, frame.kind.value, err
            )

    async def _write_loop(
        self, ws: EventStoreWsClient, outbound: asyncio.Queue[Frame]
    ) -> None:
        """Drain the outbound queue onto the transport."""
        codec = self._settings.codec
        try:
            while True:
                frame = await outbound.get()
                await ws.send(codec.encode(frame))
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Writer cancelled", self._name)
            raise
        except EventStoreConnectionError as err:
            self._connection_lost(ws, f"send failed: {err}")

    def _decode(self, msg: WsMessage) -> Frame | None:
        if msg.data is None:
            return None
        try:
            return self._settings.codec.decode(msg.data)
        except (ValueError, KeyError, TypeError) as err:
            _LOGGER.warning("[%s] Invalid message: %s", self._name, err)
            return None

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    async def _keepalive_loop(self, ws: EventStoreWsClient) -> None:
        """Keepalive loop - send periodic heartbeats, detect silent peers."""
        interval = self._settings.heartbeat_interval
        timeout = self._settings.heartbeat_timeout
        try:
            while ws is self._ws:
                await asyncio.sleep(interval)

                since_received = time.monotonic() - self._last_received
                if since_received > interval + timeout:
                    _LOGGER.warning(
                        "[%s] Heartbeat timeout (%.1fs since last frame)",
                        self._name,
                        since_received,
                    )
                    self._connection_lost(ws, "heartbeat timeout")
                    break

                self.enqueue_send(
                    Frame(
                        kind=FrameKind.HEARTBEAT_REQUEST,
                        correlation_id=new_correlation_id(),
                    )
                )
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Keepalive cancelled", self._name)
        except EventStoreConnectionError as err:
            _LOGGER.debug("[%s] Keepalive stopped: %s", self._name, err)

    @staticmethod
    def _heartbeat_response(request: Frame) -> Frame:
        return Frame(
            kind=FrameKind.HEARTBEAT_RESPONSE,
            correlation_id=request.correlation_id,
        )

    # -------------------------------------------------------------------------
    # Internal: Task helpers
    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as err:  # Task cancellation can surface late errors
            _LOGGER.debug("[%s] Task ended with error: %s", self._name, err)

    async def _close_ws(self, ws: EventStoreWsClient) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._name)
        except Exception as err:
            _LOGGER.debug("[%s] WebSocket close failed: %s", self._name, err)
