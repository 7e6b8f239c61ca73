"""Correlation-id based request/response dispatch.

Every request frame gets a fresh correlation id and a pending entry. Responses
are matched back to the waiting caller by that id; anything that does not
match a pending entry is stale and is dropped.

The dispatcher also owns:
- per-operation deadlines
- the bounded waiting queue and the in-flight concurrency limit
- NOT_HANDLED retries and replay of idempotent operations after reconnect
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .credentials import UserCredentials
from .errors import (
    BadRequest,
    ConnectionClosed,
    ConnectionLost,
    EventStoreClientError,
    EventStoreConnectionError,
    MaxQueueSizeReached,
    NotAuthenticated,
    OperationTimeout,
    RetriesLimitReached,
    error_from_code,
)
from .protocol import FAILURE_KINDS, PUSH_KINDS, Frame, FrameKind, new_correlation_id
from .session import ConnectionSession, ConnectionState

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Operation:
    """A request waiting for its correlated response."""

    kind: FrameKind
    body: dict[str, Any]
    credentials: UserCredentials | None
    idempotent: bool
    timeout: float
    future: asyncio.Future[Frame]
    correlation_id: str
    pinned_id: bool = False
    retry_count: int = 0
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    retry_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class OperationDispatcher:
    """Matches responses to requests over a ``ConnectionSession``.

    Usage:
        dispatcher = OperationDispatcher(session)
        session.set_frame_handler(dispatcher.handle_frame)
        response = await dispatcher.send(FrameKind.PROJECTION_COMMAND, {...})
    """

    def __init__(self, session: ConnectionSession) -> None:
        self._session = session
        self._settings = session.settings
        self._name = session.connection_name

        # Sent and awaiting a response, keyed by correlation id
        self._active: dict[str, _Operation] = {}
        # Waiting for a free slot or a live connection
        self._waiting: deque[_Operation] = deque()
        # Refused with NOT_HANDLED, waiting out the retry delay
        self._retrying: set[_Operation] = set()

        session.add_state_listener(self._on_state_changed)

    @property
    def in_flight_count(self) -> int:
        return len(self._active)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._active

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def send(
        self,
        kind: FrameKind,
        body: dict[str, Any] | None = None,
        *,
        credentials: UserCredentials | None = None,
        timeout: float | None = None,
        idempotent: bool = True,
        correlation_id: str | None = None,
    ) -> Frame:
        """Send a request and wait for its correlated response.

        Args:
            kind: Request frame kind
            body: Request body
            credentials: Per-call credentials overriding the connection's
            timeout: Deadline in seconds; defaults to ``operation_timeout``
            idempotent: Whether the request may be replayed after reconnect
            correlation_id: Fixed correlation id, kept across retries

        Returns:
            The response frame

        Raises:
            ConnectionClosed: If the session is closed or disconnected
            ConnectionLost: If the connection dropped and the request is
                not idempotent
            OperationTimeout: If no response arrived before the deadline
            RetriesLimitReached: If the server kept refusing the request
            MaxQueueSizeReached: If the waiting queue is full
            ServerError: If the server reported a failure
        """
        if self._session.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            raise ConnectionClosed.with_name(self._name)
        if len(self._waiting) >= self._settings.max_queue_size:
            raise MaxQueueSizeReached(
                f"Reached max queue size ({self._settings.max_queue_size})"
            )
        if correlation_id is not None and correlation_id in self._active:
            raise ValueError(f"Correlation id {correlation_id} is already pending")

        loop = asyncio.get_running_loop()
        op = _Operation(
            kind=kind,
            body=body or {},
            credentials=credentials,
            idempotent=idempotent,
            timeout=self._settings.operation_timeout if timeout is None else timeout,
            future=loop.create_future(),
            correlation_id=correlation_id or new_correlation_id(),
            pinned_id=correlation_id is not None,
        )
        op.timer = loop.call_later(op.timeout, self._expire, op)

        self._waiting.append(op)
        self._schedule_waiting()

        try:
            return await op.future
        finally:
            self._forget(op)

    def post(
        self,
        kind: FrameKind,
        body: dict[str, Any] | None = None,
        *,
        correlation_id: str,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Send a frame that expects no response.

        Raises:
            ConnectionClosed: If the session is closed or disconnected
            ConnectionLost: If the session is reconnecting
        """
        state = self._session.state
        if state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            raise ConnectionClosed.with_name(self._name)
        if state is not ConnectionState.CONNECTED:
            raise ConnectionLost(f"Connection '{self._name}' is {state.value}")
        self._session.enqueue_send(
            Frame(
                kind=kind,
                correlation_id=correlation_id,
                body=body or {},
                credentials=credentials,
            )
        )

    def handle_frame(self, frame: Frame) -> bool:
        """Complete the pending operation matching ``frame``.

        Returns:
            True if the frame belonged to a pending operation
        """
        if frame.kind in PUSH_KINDS:
            return False

        op = self._active.pop(frame.correlation_id, None)
        if op is None:
            if self._settings.verbose_logging:
                _LOGGER.debug(
                    "[%s] Dropping unmatched %s (%s)",
                    self._name,
                    frame.kind.value,
                    frame.correlation_id,
                )
            return False

        if frame.kind is FrameKind.NOT_HANDLED:
            self._retry(op, frame.body.get("reason", "not handled"))
        elif frame.kind in FAILURE_KINDS:
            self._fail(op, self._error_for(frame))
        else:
            self._complete(op, frame)

        self._schedule_waiting()
        return True

    # -------------------------------------------------------------------------
    # Internal: Scheduling
    # -------------------------------------------------------------------------

    def _schedule_waiting(self) -> None:
        """Move waiting operations onto the wire while slots are free."""
        if self._session.state is not ConnectionState.CONNECTED:
            return

        while self._waiting and len(self._active) < self._settings.max_concurrent_items:
            op = self._waiting.popleft()
            if op.future.done():
                continue
            self._execute(op)

    def _execute(self, op: _Operation) -> None:
        frame = Frame(
            kind=op.kind,
            correlation_id=op.correlation_id,
            body=op.body,
            credentials=op.credentials,
        )
        self._active[op.correlation_id] = op
        if self._settings.verbose_logging:
            _LOGGER.debug(
                "[%s] Sending %s (%s), retry %d",
                self._name,
                op.kind.value,
                op.correlation_id,
                op.retry_count,
            )
        try:
            self._session.enqueue_send(frame)
        except EventStoreConnectionError:
            # Connection dropped between the state check and the send; the
            # state listener has already requeued or failed active operations.
            self._active.pop(op.correlation_id, None)
            if not op.future.done():
                self._waiting.appendleft(op)

    def _retry(self, op: _Operation, reason: str) -> None:
        """Schedule a delayed resend of an operation the server did not handle."""
        if not self._next_attempt(op):
            return
        _LOGGER.debug(
            "[%s] %s not handled (%s), retrying in %.2fs",
            self._name,
            op.kind.value,
            reason,
            self._settings.reconnection_delay,
        )
        loop = asyncio.get_running_loop()
        op.retry_handle = loop.call_later(
            self._settings.reconnection_delay, self._requeue, op
        )
        self._retrying.add(op)

    def _requeue(self, op: _Operation) -> None:
        op.retry_handle = None
        self._retrying.discard(op)
        if op.future.done():
            return
        self._waiting.appendleft(op)
        self._schedule_waiting()

    def _next_attempt(self, op: _Operation) -> bool:
        """Count a retry and pick a new correlation id; fail when exhausted."""
        max_retries = self._settings.max_retries
        if 0 <= max_retries <= op.retry_count:
            self._fail(op, RetriesLimitReached(op.retry_count))
            return False
        op.retry_count += 1
        if not op.pinned_id:
            op.correlation_id = new_correlation_id()
        return True

    # -------------------------------------------------------------------------
    # Internal: Completion
    # -------------------------------------------------------------------------

    def _complete(self, op: _Operation, frame: Frame) -> None:
        self._cancel_timers(op)
        if not op.future.done():
            op.future.set_result(frame)

    def _fail(self, op: _Operation, error: Exception) -> None:
        self._cancel_timers(op)
        if not op.future.done():
            op.future.set_exception(error)

    def _expire(self, op: _Operation) -> None:
        op.timer = None
        if op.future.done():
            return
        self._remove(op)
        _LOGGER.warning(
            "[%s] %s (%s) timed out after %.1fs",
            self._name,
            op.kind.value,
            op.correlation_id,
            op.timeout,
        )
        self._fail(
            op,
            OperationTimeout(f"{op.kind.value} timed out after {op.timeout:.1f}s"),
        )
        self._schedule_waiting()

    def _forget(self, op: _Operation) -> None:
        """Drop every trace of an operation whose caller stopped waiting."""
        self._cancel_timers(op)
        if self._remove(op):
            self._schedule_waiting()

    def _remove(self, op: _Operation) -> bool:
        self._retrying.discard(op)
        if self._active.get(op.correlation_id) is op:
            del self._active[op.correlation_id]
            return True
        try:
            self._waiting.remove(op)
        except ValueError:
            return False
        return False

    @staticmethod
    def _cancel_timers(op: _Operation) -> None:
        if op.timer is not None:
            op.timer.cancel()
            op.timer = None
        if op.retry_handle is not None:
            op.retry_handle.cancel()
            op.retry_handle = None

    @staticmethod
    def _error_for(frame: Frame) -> EventStoreClientError:
        message = frame.body.get("message") or frame.kind.value
        if frame.kind is FrameKind.NOT_AUTHENTICATED:
            return NotAuthenticated("not_authenticated", message)
        if frame.kind is FrameKind.BAD_REQUEST:
            return BadRequest("bad_request", message)
        return error_from_code(str(frame.body.get("code", "server_error")), message)

    # -------------------------------------------------------------------------
    # Internal: Connection State
    # -------------------------------------------------------------------------

    def _on_state_changed(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.CONNECTED:
            self._schedule_waiting()
            return

        if new is ConnectionState.CONNECTING and old is ConnectionState.CONNECTED:
            self._replay_after_loss()
            return

        if new in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            self._fail_all()

    def _replay_after_loss(self) -> None:
        """Requeue idempotent in-flight operations; fail the others."""
        lost = list(self._active.values())
        self._active.clear()

        replay: list[_Operation] = []
        for op in lost:
            if op.future.done():
                continue
            if not op.idempotent:
                self._fail(
                    op,
                    ConnectionLost(
                        f"Connection lost while {op.kind.value} was in flight"
                    ),
                )
                continue
            if self._next_attempt(op):
                replay.append(op)

        if replay:
            _LOGGER.info(
                "[%s] Replaying %d operation(s) after reconnect",
                self._name,
                len(replay),
            )
        self._waiting.extendleft(reversed(replay))

    def _fail_all(self) -> None:
        pending = [*self._active.values(), *self._waiting, *self._retrying]
        self._active.clear()
        self._waiting.clear()
        self._retrying.clear()
        for op in pending:
            self._fail(op, ConnectionClosed.with_name(self._name))
