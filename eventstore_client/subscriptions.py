"""Volatile, catch-up and persistent subscriptions.

A subscription is identified by the correlation id of the request that
opened it. Pushed event frames carry that id; the manager routes them into
the subscription's buffer, and the consumer drains the buffer by iterating
the subscription:

    subscription = await manager.subscribe_to_stream("orders")
    async for event in subscription:
        handle(event)

Iteration ends once the subscription is dropped. Every subscription emits
exactly one ``SubscriptionDropped`` notification, through the optional
``on_dropped`` callback and through ``wait_dropped()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .catch_up_subscription_settings import CatchUpSubscriptionSettings
from .credentials import UserCredentials
from .dispatcher import OperationDispatcher
from .errors import (
    AccessDenied,
    CommandConflict,
    ConnectionClosed,
    ConnectionLost,
    EventStoreClientError,
    EventStoreConnectionError,
    InvalidConfiguration,
    NotAuthenticated,
    PersistentSubscriptionAlreadyExists,
    PersistentSubscriptionNotFound,
    ResourceNotFound,
    ServerError,
    StreamDeleted,
    SubscriptionError,
)
from .persistent_subscription_settings import (
    PersistentSubscriptionSettings,
    PersistentSubscriptionSettingsBuilder,
)
from .protocol import Frame, FrameKind, new_correlation_id
from .session import ConnectionSession, ConnectionState

_LOGGER = logging.getLogger(__name__)

DEFAULT_PERSISTENT_BUFFER_SIZE = 10


class SubscriptionState(Enum):
    """Subscription lifecycle states."""

    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    DROPPED = "dropped"


class SubscriptionDropReason(Enum):
    """Why a subscription stopped delivering events."""

    USER_INITIATED = "UserInitiated"
    NOT_AUTHENTICATED = "NotAuthenticated"
    ACCESS_DENIED = "AccessDenied"
    SUBSCRIBING_ERROR = "SubscribingError"
    SERVER_ERROR = "ServerError"
    CONNECTION_CLOSED = "ConnectionClosed"
    PROCESSING_QUEUE_OVERFLOW = "ProcessingQueueOverflow"
    EVENT_HANDLER_EXCEPTION = "EventHandlerException"
    MAX_SUBSCRIBERS_REACHED = "MaxSubscribersReached"
    PERSISTENT_SUBSCRIPTION_DELETED = "PersistentSubscriptionDeleted"
    NOT_FOUND = "NotFound"
    CATCH_UP_ERROR = "CatchUpError"
    UNKNOWN = "Unknown"

    @classmethod
    def from_wire(cls, value: Any) -> SubscriptionDropReason:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class NakAction(Enum):
    """What the server should do with negatively acknowledged events."""

    UNKNOWN = "Unknown"
    PARK = "Park"
    RETRY = "Retry"
    SKIP = "Skip"
    STOP = "Stop"


@dataclass(frozen=True, slots=True)
class SubscriptionDropped:
    """Notification emitted once when a subscription stops."""

    reason: SubscriptionDropReason
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class RecordedEvent:
    """A single event as stored in a stream."""

    stream_id: str
    event_id: str
    event_number: int
    event_type: str
    data: Any = None
    metadata: Any = None
    is_json: bool = True
    created: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordedEvent:
        created_raw = data.get("created")
        created = datetime.fromisoformat(created_raw) if created_raw else None
        return cls(
            stream_id=str(data["event_stream_id"]),
            event_id=str(data["event_id"]),
            event_number=int(data["event_number"]),
            event_type=str(data["event_type"]),
            data=data.get("data"),
            metadata=data.get("metadata"),
            is_json=bool(data.get("is_json", True)),
            created=created,
        )


@dataclass(frozen=True, slots=True)
class ResolvedEvent:
    """An event delivered to a subscription, with its link when resolved."""

    event: RecordedEvent | None
    link: RecordedEvent | None = None
    commit_position: int | None = None
    retry_count: int | None = None

    @property
    def original_event(self) -> RecordedEvent:
        """The event as it appeared in the subscribed stream."""
        original = self.link or self.event
        if original is None:
            raise ValueError("Resolved event carries neither event nor link")
        return original

    @property
    def original_stream_id(self) -> str:
        return self.original_event.stream_id

    @property
    def original_event_number(self) -> int:
        return self.original_event.event_number

    @property
    def is_resolved(self) -> bool:
        return self.link is not None and self.event is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedEvent:
        event = data.get("event")
        link = data.get("link")
        if event is None and link is None:
            raise ValueError("Event frame carries neither event nor link")
        commit_position = data.get("commit_position")
        retry_count = data.get("retry_count")
        return cls(
            event=RecordedEvent.from_dict(event) if event else None,
            link=RecordedEvent.from_dict(link) if link else None,
            commit_position=int(commit_position) if commit_position is not None else None,
            retry_count=int(retry_count) if retry_count is not None else None,
        )


class SliceReadStatus(Enum):
    """Outcome of a forward stream read."""

    SUCCESS = "Success"
    STREAM_NOT_FOUND = "StreamNotFound"
    STREAM_DELETED = "StreamDeleted"


@dataclass(frozen=True, slots=True)
class StreamEventsSlice:
    """One page of events read forward from a stream."""

    status: SliceReadStatus
    stream: str
    from_event_number: int
    events: tuple[ResolvedEvent, ...]
    next_event_number: int
    last_event_number: int
    is_end_of_stream: bool

    @classmethod
    def from_dict(
        cls, stream: str, from_event_number: int, data: dict[str, Any]
    ) -> StreamEventsSlice:
        return cls(
            status=SliceReadStatus(data.get("result", SliceReadStatus.SUCCESS.value)),
            stream=stream,
            from_event_number=from_event_number,
            events=tuple(ResolvedEvent.from_dict(event) for event in data.get("events") or []),
            next_event_number=int(data.get("next_event_number", from_event_number)),
            last_event_number=int(data.get("last_event_number", -1)),
            is_end_of_stream=bool(data.get("is_end_of_stream", True)),
        )


DropCallback = Callable[["Subscription", SubscriptionDropped], None]


class Subscription:
    """Base subscription: event buffer, state and drop notification."""

    def __init__(
        self,
        manager: SubscriptionManager,
        stream: str,
        *,
        credentials: UserCredentials | None = None,
        on_dropped: DropCallback | None = None,
    ) -> None:
        self._manager = manager
        self._stream = stream
        self._credentials = credentials
        self._on_dropped = on_dropped
        self._correlation_id = new_correlation_id()

        self._state = SubscriptionState.UNSUBSCRIBED
        self._queue: asyncio.Queue[ResolvedEvent | None] = asyncio.Queue()
        self._exhausted = False
        self._dropped: SubscriptionDropped | None = None
        self._drop_waiter: asyncio.Future[SubscriptionDropped] = (
            asyncio.get_running_loop().create_future()
        )

        self.last_commit_position: int | None = None
        self.last_event_number: int | None = None

    @property
    def correlation_id(self) -> str:
        return self._correlation_id

    @property
    def stream(self) -> str:
        return self._stream

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state is SubscriptionState.LIVE

    @property
    def drop_notification(self) -> SubscriptionDropped | None:
        return self._dropped

    @property
    def buffered_count(self) -> int:
        """Events received but not yet consumed."""
        return self._queue.qsize()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ResolvedEvent:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    async def wait_dropped(self) -> SubscriptionDropped:
        """Wait until the subscription stops and return the notification."""
        return await asyncio.shield(self._drop_waiter)

    async def unsubscribe(self) -> None:
        """Stop the subscription; the drop reason is ``USER_INITIATED``."""
        self._manager.unsubscribe(self)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.unsubscribe()

    # -------------------------------------------------------------------------
    # Manager hooks
    # -------------------------------------------------------------------------

    def _start(self) -> None:
        self._state = SubscriptionState.SUBSCRIBING

    def _confirm(self, body: dict[str, Any]) -> None:
        self.last_commit_position = body.get("last_commit_position")
        self.last_event_number = body.get("last_event_number")
        self._state = SubscriptionState.LIVE

    def _deliver(self, event: ResolvedEvent) -> None:
        # Events may arrive right behind the confirmation, before _open resumes.
        if self._state in (SubscriptionState.SUBSCRIBING, SubscriptionState.LIVE):
            self._queue.put_nowait(event)

    def _drop(
        self,
        reason: SubscriptionDropReason,
        error: Exception | None = None,
        *,
        state: SubscriptionState = SubscriptionState.DROPPED,
    ) -> bool:
        """Stop delivery and emit the drop notification; only the first call counts."""
        if self._dropped is not None:
            return False

        notification = SubscriptionDropped(reason, error)
        self._dropped = notification
        self._state = state
        self._queue.put_nowait(None)
        if not self._drop_waiter.done():
            self._drop_waiter.set_result(notification)

        _LOGGER.debug(
            "Subscription %s on '%s' dropped: %s",
            self._correlation_id,
            self._stream,
            reason.value,
        )

        if self._on_dropped is not None:
            try:
                self._on_dropped(self, notification)
            except Exception as err:
                _LOGGER.exception("Subscription drop callback error: %s", err)
        return True


class VolatileSubscription(Subscription):
    """Live-only subscription to a single stream."""


class PersistentSubscription(Subscription):
    """Competing-consumer subscription to a server-side group.

    With ``auto_ack`` enabled, each event is acknowledged when the consumer
    asks for the next one, i.e. after the loop body handled it.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        stream: str,
        group: str,
        *,
        buffer_size: int = DEFAULT_PERSISTENT_BUFFER_SIZE,
        auto_ack: bool = True,
        credentials: UserCredentials | None = None,
        on_dropped: DropCallback | None = None,
    ) -> None:
        super().__init__(manager, stream, credentials=credentials, on_dropped=on_dropped)
        self._group = group
        self._buffer_size = buffer_size
        self._auto_ack = auto_ack
        self._unacked: ResolvedEvent | None = None
        self._subscription_id = f"{stream}::{group}"

    @property
    def group(self) -> str:
        return self._group

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    async def __anext__(self) -> ResolvedEvent:
        if self._unacked is not None:
            event, self._unacked = self._unacked, None
            if self.is_live:
                self.ack([event])
        event = await super().__anext__()
        if self._auto_ack:
            self._unacked = event
        return event

    def ack(self, events: Iterable[ResolvedEvent | str]) -> None:
        """Acknowledge processed events.

        Raises:
            SubscriptionError: If the subscription is not live
        """
        self._manager.post_for(
            self,
            FrameKind.PERSISTENT_SUBSCRIPTION_ACK_EVENTS,
            {
                "subscription_id": self._subscription_id,
                "processed_event_ids": _event_ids(events),
            },
        )

    def nak(
        self,
        events: Iterable[ResolvedEvent | str],
        action: NakAction,
        reason: str = "",
    ) -> None:
        """Negatively acknowledge events with the action the server should take.

        Raises:
            SubscriptionError: If the subscription is not live
        """
        self._manager.post_for(
            self,
            FrameKind.PERSISTENT_SUBSCRIPTION_NAK_EVENTS,
            {
                "subscription_id": self._subscription_id,
                "processed_event_ids": _event_ids(events),
                "action": action.value,
                "message": reason,
            },
        )

    def _confirm(self, body: dict[str, Any]) -> None:
        self._subscription_id = body.get("subscription_id") or self._subscription_id
        super()._confirm(body)


LiveCallback = Callable[["CatchUpSubscription"], None]


class CatchUpSubscription(Subscription):
    """Reads a stream's history from a checkpoint, then follows it live.

    ``last_checkpoint`` is the number of the last event the consumer already
    handled, or ``None`` to start from the first event. History is read in
    pages of ``read_batch_size``; once the end is reached a volatile
    subscription is opened, the events appended in between are read, and
    pushed events follow. Each event number is yielded at most once, in
    order.

    After a drop, ``last_processed_event_number`` is the checkpoint to resume
    from with a new catch-up subscription.
    """

    # Pause before re-reading when the server has not caught up with the
    # position the live subscription confirmed.
    _CATCH_UP_RETRY_DELAY = 1.0

    def __init__(
        self,
        manager: SubscriptionManager,
        stream: str,
        last_checkpoint: int | None,
        settings: CatchUpSubscriptionSettings,
        *,
        credentials: UserCredentials | None = None,
        on_live: LiveCallback | None = None,
        on_dropped: DropCallback | None = None,
    ) -> None:
        super().__init__(manager, stream, credentials=credentials, on_dropped=on_dropped)
        self._settings = settings
        self._on_live = on_live
        self._name = settings.subscription_name or self._correlation_id
        self._next_read_event_number = 0 if last_checkpoint is None else last_checkpoint + 1
        self._last_queued = -1 if last_checkpoint is None else last_checkpoint
        self._last_processed = self._last_queued
        self._live: VolatileSubscription | None = None
        self._runner: asyncio.Task[None] | None = None
        self._room = asyncio.Event()
        self._room.set()

    @property
    def settings(self) -> CatchUpSubscriptionSettings:
        return self._settings

    @property
    def subscription_name(self) -> str:
        return self._name

    @property
    def last_processed_event_number(self) -> int:
        """Number of the last event handed to the consumer, -1 if none."""
        return self._last_processed

    @property
    def is_live_processing(self) -> bool:
        return self.is_live

    async def __anext__(self) -> ResolvedEvent:
        event = await super().__anext__()
        self._last_processed = event.original_event_number
        if self._queue.qsize() < self._settings.read_batch_size:
            self._room.set()
        return event

    def _start(self) -> None:
        super()._start()
        self._runner = asyncio.create_task(self._run())

    def _drop(
        self,
        reason: SubscriptionDropReason,
        error: Exception | None = None,
        *,
        state: SubscriptionState = SubscriptionState.DROPPED,
    ) -> bool:
        if not super()._drop(reason, error, state=state):
            return False

        self._manager._release(self)
        self._room.set()
        if self._runner is not None and self._runner is not asyncio.current_task():
            self._runner.cancel()
        live, self._live = self._live, None
        if live is not None:
            self._manager.unsubscribe(live)
        return True

    # -------------------------------------------------------------------------
    # Catch-up loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            self._trace("reading history from %d", self._next_read_event_number)
            await self._read_until(None)

            self._trace("subscribing")
            self._live = await self._manager.subscribe_to_stream(
                self._stream,
                resolve_link_tos=self._settings.resolve_link_tos,
                on_dropped=self._on_live_dropped,
                credentials=self._credentials,
            )

            self._trace("reading events appended while subscribing")
            await self._read_until(self._live.last_event_number)
            await self._follow_live(self._live)
        except (EventStoreClientError, KeyError, ValueError, TypeError) as err:
            self._drop(_catch_up_drop_reason(err), err)
        except Exception as err:
            _LOGGER.exception("Catch-up subscription %s failed: %s", self._name, err)
            self._drop(SubscriptionDropReason.CATCH_UP_ERROR, err)

    async def _read_until(self, last_event_number: int | None) -> None:
        """Read pages until the end of the stream or past ``last_event_number``."""
        while True:
            await self._wait_for_room()
            self._check_live_buffer()

            page = await self._manager._read_stream_events_forward(
                self._stream,
                self._next_read_event_number,
                self._settings.read_batch_size,
                self._settings.resolve_link_tos,
                self._credentials,
            )

            if page.status is SliceReadStatus.STREAM_DELETED:
                raise StreamDeleted("stream_deleted", f"Stream '{self._stream}' was deleted")
            if page.status is SliceReadStatus.STREAM_NOT_FOUND:
                if last_event_number is not None and last_event_number != -1:
                    raise ServerError(
                        "catch_up_error",
                        f"Stream '{self._stream}' not found, "
                        f"expected events up to {last_event_number}",
                    )
                return

            for event in page.events:
                self._enqueue(event)
            self._next_read_event_number = page.next_event_number

            if last_event_number is None:
                if page.is_end_of_stream:
                    return
            elif page.next_event_number > last_event_number:
                return
            elif page.is_end_of_stream:
                await asyncio.sleep(self._CATCH_UP_RETRY_DELAY)

    async def _follow_live(self, live: VolatileSubscription) -> None:
        self._state = SubscriptionState.LIVE
        self._trace("processing live events")
        if self._on_live is not None:
            try:
                self._on_live(self)
            except Exception as err:
                _LOGGER.exception("Catch-up live callback error: %s", err)

        async for event in live:
            if self._queue.qsize() >= self._settings.max_live_queue_size:
                self._drop(SubscriptionDropReason.PROCESSING_QUEUE_OVERFLOW)
                return
            self._enqueue(event)

    async def _wait_for_room(self) -> None:
        while (
            self._dropped is None
            and self._queue.qsize() >= self._settings.read_batch_size
        ):
            self._room.clear()
            await self._room.wait()

    def _check_live_buffer(self) -> None:
        if (
            self._live is not None
            and self._live.buffered_count >= self._settings.max_live_queue_size
        ):
            raise SubscriptionError(
                SubscriptionDropReason.PROCESSING_QUEUE_OVERFLOW,
                f"More than {self._settings.max_live_queue_size} live events buffered",
            )

    def _enqueue(self, event: ResolvedEvent) -> None:
        number = event.original_event_number
        if number <= self._last_queued:
            self._trace("skipping event %d", number)
            return
        self._last_queued = number
        self._deliver(event)

    def _on_live_dropped(self, live: Subscription, notification: SubscriptionDropped) -> None:
        self._drop(notification.reason, notification.error)

    def _trace(self, message: str, *args: Any) -> None:
        if self._settings.verbose_logging:
            _LOGGER.debug(
                "Catch-up subscription %s on '%s': " + message, self._name, self._stream, *args
            )


def _event_ids(events: Iterable[ResolvedEvent | str]) -> list[str]:
    return [
        event if isinstance(event, str) else event.original_event.event_id
        for event in events
    ]


def _catch_up_drop_reason(error: BaseException) -> SubscriptionDropReason:
    if isinstance(error, SubscriptionError):
        return error.reason
    if isinstance(error, EventStoreConnectionError):
        return SubscriptionDropReason.CONNECTION_CLOSED
    return SubscriptionDropReason.CATCH_UP_ERROR


def _drop_reason_for(error: BaseException) -> SubscriptionDropReason:
    if isinstance(error, NotAuthenticated):
        return SubscriptionDropReason.NOT_AUTHENTICATED
    if isinstance(error, AccessDenied):
        return SubscriptionDropReason.ACCESS_DENIED
    if isinstance(error, EventStoreConnectionError):
        return SubscriptionDropReason.CONNECTION_CLOSED
    if isinstance(error, ServerError):
        return SubscriptionDropReason.SERVER_ERROR
    return SubscriptionDropReason.SUBSCRIBING_ERROR


class SubscriptionManager:
    """Opens subscriptions and routes pushed frames to them.

    Usage:
        manager = SubscriptionManager(dispatcher, session)
        subscription = await manager.connect_to_persistent_subscription("orders", "billing")
    """

    def __init__(self, dispatcher: OperationDispatcher, session: ConnectionSession) -> None:
        self._dispatcher = dispatcher
        self._session = session
        self._subscriptions: dict[str, Subscription] = {}
        self._catch_ups: dict[str, CatchUpSubscription] = {}
        session.add_state_listener(self._on_state_changed)

    @property
    def active_count(self) -> int:
        return len(self._subscriptions) + len(self._catch_ups)

    # -------------------------------------------------------------------------
    # Public API: Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe_to_stream(
        self,
        stream: str,
        *,
        resolve_link_tos: bool = True,
        on_dropped: DropCallback | None = None,
        credentials: UserCredentials | None = None,
        timeout: float | None = None,
    ) -> VolatileSubscription:
        """Subscribe to events appended to ``stream`` from now on.

        Raises:
            SubscriptionError: If the server refused the subscription
            EventStoreClientError: If the request itself failed
        """
        if not stream:
            raise InvalidConfiguration("Stream name cannot be empty")

        subscription = VolatileSubscription(
            self, stream, credentials=credentials, on_dropped=on_dropped
        )
        await self._open(
            subscription,
            FrameKind.SUBSCRIBE_TO_STREAM,
            {"event_stream_id": stream, "resolve_link_tos": resolve_link_tos},
            FrameKind.SUBSCRIPTION_CONFIRMED,
            timeout,
        )
        return subscription

    def subscribe_to_stream_from(
        self,
        stream: str,
        last_checkpoint: int | None = None,
        settings: CatchUpSubscriptionSettings | None = None,
        *,
        on_live: LiveCallback | None = None,
        on_dropped: DropCallback | None = None,
        credentials: UserCredentials | None = None,
    ) -> CatchUpSubscription:
        """Replay ``stream`` after ``last_checkpoint``, then follow it live.

        Returns at once; reading happens in the background and failures are
        reported through the drop notification.

        Raises:
            InvalidConfiguration: If the stream name or checkpoint is invalid
            ConnectionClosed: If the session is closed or disconnected
        """
        if not stream:
            raise InvalidConfiguration("Stream name cannot be empty")
        if last_checkpoint is not None and last_checkpoint < 0:
            raise InvalidConfiguration("last_checkpoint cannot be negative")
        if self._session.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            raise ConnectionClosed.with_name(self._session.connection_name)

        subscription = CatchUpSubscription(
            self,
            stream,
            last_checkpoint,
            settings or CatchUpSubscriptionSettings.default(),
            credentials=credentials,
            on_live=on_live,
            on_dropped=on_dropped,
        )
        self._catch_ups[subscription.correlation_id] = subscription
        subscription._start()
        return subscription

    async def connect_to_persistent_subscription(
        self,
        stream: str,
        group: str,
        *,
        buffer_size: int = DEFAULT_PERSISTENT_BUFFER_SIZE,
        auto_ack: bool = True,
        on_dropped: DropCallback | None = None,
        credentials: UserCredentials | None = None,
        timeout: float | None = None,
    ) -> PersistentSubscription:
        """Join the ``group`` consumers of ``stream``.

        Raises:
            SubscriptionError: If the server refused the subscription
            EventStoreClientError: If the request itself failed
        """
        _require_names(stream, group)
        if buffer_size < 1:
            raise InvalidConfiguration("buffer_size must be positive")

        subscription = PersistentSubscription(
            self,
            stream,
            group,
            buffer_size=buffer_size,
            auto_ack=auto_ack,
            credentials=credentials,
            on_dropped=on_dropped,
        )
        await self._open(
            subscription,
            FrameKind.CONNECT_TO_PERSISTENT_SUBSCRIPTION,
            {
                "subscription_id": group,
                "event_stream_id": stream,
                "allowed_in_flight_messages": buffer_size,
            },
            FrameKind.PERSISTENT_SUBSCRIPTION_CONFIRMED,
            timeout,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Stop ``subscription`` and tell the server when still connected."""
        if isinstance(subscription, CatchUpSubscription):
            if self._catch_ups.get(subscription.correlation_id) is subscription:
                subscription._drop(
                    SubscriptionDropReason.USER_INITIATED,
                    state=SubscriptionState.UNSUBSCRIBED,
                )
            return

        if self._subscriptions.pop(subscription.correlation_id, None) is None:
            return

        if subscription.is_live and self._session.is_connected:
            try:
                self._dispatcher.post(
                    FrameKind.UNSUBSCRIBE_FROM_STREAM,
                    correlation_id=subscription.correlation_id,
                    credentials=subscription._credentials,
                )
            except EventStoreConnectionError as err:
                _LOGGER.debug("Unsubscribe not sent: %s", err)

        subscription._drop(
            SubscriptionDropReason.USER_INITIATED,
            state=SubscriptionState.UNSUBSCRIBED,
        )

    def post_for(
        self, subscription: Subscription, kind: FrameKind, body: dict[str, Any]
    ) -> None:
        """Send a no-response frame on behalf of a live subscription."""
        if not subscription.is_live:
            dropped = subscription.drop_notification
            reason = dropped.reason if dropped else SubscriptionDropReason.UNKNOWN
            raise SubscriptionError(reason, "Subscription is not live")
        self._dispatcher.post(
            kind,
            body,
            correlation_id=subscription.correlation_id,
            credentials=subscription._credentials,
        )

    def handle_frame(self, frame: Frame) -> bool:
        """Route an event or drop frame to its subscription.

        Returns:
            True if the frame belonged to a known subscription
        """
        subscription = self._subscriptions.get(frame.correlation_id)
        if subscription is None:
            return False

        if frame.kind in (
            FrameKind.STREAM_EVENT_APPEARED,
            FrameKind.PERSISTENT_SUBSCRIPTION_EVENT_APPEARED,
        ):
            try:
                event = ResolvedEvent.from_dict(frame.body)
            except (KeyError, ValueError, TypeError) as err:
                _LOGGER.warning(
                    "Invalid event for subscription %s: %s", frame.correlation_id, err
                )
                return True
            subscription._deliver(event)
            return True

        if frame.kind is FrameKind.SUBSCRIPTION_DROPPED:
            del self._subscriptions[frame.correlation_id]
            reason = SubscriptionDropReason.from_wire(frame.body.get("reason"))
            error = None
            if reason is not SubscriptionDropReason.USER_INITIATED:
                error = SubscriptionError(reason, frame.body.get("message"))
            subscription._drop(reason, error)
            return True

        return False

    # -------------------------------------------------------------------------
    # Public API: Persistent subscription groups
    # -------------------------------------------------------------------------

    async def create_persistent_subscription(
        self,
        stream: str,
        group: str,
        settings: PersistentSubscriptionSettings | PersistentSubscriptionSettingsBuilder,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Create a subscription group on ``stream``.

        Raises:
            InvalidConfiguration: If the settings are invalid
            PersistentSubscriptionAlreadyExists: If the group already exists
        """
        await self._group_command(
            FrameKind.CREATE_PERSISTENT_SUBSCRIPTION, stream, group, settings, credentials
        )

    async def update_persistent_subscription(
        self,
        stream: str,
        group: str,
        settings: PersistentSubscriptionSettings | PersistentSubscriptionSettingsBuilder,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Replace the settings of an existing subscription group.

        Raises:
            InvalidConfiguration: If the settings are invalid
            PersistentSubscriptionNotFound: If the group does not exist
        """
        await self._group_command(
            FrameKind.UPDATE_PERSISTENT_SUBSCRIPTION, stream, group, settings, credentials
        )

    async def delete_persistent_subscription(
        self,
        stream: str,
        group: str,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Delete a subscription group.

        Raises:
            PersistentSubscriptionNotFound: If the group does not exist
        """
        await self._group_command(
            FrameKind.DELETE_PERSISTENT_SUBSCRIPTION, stream, group, None, credentials
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _open(
        self,
        subscription: Subscription,
        kind: FrameKind,
        body: dict[str, Any],
        confirmed_kind: FrameKind,
        timeout: float | None,
    ) -> None:
        correlation_id = subscription.correlation_id
        self._subscriptions[correlation_id] = subscription
        subscription._start()

        try:
            response = await self._dispatcher.send(
                kind,
                body,
                credentials=subscription._credentials,
                timeout=timeout,
                idempotent=False,
                correlation_id=correlation_id,
            )
        except (asyncio.CancelledError, EventStoreClientError) as err:
            self._subscriptions.pop(correlation_id, None)
            subscription._drop(
                _drop_reason_for(err),
                err if isinstance(err, Exception) else None,
            )
            raise

        if response.kind is confirmed_kind:
            subscription._confirm(response.body)
            _LOGGER.debug(
                "Subscription %s on '%s' is live", correlation_id, subscription.stream
            )
            return

        self._subscriptions.pop(correlation_id, None)
        if response.kind is FrameKind.SUBSCRIPTION_DROPPED:
            reason = SubscriptionDropReason.from_wire(response.body.get("reason"))
            error = SubscriptionError(reason, response.body.get("message"))
        else:
            reason = SubscriptionDropReason.SERVER_ERROR
            error = SubscriptionError(
                reason, f"Unexpected response to {kind.value}: {response.kind.value}"
            )
        subscription._drop(reason, error)
        raise error

    async def _group_command(
        self,
        kind: FrameKind,
        stream: str,
        group: str,
        settings: PersistentSubscriptionSettings
        | PersistentSubscriptionSettingsBuilder
        | None,
        credentials: UserCredentials | None,
    ) -> None:
        _require_names(stream, group)
        body: dict[str, Any] = {
            "event_stream_id": stream,
            "subscription_group_name": group,
        }
        if isinstance(settings, PersistentSubscriptionSettingsBuilder):
            settings = settings.build()
        if settings is not None:
            body["settings"] = settings.to_wire()

        try:
            response = await self._dispatcher.send(kind, body, credentials=credentials)
        except CommandConflict as err:
            raise PersistentSubscriptionAlreadyExists(
                err.code,
                f"Subscription group {group} on stream {stream} already exists",
            ) from err
        except ResourceNotFound as err:
            raise PersistentSubscriptionNotFound(
                err.code,
                f"Subscription group {group} on stream {stream} does not exist",
            ) from err

        if response.kind is not FrameKind.PERSISTENT_SUBSCRIPTION_COMMAND_COMPLETED:
            raise ServerError(
                "unexpected_response",
                f"Unexpected response to {kind.value}: {response.kind.value}",
            )

    async def _read_stream_events_forward(
        self,
        stream: str,
        start: int,
        count: int,
        resolve_link_tos: bool,
        credentials: UserCredentials | None,
    ) -> StreamEventsSlice:
        response = await self._dispatcher.send(
            FrameKind.READ_STREAM_EVENTS_FORWARD,
            {
                "event_stream_id": stream,
                "from_event_number": start,
                "max_count": count,
                "resolve_link_tos": resolve_link_tos,
            },
            credentials=credentials,
        )
        if response.kind is not FrameKind.READ_STREAM_EVENTS_FORWARD_COMPLETED:
            raise ServerError(
                "unexpected_response",
                f"Unexpected response to {FrameKind.READ_STREAM_EVENTS_FORWARD.value}: "
                f"{response.kind.value}",
            )
        return StreamEventsSlice.from_dict(stream, start, response.body)

    def _release(self, subscription: CatchUpSubscription) -> None:
        if self._catch_ups.get(subscription.correlation_id) is subscription:
            del self._catch_ups[subscription.correlation_id]

    def _on_state_changed(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.CONNECTED or not (self._subscriptions or self._catch_ups):
            return

        name = self._session.connection_name
        subscriptions: list[Subscription] = [
            *self._catch_ups.values(),
            *self._subscriptions.values(),
        ]
        self._catch_ups.clear()
        self._subscriptions.clear()
        for subscription in subscriptions:
            error: EventStoreConnectionError = (
                ConnectionLost(f"Connection '{name}' was lost")
                if new is ConnectionState.CONNECTING
                else ConnectionClosed.with_name(name)
            )
            subscription._drop(SubscriptionDropReason.CONNECTION_CLOSED, error)


def _require_names(stream: str, group: str) -> None:
    errors = []
    if not stream:
        errors.append("Stream name cannot be empty")
    if not group:
        errors.append("Group name cannot be empty")
    if errors:
        raise InvalidConfiguration("; ".join(errors), errors=errors)
