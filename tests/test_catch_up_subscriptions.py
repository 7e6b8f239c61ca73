"""Tests for catch-up subscriptions."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from eventstore_client import (
    CatchUpSubscriptionSettings,
    SliceReadStatus,
    StreamEventsSlice,
    SubscriptionDropReason,
    SubscriptionState,
)
from eventstore_client.errors import (
    AccessDenied,
    ConnectionClosed,
    ConnectionLost,
    InvalidConfiguration,
    StreamDeleted,
)
from eventstore_client.protocol import Frame, FrameKind

from .conftest import failed, wait_until
from .test_subscriptions import event_body, next_event


class StreamStore:
    """Answers forward reads from a list of event numbers."""

    def __init__(self, numbers: list[int], *, status: str = "Success") -> None:
        self.numbers = numbers
        self.status = status

    @property
    def last(self) -> int:
        return self.numbers[-1] if self.numbers else -1

    def read(self, frame: Frame) -> Frame:
        if self.status != "Success":
            body = {
                "result": self.status,
                "events": [],
                "next_event_number": -1,
                "last_event_number": -1,
                "is_end_of_stream": True,
            }
            return Frame(FrameKind.READ_STREAM_EVENTS_FORWARD_COMPLETED, frame.correlation_id, body)

        start = frame.body["from_event_number"]
        page = [n for n in self.numbers if n >= start][: frame.body["max_count"]]
        next_number = page[-1] + 1 if page else start
        body = {
            "result": "Success",
            "events": [event_body(n) for n in page],
            "next_event_number": next_number,
            "last_event_number": self.last,
            "is_end_of_stream": next_number > self.last,
        }
        return Frame(FrameKind.READ_STREAM_EVENTS_FORWARD_COMPLETED, frame.correlation_id, body)

    def confirm(self, frame: Frame) -> Frame:
        return Frame(
            FrameKind.SUBSCRIPTION_CONFIRMED,
            frame.correlation_id,
            {"last_commit_position": 0, "last_event_number": self.last},
        )


def serve(server, store: StreamStore) -> StreamStore:
    server.respond(FrameKind.READ_STREAM_EVENTS_FORWARD, store.read)
    server.respond(FrameKind.SUBSCRIBE_TO_STREAM, store.confirm)
    return store


def reads(server) -> list[int]:
    return [
        frame.body["from_event_number"]
        for frame in server.received(FrameKind.READ_STREAM_EVENTS_FORWARD)
    ]


def live_correlation_id(server) -> str:
    return server.received(FrameKind.SUBSCRIBE_TO_STREAM)[0].correlation_id


def push_live(server, number: int) -> None:
    server.client.push(
        Frame(FrameKind.STREAM_EVENT_APPEARED, live_correlation_id(server), event_body(number))
    )


async def take(subscription, count: int) -> list[int]:
    return [(await next_event(subscription)).original_event_number for _ in range(count)]


class TestStreamEventsSlice:
    """Tests for read result parsing."""

    def test_from_dict(self):
        page = StreamEventsSlice.from_dict(
            "orders",
            3,
            {
                "result": "Success",
                "events": [event_body(3), event_body(4)],
                "next_event_number": 5,
                "last_event_number": 9,
                "is_end_of_stream": False,
            },
        )

        assert page.status is SliceReadStatus.SUCCESS
        assert [event.original_event_number for event in page.events] == [3, 4]
        assert page.next_event_number == 5
        assert page.last_event_number == 9
        assert not page.is_end_of_stream

    def test_unknown_result_rejected(self):
        with pytest.raises(ValueError):
            StreamEventsSlice.from_dict("orders", 0, {"result": "Exploded"})


class TestCatchUpSubscriptionSettings:
    """Tests for catch-up settings validation."""

    def test_defaults(self):
        settings = CatchUpSubscriptionSettings.default()

        assert settings.max_live_queue_size == 10_000
        assert settings.read_batch_size == 500
        assert settings.resolve_link_tos is True
        assert settings.verbose_logging is False

    def test_invalid_values_collected(self):
        with pytest.raises(InvalidConfiguration) as exc_info:
            CatchUpSubscriptionSettings(read_batch_size=0, max_live_queue_size=0)

        assert len(exc_info.value.errors) == 2

    def test_read_batch_size_upper_bound(self):
        with pytest.raises(InvalidConfiguration, match="page"):
            CatchUpSubscriptionSettings(read_batch_size=5000)


class TestCatchUp:
    """Tests for reading history then switching to live events."""

    @pytest.mark.asyncio
    async def test_history_then_live(self, fake_server, client):
        serve(fake_server, StreamStore([0, 1, 2]))
        on_live = MagicMock()

        subscription = client.subscriptions.subscribe_to_stream_from(
            "orders",
            settings=CatchUpSubscriptionSettings(read_batch_size=2),
            on_live=on_live,
        )

        assert await take(subscription, 3) == [0, 1, 2]
        await wait_until(lambda: subscription.is_live_processing)
        on_live.assert_called_once_with(subscription)
        assert reads(fake_server) == [0, 2, 3]
        request = fake_server.received(FrameKind.READ_STREAM_EVENTS_FORWARD)[0]
        assert request.body == {
            "event_stream_id": "orders",
            "from_event_number": 0,
            "max_count": 2,
            "resolve_link_tos": True,
        }

        push_live(fake_server, 3)

        assert await take(subscription, 1) == [3]
        assert subscription.last_processed_event_number == 3
        assert subscription.state is SubscriptionState.LIVE

    @pytest.mark.asyncio
    async def test_resume_after_checkpoint(self, fake_server, client):
        serve(fake_server, StreamStore([0, 1, 2, 3, 4]))

        subscription = client.subscriptions.subscribe_to_stream_from("orders", 2)

        assert await take(subscription, 2) == [3, 4]
        assert reads(fake_server)[0] == 3
        assert subscription.last_processed_event_number == 4

    @pytest.mark.asyncio
    async def test_events_appended_while_subscribing_are_not_repeated(
        self, fake_server, client
    ):
        store = serve(fake_server, StreamStore([0, 1]))

        def subscribe(frame):
            # Event 2 lands in the stream and is also pushed live.
            store.numbers.append(2)
            return [
                store.confirm(frame),
                Frame(FrameKind.STREAM_EVENT_APPEARED, frame.correlation_id, event_body(2)),
                Frame(FrameKind.STREAM_EVENT_APPEARED, frame.correlation_id, event_body(3)),
            ]

        fake_server.respond(FrameKind.SUBSCRIBE_TO_STREAM, subscribe)

        subscription = client.subscriptions.subscribe_to_stream_from("orders")

        assert await take(subscription, 4) == [0, 1, 2, 3]
        await asyncio.sleep(0.05)
        assert subscription.buffered_count == 0

    @pytest.mark.asyncio
    async def test_history_paging_waits_for_consumer(self, fake_server, client):
        serve(fake_server, StreamStore(list(range(6))))

        subscription = client.subscriptions.subscribe_to_stream_from(
            "orders", settings=CatchUpSubscriptionSettings(read_batch_size=2)
        )
        await wait_until(lambda: subscription.buffered_count == 2)
        await asyncio.sleep(0.05)
        assert reads(fake_server) == [0]

        assert await take(subscription, 1) == [0]
        await wait_until(lambda: len(reads(fake_server)) == 2)
        assert reads(fake_server) == [0, 2]

    @pytest.mark.asyncio
    async def test_missing_stream_goes_live(self, fake_server, client):
        serve(fake_server, StreamStore([], status="StreamNotFound"))

        subscription = client.subscriptions.subscribe_to_stream_from("orders")
        await wait_until(lambda: subscription.is_live_processing)
        push_live(fake_server, 0)

        assert await take(subscription, 1) == [0]


class TestCatchUpDrops:
    """Tests for catch-up subscription drop handling."""

    @pytest.mark.asyncio
    async def test_deleted_stream_drops(self, fake_server, client):
        serve(fake_server, StreamStore([], status="StreamDeleted"))
        on_dropped = MagicMock()

        subscription = client.subscriptions.subscribe_to_stream_from(
            "orders", on_dropped=on_dropped
        )
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.CATCH_UP_ERROR
        assert isinstance(notification.error, StreamDeleted)
        assert fake_server.received(FrameKind.SUBSCRIBE_TO_STREAM) == []
        on_dropped.assert_called_once_with(subscription, notification)
        assert client.subscriptions.active_count == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_live_subscription(self, fake_server, client):
        serve(fake_server, StreamStore([0]))

        subscription = client.subscriptions.subscribe_to_stream_from("orders")
        assert await take(subscription, 1) == [0]
        await wait_until(lambda: subscription.is_live_processing)

        await subscription.unsubscribe()
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.USER_INITIATED
        assert subscription.state is SubscriptionState.UNSUBSCRIBED
        await wait_until(lambda: fake_server.received(FrameKind.UNSUBSCRIBE_FROM_STREAM) != [])
        unsubscribe = fake_server.received(FrameKind.UNSUBSCRIBE_FROM_STREAM)[0]
        assert unsubscribe.correlation_id == live_correlation_id(fake_server)
        assert client.subscriptions.active_count == 0

    @pytest.mark.asyncio
    async def test_live_subscription_dropped_by_server(self, fake_server, client):
        serve(fake_server, StreamStore([]))

        subscription = client.subscriptions.subscribe_to_stream_from("orders")
        await wait_until(lambda: subscription.is_live_processing)
        fake_server.client.push(
            Frame(
                FrameKind.SUBSCRIPTION_DROPPED,
                live_correlation_id(fake_server),
                {"reason": "AccessDenied"},
            )
        )
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.ACCESS_DENIED
        assert client.subscriptions.active_count == 0

    @pytest.mark.asyncio
    async def test_refused_live_subscription_drops(self, fake_server, client):
        serve(fake_server, StreamStore([]))
        fake_server.respond(FrameKind.SUBSCRIBE_TO_STREAM, failed("access_denied", "denied"))

        subscription = client.subscriptions.subscribe_to_stream_from("orders")
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.ACCESS_DENIED
        assert isinstance(notification.error, AccessDenied)

    @pytest.mark.asyncio
    async def test_connection_loss_drops_once(self, fake_server, client):
        serve(fake_server, StreamStore([0]))
        on_dropped = MagicMock()

        subscription = client.subscriptions.subscribe_to_stream_from(
            "orders", on_dropped=on_dropped
        )
        await wait_until(lambda: subscription.is_live_processing)

        fake_server.client.drop()
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.CONNECTION_CLOSED
        assert isinstance(notification.error, ConnectionLost)
        on_dropped.assert_called_once_with(subscription, notification)
        assert client.subscriptions.active_count == 0
        # Events read before the drop are still handed out.
        assert [event.original_event_number async for event in subscription] == [0]
        assert subscription.last_processed_event_number == 0

    @pytest.mark.asyncio
    async def test_slow_consumer_overflows(self, fake_server, client):
        serve(fake_server, StreamStore([]))

        subscription = client.subscriptions.subscribe_to_stream_from(
            "orders", settings=CatchUpSubscriptionSettings(max_live_queue_size=2)
        )
        await wait_until(lambda: subscription.is_live_processing)
        for number in range(3):
            push_live(fake_server, number)
        notification = await asyncio.wait_for(subscription.wait_dropped(), timeout=1.0)

        assert notification.reason is SubscriptionDropReason.PROCESSING_QUEUE_OVERFLOW
        assert [event.original_event_number async for event in subscription] == [0, 1]


class TestCatchUpValidation:
    """Tests for subscribe_to_stream_from argument checks."""

    @pytest.mark.asyncio
    async def test_empty_stream_rejected(self, fake_server, client):
        with pytest.raises(InvalidConfiguration):
            client.subscriptions.subscribe_to_stream_from("")

    @pytest.mark.asyncio
    async def test_negative_checkpoint_rejected(self, fake_server, client):
        with pytest.raises(InvalidConfiguration):
            client.subscriptions.subscribe_to_stream_from("orders", -1)

    @pytest.mark.asyncio
    async def test_closed_client_rejected(self, fake_server, client):
        await client.close()

        with pytest.raises(ConnectionClosed):
            client.subscriptions.subscribe_to_stream_from("orders")
