"""High-level client wiring the session, dispatcher and managers together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType

from .discovery import EndPoint, EndPointDiscoverer, StaticEndPointDiscoverer
from .dispatcher import OperationDispatcher
from .projections import ProjectionsManager
from .protocol import PUSH_KINDS, Frame
from .session import ConnectionSession, ConnectionState, StateListener
from .settings import ConnectionSettings
from .subscriptions import SubscriptionManager

_LOGGER = logging.getLogger(__name__)


class EventStoreClient:
    """Single-connection event store client.

    Usage:
        async with EventStoreClient(EndPoint("localhost", 1113)) as client:
            subscription = await client.subscriptions.subscribe_to_stream("orders")
            names = [p.name for p in await client.projections.list_all()]
    """

    def __init__(
        self,
        endpoint: EndPoint | EndPointDiscoverer,
        settings: ConnectionSettings | None = None,
    ) -> None:
        discoverer = (
            StaticEndPointDiscoverer(endpoint) if isinstance(endpoint, EndPoint) else endpoint
        )
        self._session = ConnectionSession(discoverer, settings)
        self._dispatcher = OperationDispatcher(self._session)
        self._subscriptions = SubscriptionManager(self._dispatcher, self._session)
        self._projections = ProjectionsManager(self._dispatcher)
        self._session.set_frame_handler(self._route_frame)

    @property
    def settings(self) -> ConnectionSettings:
        return self._session.settings

    @property
    def state(self) -> ConnectionState:
        return self._session.state

    @property
    def session(self) -> ConnectionSession:
        return self._session

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def projections(self) -> ProjectionsManager:
        return self._projections

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        return self._session.add_state_listener(listener)

    async def connect(self) -> None:
        await self._session.connect()

    async def close(self) -> None:
        await self._session.close()

    async def __aenter__(self) -> EventStoreClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _route_frame(self, frame: Frame) -> None:
        """Pushed events go to subscriptions; responses go to the dispatcher first."""
        if frame.kind in PUSH_KINDS:
            handled = self._subscriptions.handle_frame(frame)
        else:
            handled = self._dispatcher.handle_frame(frame) or self._subscriptions.handle_frame(
                frame
            )

        if not handled:
            _LOGGER.debug(
                "[%s] Ignoring unmatched %s (%s)",
                self._session.connection_name,
                frame.kind.value,
                frame.correlation_id,
            )
