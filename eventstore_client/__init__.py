"""Asyncio client for event store servers."""

__version__ = "0.1.0"

from .catch_up_subscription_settings import CatchUpSubscriptionSettings
from .client import EventStoreClient
from .credentials import UserCredentials
from .discovery import ClusterEndPointDiscoverer, EndPoint, StaticEndPointDiscoverer
from .dispatcher import OperationDispatcher
from .errors import (
    AccessDenied,
    BadRequest,
    ClusterDiscoveryError,
    CommandConflict,
    ConnectionClosed,
    ConnectionLost,
    EventStoreClientError,
    EventStoreConnectionError,
    EventStoreHandshakeError,
    InvalidConfiguration,
    MaxQueueSizeReached,
    NotAuthenticated,
    OperationTimeout,
    PersistentSubscriptionAlreadyExists,
    PersistentSubscriptionNotFound,
    ProjectionAlreadyExists,
    ProjectionNotFound,
    ResourceNotFound,
    RetriesLimitReached,
    ServerError,
    StreamDeleted,
    SubscriptionError,
)
from .persistent_subscription_settings import (
    MAX_CHECK_POINT_AFTER_MS,
    MAX_MESSAGE_TIMEOUT_MS,
    NamedConsumerStrategy,
    PersistentSubscriptionSettings,
    PersistentSubscriptionSettingsBuilder,
)
from .projections import ProjectionDetails, ProjectionsManager
from .protobuf_util import ProtobufFrameCodec
from .protocol import Frame, FrameCodec, FrameKind, JsonFrameCodec
from .session import ConnectionSession, ConnectionState
from .settings import ConnectionSettings
from .subscriptions import (
    CatchUpSubscription,
    NakAction,
    PersistentSubscription,
    RecordedEvent,
    ResolvedEvent,
    SliceReadStatus,
    StreamEventsSlice,
    SubscriptionDropped,
    SubscriptionDropReason,
    SubscriptionManager,
    SubscriptionState,
    VolatileSubscription,
)

__all__ = [
    "MAX_CHECK_POINT_AFTER_MS",
    "MAX_MESSAGE_TIMEOUT_MS",
    "AccessDenied",
    "BadRequest",
    "CatchUpSubscription",
    "CatchUpSubscriptionSettings",
    "ClusterDiscoveryError",
    "ClusterEndPointDiscoverer",
    "CommandConflict",
    "ConnectionClosed",
    "ConnectionLost",
    "ConnectionSession",
    "ConnectionSettings",
    "ConnectionState",
    "EndPoint",
    "EventStoreClient",
    "EventStoreClientError",
    "EventStoreConnectionError",
    "EventStoreHandshakeError",
    "Frame",
    "FrameCodec",
    "FrameKind",
    "InvalidConfiguration",
    "JsonFrameCodec",
    "MaxQueueSizeReached",
    "NakAction",
    "NamedConsumerStrategy",
    "NotAuthenticated",
    "OperationDispatcher",
    "OperationTimeout",
    "PersistentSubscription",
    "PersistentSubscriptionAlreadyExists",
    "PersistentSubscriptionNotFound",
    "PersistentSubscriptionSettings",
    "PersistentSubscriptionSettingsBuilder",
    "ProjectionAlreadyExists",
    "ProjectionDetails",
    "ProjectionNotFound",
    "ProjectionsManager",
    "ProtobufFrameCodec",
    "RecordedEvent",
    "ResolvedEvent",
    "ResourceNotFound",
    "RetriesLimitReached",
    "ServerError",
    "SliceReadStatus",
    "StaticEndPointDiscoverer",
    "StreamDeleted",
    "StreamEventsSlice",
    "SubscriptionDropReason",
    "SubscriptionDropped",
    "SubscriptionError",
    "SubscriptionManager",
    "SubscriptionState",
    "UserCredentials",
    "VolatileSubscription",
    "__version__",
]
