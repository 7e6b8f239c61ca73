"""Client error types for event store interactions."""

from __future__ import annotations

from typing import Any


class EventStoreClientError(Exception):
    """Base error for event store client failures."""


class EventStoreConnectionError(EventStoreClientError):
    """Network connection to the node could not be established."""


class EventStoreHandshakeError(EventStoreConnectionError):
    """The node rejected the client handshake."""


class ClusterDiscoveryError(EventStoreConnectionError):
    """No usable cluster node was found."""


class ConnectionClosed(EventStoreConnectionError):
    """The connection was closed while the operation was pending."""

    @classmethod
    def with_name(cls, connection_name: str) -> ConnectionClosed:
        return cls(f"Connection '{connection_name}' was closed")


class ConnectionLost(EventStoreConnectionError):
    """The connection dropped and the operation cannot be replayed."""


class OperationTimeout(EventStoreClientError):
    """No response arrived before the operation deadline."""


class RetriesLimitReached(EventStoreClientError):
    """Operation was retried the maximum number of times."""

    def __init__(self, retries: int) -> None:
        super().__init__(f"Operation reached retries limit: {retries}")
        self.retries = retries


class MaxQueueSizeReached(EventStoreClientError):
    """Too many operations are waiting to be sent."""


class InvalidConfiguration(EventStoreClientError, ValueError):
    """Configuration failed local validation."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class SubscriptionError(EventStoreClientError):
    """The server refused a subscription."""

    def __init__(self, reason: Any, message: str | None = None) -> None:
        super().__init__(message or f"Subscription dropped: {reason}")
        self.reason = reason


class ServerError(EventStoreClientError):
    """Error reported by the server for a specific operation."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class NotAuthenticated(ServerError):
    """The supplied credentials were not accepted."""


class AccessDenied(ServerError):
    """The principal is not allowed to perform the operation."""


class BadRequest(ServerError):
    """The server could not understand the request."""


class ResourceNotFound(ServerError):
    """The addressed resource does not exist."""


class CommandConflict(ServerError):
    """The command conflicts with existing server state."""


class ProjectionNotFound(ResourceNotFound):
    """Projection does not exist."""


class ProjectionAlreadyExists(CommandConflict):
    """A projection with the same name already exists."""


class PersistentSubscriptionNotFound(ResourceNotFound):
    """Persistent subscription group does not exist."""


class PersistentSubscriptionAlreadyExists(CommandConflict):
    """Persistent subscription group already exists on the stream."""


class StreamDeleted(ServerError):
    """The stream was hard deleted."""


_ERRORS_BY_CODE: dict[str, type[ServerError]] = {
    "not_authenticated": NotAuthenticated,
    "access_denied": AccessDenied,
    "bad_request": BadRequest,
    "not_found": ResourceNotFound,
    "conflict": CommandConflict,
    "stream_deleted": StreamDeleted,
}


def error_from_code(code: str, message: str) -> ServerError:
    """Map a server failure code onto the matching exception instance."""
    error_type = _ERRORS_BY_CODE.get(code, ServerError)
    return error_type(code, message)
