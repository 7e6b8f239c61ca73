"""Frame model and codecs for event store transport messages.

Every message on the wire is a frame envelope carrying a kind, a correlation
id, an optional credentials block and a JSON-compatible body. The codec is the
only component that knows how an envelope becomes bytes.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .credentials import UserCredentials

PROTOCOL_VERSION = 1


class FrameKind(str, Enum):
    """Frame kinds understood by the client."""

    HEARTBEAT_REQUEST = "heartbeat_request"
    HEARTBEAT_RESPONSE = "heartbeat_response"

    IDENTIFY_CLIENT = "identify_client"
    CLIENT_IDENTIFIED = "client_identified"
    AUTHENTICATE = "authenticate"
    AUTHENTICATED = "authenticated"

    NOT_AUTHENTICATED = "not_authenticated"
    BAD_REQUEST = "bad_request"
    NOT_HANDLED = "not_handled"
    OPERATION_FAILED = "operation_failed"

    SUBSCRIBE_TO_STREAM = "subscribe_to_stream"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    STREAM_EVENT_APPEARED = "stream_event_appeared"
    UNSUBSCRIBE_FROM_STREAM = "unsubscribe_from_stream"
    SUBSCRIPTION_DROPPED = "subscription_dropped"

    CONNECT_TO_PERSISTENT_SUBSCRIPTION = "connect_to_persistent_subscription"
    PERSISTENT_SUBSCRIPTION_CONFIRMED = "persistent_subscription_confirmed"
    PERSISTENT_SUBSCRIPTION_EVENT_APPEARED = "persistent_subscription_event_appeared"
    PERSISTENT_SUBSCRIPTION_ACK_EVENTS = "persistent_subscription_ack_events"
    PERSISTENT_SUBSCRIPTION_NAK_EVENTS = "persistent_subscription_nak_events"

    CREATE_PERSISTENT_SUBSCRIPTION = "create_persistent_subscription"
    UPDATE_PERSISTENT_SUBSCRIPTION = "update_persistent_subscription"
    DELETE_PERSISTENT_SUBSCRIPTION = "delete_persistent_subscription"
    PERSISTENT_SUBSCRIPTION_COMMAND_COMPLETED = "persistent_subscription_command_completed"

    READ_STREAM_EVENTS_FORWARD = "read_stream_events_forward"
    READ_STREAM_EVENTS_FORWARD_COMPLETED = "read_stream_events_forward_completed"

    PROJECTION_COMMAND = "projection_command"
    PROJECTION_COMMAND_COMPLETED = "projection_command_completed"


# Frames pushed by the server outside any request/response pair.
PUSH_KINDS: frozenset[FrameKind] = frozenset(
    {
        FrameKind.STREAM_EVENT_APPEARED,
        FrameKind.PERSISTENT_SUBSCRIPTION_EVENT_APPEARED,
    }
)

FAILURE_KINDS: frozenset[FrameKind] = frozenset(
    {
        FrameKind.NOT_AUTHENTICATED,
        FrameKind.BAD_REQUEST,
        FrameKind.NOT_HANDLED,
        FrameKind.OPERATION_FAILED,
    }
)


@dataclass(frozen=True, slots=True)
class Frame:
    """A single decoded transport message."""

    kind: FrameKind
    correlation_id: str
    body: dict[str, Any] = field(default_factory=dict)
    credentials: UserCredentials | None = field(default=None, repr=False)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def build_envelope(frame: Frame) -> dict[str, Any]:
    """Build the canonical envelope dict for a frame.

    Notes:
    - ``auth`` is omitted when the frame carries no credentials
    - unknown optional fields MUST be ignored by the recipient
    """
    envelope: dict[str, Any] = {
        "v": PROTOCOL_VERSION,
        "kind": frame.kind.value,
        "correlation_id": frame.correlation_id,
        "body": frame.body,
    }
    if frame.credentials is not None:
        envelope["auth"] = frame.credentials.to_wire()
    return envelope


def parse_envelope(envelope: Mapping[str, Any]) -> Frame:
    """Validate an envelope dict and turn it into a ``Frame``.

    Raises:
        ValueError: If required fields are missing or malformed
    """
    kind_raw = envelope.get("kind")
    if not isinstance(kind_raw, str):
        raise ValueError("Frame kind is required")
    try:
        kind = FrameKind(kind_raw)
    except ValueError as err:
        raise ValueError(f"Unknown frame kind: {kind_raw}") from err

    correlation_id = envelope.get("correlation_id")
    if not isinstance(correlation_id, str) or not correlation_id:
        raise ValueError("Frame correlation_id is required")

    body = envelope.get("body") or {}
    if not isinstance(body, Mapping):
        raise ValueError("Frame body must be an object")

    auth = envelope.get("auth")
    credentials = UserCredentials.from_wire(auth) if isinstance(auth, Mapping) else None

    return Frame(
        kind=kind,
        correlation_id=correlation_id,
        body=dict(body),
        credentials=credentials,
    )


class FrameCodec(Protocol):
    """Turns frames into transport payloads and back."""

    def encode(self, frame: Frame) -> str | bytes:  # pragma: no cover - protocol definition
        ...

    def decode(self, data: str | bytes) -> Frame:  # pragma: no cover - protocol definition
        ...


class JsonFrameCodec:
    """Encode frames as JSON text messages."""

    def encode(self, frame: Frame) -> str:
        return json.dumps(build_envelope(frame), separators=(",", ":"))

    def decode(self, data: str | bytes) -> Frame:
        envelope = json.loads(data)
        if not isinstance(envelope, dict):
            raise ValueError("Frame envelope must be a JSON object")
        return parse_envelope(envelope)
