"""Connection-level configuration."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from .credentials import UserCredentials
from .errors import InvalidConfiguration
from .protocol import FrameCodec, JsonFrameCodec

MAX_HEARTBEAT_INTERVAL = 5.0


def _default_connection_name() -> str:
    return f"ES-{uuid.uuid4()}"


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Immutable settings for a connection session.

    Durations are in seconds. ``-1`` for ``max_retries`` or
    ``max_reconnections`` means unlimited.
    """

    connection_name: str = field(default_factory=_default_connection_name)
    default_credentials: UserCredentials | None = None
    verbose_logging: bool = False
    max_queue_size: int = 5000
    max_concurrent_items: int = 5000
    max_retries: int = 10
    max_reconnections: int = 10
    reconnection_delay: float = 0.1
    max_reconnection_delay: float = 10.0
    operation_timeout: float = 7.0
    heartbeat_interval: float = 0.75
    heartbeat_timeout: float = 1.5
    client_connection_timeout: float = 1.0
    path: str = "/"
    use_tls: bool = False
    codec: FrameCodec = field(default_factory=JsonFrameCodec)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.connection_name:
            errors.append("connection_name must not be empty")
        if self.heartbeat_interval >= MAX_HEARTBEAT_INTERVAL:
            errors.append(
                f"heartbeat_interval must be less than {MAX_HEARTBEAT_INTERVAL}s"
            )
        if self.max_queue_size < 1:
            errors.append("max_queue_size must be positive")
        if self.max_concurrent_items < 1:
            errors.append("max_concurrent_items must be positive")
        if self.max_retries < -1:
            errors.append(
                f"max_retries is out of range {self.max_retries}, allowed range: [-1, inf)"
            )
        if self.max_reconnections < -1:
            errors.append(
                "max_reconnections is out of range "
                f"{self.max_reconnections}, allowed range: [-1, inf)"
            )

        for name in (
            "reconnection_delay",
            "max_reconnection_delay",
            "operation_timeout",
            "heartbeat_interval",
            "heartbeat_timeout",
            "client_connection_timeout",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.max_reconnection_delay < self.reconnection_delay:
            errors.append("max_reconnection_delay must be >= reconnection_delay")

        if errors:
            raise InvalidConfiguration("; ".join(errors), errors=errors)
