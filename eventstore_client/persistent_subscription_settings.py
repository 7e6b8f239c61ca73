"""Validated settings for persistent subscription groups.

Settings are built in two phases. ``PersistentSubscriptionSettingsBuilder`` is a
frozen draft whose setters return updated copies without validating anything.
``try_build()`` checks every constraint at once and returns either the
immutable ``PersistentSubscriptionSettings`` or an ``InvalidConfiguration``;
``build()`` raises the latter. Nothing here performs I/O, so an illegal
configuration never reaches the network.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .errors import InvalidConfiguration

INT32_MAX = 2_147_483_647

# Server stores both durations as signed 32-bit millisecond counts.
MAX_CHECK_POINT_AFTER_MS = INT32_MAX
MAX_MESSAGE_TIMEOUT_MS = INT32_MAX

STREAM_END = -1


class NamedConsumerStrategy(Enum):
    """How the server spreads events over connected group members."""

    DISPATCH_TO_SINGLE = "DispatchToSingle"
    ROUND_ROBIN = "RoundRobin"
    PINNED = "Pinned"


@dataclass(frozen=True, slots=True)
class PersistentSubscriptionSettings:
    """Immutable, validated persistent subscription settings."""

    resolve_link_tos: bool
    start_from: int
    extra_statistics: bool
    check_point_after_ms: int
    live_buffer_size: int
    read_batch_size: int
    buffer_size: int
    max_check_point_count: int
    max_retry_count: int
    max_subscriber_count: int
    message_timeout_ms: int
    min_check_point_count: int
    named_consumer_strategy: NamedConsumerStrategy

    @classmethod
    def create(cls) -> PersistentSubscriptionSettingsBuilder:
        return PersistentSubscriptionSettingsBuilder()

    @classmethod
    def default(cls) -> PersistentSubscriptionSettings:
        return PersistentSubscriptionSettingsBuilder().build()

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the server's field names."""
        return {
            "resolveLinkTos": self.resolve_link_tos,
            "startFrom": self.start_from,
            "extraStatistics": self.extra_statistics,
            "checkPointAfterMilliseconds": self.check_point_after_ms,
            "liveBufferSize": self.live_buffer_size,
            "readBatchSize": self.read_batch_size,
            "bufferSize": self.buffer_size,
            "maxCheckPointCount": self.max_check_point_count,
            "maxRetryCount": self.max_retry_count,
            "maxSubscriberCount": self.max_subscriber_count,
            "messageTimeoutMilliseconds": self.message_timeout_ms,
            "minCheckPointCount": self.min_check_point_count,
            "namedConsumerStrategy": self.named_consumer_strategy.value,
        }


@dataclass(frozen=True, slots=True)
class PersistentSubscriptionSettingsBuilder:
    """Draft settings with fluent, non-validating setters.

    Usage:
        settings = (
            PersistentSubscriptionSettings.create()
            .start_from_beginning()
            .check_point_after_ms(60_000)
            .build()
        )
    """

    _resolve_link_tos: bool = True
    _start_from: int = STREAM_END
    _extra_statistics: bool = False
    _check_point_after_ms: int = 2_000
    _live_buffer_size: int = 500
    _read_batch_size: int = 10
    _buffer_size: int = 20
    _max_check_point_count: int = 1_000
    _max_retry_count: int = 500
    _max_subscriber_count: int = 0
    _message_timeout_ms: int = 30_000
    _min_check_point_count: int = 10
    _named_consumer_strategy: NamedConsumerStrategy = NamedConsumerStrategy.ROUND_ROBIN

    # -------------------------------------------------------------------------
    # Fluent setters
    # -------------------------------------------------------------------------

    def resolve_link_tos(self, value: bool = True) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _resolve_link_tos=value)

    def do_not_resolve_link_tos(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _resolve_link_tos=False)

    def start_from(self, position: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _start_from=position)

    def start_from_beginning(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _start_from=0)

    def start_from_current(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _start_from=STREAM_END)

    def with_extra_statistics(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _extra_statistics=True)

    def check_point_after_ms(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _check_point_after_ms=value)

    def live_buffer_size(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _live_buffer_size=value)

    def read_batch_size(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _read_batch_size=value)

    def buffer_size(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _buffer_size=value)

    def max_check_point_count(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _max_check_point_count=value)

    def min_check_point_count(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _min_check_point_count=value)

    def max_retry_count(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _max_retry_count=value)

    def dont_timeout_messages(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _message_timeout_ms=0)

    def max_subscriber_count(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _max_subscriber_count=value)

    def message_timeout_ms(self, value: int) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _message_timeout_ms=value)

    def named_consumer_strategy(
        self, strategy: NamedConsumerStrategy
    ) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _named_consumer_strategy=strategy)

    def prefer_round_robin(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(self, _named_consumer_strategy=NamedConsumerStrategy.ROUND_ROBIN)

    def prefer_dispatch_to_single(self) -> PersistentSubscriptionSettingsBuilder:
        return replace(
            self, _named_consumer_strategy=NamedConsumerStrategy.DISPATCH_TO_SINGLE
        )

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Return every violated constraint, in field order."""
        errors: list[str] = []

        if self._start_from < STREAM_END:
            errors.append(f"start_from must be >= {STREAM_END}, got {self._start_from}")

        _check_range(
            errors, "check_point_after_ms", self._check_point_after_ms, 0,
            MAX_CHECK_POINT_AFTER_MS,
        )
        _check_range(
            errors, "message_timeout_ms", self._message_timeout_ms, 0,
            MAX_MESSAGE_TIMEOUT_MS,
        )

        for name, value in (
            ("live_buffer_size", self._live_buffer_size),
            ("read_batch_size", self._read_batch_size),
            ("buffer_size", self._buffer_size),
            ("max_check_point_count", self._max_check_point_count),
        ):
            _check_range(errors, name, value, 1, INT32_MAX)

        for name, value in (
            ("min_check_point_count", self._min_check_point_count),
            ("max_retry_count", self._max_retry_count),
            ("max_subscriber_count", self._max_subscriber_count),
        ):
            _check_range(errors, name, value, 0, INT32_MAX)

        if self._min_check_point_count > self._max_check_point_count:
            errors.append(
                "min_check_point_count must not exceed max_check_point_count "
                f"({self._min_check_point_count} > {self._max_check_point_count})"
            )

        return errors

    def try_build(self) -> PersistentSubscriptionSettings | InvalidConfiguration:
        """Validate and return either the settings or the configuration error."""
        errors = self.validate()
        if errors:
            return InvalidConfiguration("; ".join(errors), errors=errors)

        return PersistentSubscriptionSettings(
            resolve_link_tos=self._resolve_link_tos,
            start_from=self._start_from,
            extra_statistics=self._extra_statistics,
            check_point_after_ms=self._check_point_after_ms,
            live_buffer_size=self._live_buffer_size,
            read_batch_size=self._read_batch_size,
            buffer_size=self._buffer_size,
            max_check_point_count=self._max_check_point_count,
            max_retry_count=self._max_retry_count,
            max_subscriber_count=self._max_subscriber_count,
            message_timeout_ms=self._message_timeout_ms,
            min_check_point_count=self._min_check_point_count,
            named_consumer_strategy=self._named_consumer_strategy,
        )

    def build(self) -> PersistentSubscriptionSettings:
        """Validate and return the settings.

        Raises:
            InvalidConfiguration: If any constraint is violated
        """
        result = self.try_build()
        if isinstance(result, InvalidConfiguration):
            raise result
        return result


def _check_range(
    errors: list[str], name: str, value: int, minimum: int, maximum: int
) -> None:
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{name} must be an integer, got {type(value).__name__}")
        return
    if value < minimum or value > maximum:
        errors.append(f"{name} must be between {minimum} and {maximum}, got {value}")
