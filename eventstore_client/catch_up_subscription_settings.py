"""Settings for catch-up subscriptions."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidConfiguration

# Largest page the server returns for a single read.
MAX_READ_SIZE = 4096


@dataclass(frozen=True, slots=True)
class CatchUpSubscriptionSettings:
    """Immutable settings for a catch-up subscription.

    ``max_live_queue_size`` bounds the events buffered while the consumer lags
    behind the live stream; exceeding it drops the subscription with
    ``PROCESSING_QUEUE_OVERFLOW``. ``read_batch_size`` is the page size used
    while reading history.
    """

    max_live_queue_size: int = 10_000
    read_batch_size: int = 500
    verbose_logging: bool = False
    resolve_link_tos: bool = True
    subscription_name: str = ""

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.read_batch_size < 1:
            errors.append("read_batch_size must be positive")
        elif self.read_batch_size > MAX_READ_SIZE:
            errors.append(
                f"read_batch_size should be less than {MAX_READ_SIZE}; "
                "for larger reads you should page"
            )
        if self.max_live_queue_size < 1:
            errors.append("max_live_queue_size must be positive")

        if errors:
            raise InvalidConfiguration("; ".join(errors), errors=errors)

    @classmethod
    def default(cls) -> CatchUpSubscriptionSettings:
        return cls()
