"""Principal/secret pair forwarded with connections and operations."""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import InvalidConfiguration


@dataclass(frozen=True, slots=True)
class UserCredentials:
    """Immutable credentials.

    The password is excluded from ``repr`` so credentials can be passed through
    log calls and tracebacks without leaking the secret.
    """

    username: str
    password: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.username:
            raise InvalidConfiguration("Username cannot be empty")

    def __str__(self) -> str:
        return self.username

    def to_wire(self) -> dict[str, str]:
        """Serialize for the frame envelope."""
        return {"login": self.username, "password": self.password}

    @classmethod
    def from_wire(cls, data: dict[str, str]) -> UserCredentials:
        return cls(data["login"], data.get("password", ""))
