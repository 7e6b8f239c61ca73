"""Projection management commands.

Every command travels as a ``PROJECTION_COMMAND`` frame whose body names the
command and its arguments; the server answers with
``PROJECTION_COMMAND_COMPLETED`` carrying the command result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .credentials import UserCredentials
from .dispatcher import OperationDispatcher
from .errors import (
    CommandConflict,
    InvalidConfiguration,
    ProjectionAlreadyExists,
    ProjectionNotFound,
    ResourceNotFound,
    ServerError,
)
from .protocol import Frame, FrameKind

_LOGGER = logging.getLogger(__name__)

DEFAULT_QUERY_TYPE = "JS"


@dataclass(frozen=True, slots=True)
class ProjectionDetails:
    """Snapshot of a projection as reported by the server."""

    name: str
    effective_name: str
    mode: str
    status: str
    state_reason: str | None
    position: str | None
    progress: float
    last_checkpoint: str | None
    checkpoint_status: str | None
    events_processed_after_restart: int
    buffered_events: int
    core_processing_time: int
    version: int
    epoch: int
    writes_in_progress: int
    reads_in_progress: int
    partitions_cached: int
    write_pending_events_before_checkpoint: int
    write_pending_events_after_checkpoint: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectionDetails:
        """Build details from a server entry (camelCase keys)."""
        name = str(data["name"])
        return cls(
            name=name,
            effective_name=str(data.get("effectiveName") or name),
            mode=str(data.get("mode", "")),
            status=str(data.get("status", "")),
            state_reason=data.get("stateReason") or None,
            position=data.get("position"),
            progress=float(data.get("progress", 0.0)),
            last_checkpoint=data.get("lastCheckpoint"),
            checkpoint_status=data.get("checkpointStatus") or None,
            events_processed_after_restart=int(data.get("eventsProcessedAfterRestart", 0)),
            buffered_events=int(data.get("bufferedEvents", 0)),
            core_processing_time=int(data.get("coreProcessingTime", 0)),
            version=int(data.get("version", 0)),
            epoch=int(data.get("epoch", 0)),
            writes_in_progress=int(data.get("writesInProgress", 0)),
            reads_in_progress=int(data.get("readsInProgress", 0)),
            partitions_cached=int(data.get("partitionsCached", 0)),
            write_pending_events_before_checkpoint=int(
                data.get("writePendingEventsBeforeCheckpoint", 0)
            ),
            write_pending_events_after_checkpoint=int(
                data.get("writePendingEventsAfterCheckpoint", 0)
            ),
        )


class ProjectionsManager:
    """Create, control and inspect projections.

    Usage:
        projections = ProjectionsManager(dispatcher, default_credentials=admin)
        await projections.create_continuous("order-totals", query)
        details = await projections.list_continuous()
    """

    def __init__(
        self,
        dispatcher: OperationDispatcher,
        *,
        default_credentials: UserCredentials | None = None,
        timeout: float | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._default_credentials = default_credentials
        self._timeout = timeout

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list_all(
        self, *, credentials: UserCredentials | None = None
    ) -> list[ProjectionDetails]:
        """List every projection, in server order."""
        return await self._list("any", credentials)

    async def list_one_time(
        self, *, credentials: UserCredentials | None = None
    ) -> list[ProjectionDetails]:
        return await self._list("onetime", credentials)

    async def list_continuous(
        self, *, credentials: UserCredentials | None = None
    ) -> list[ProjectionDetails]:
        return await self._list("continuous", credentials)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_one_time(
        self,
        query: str,
        type: str = DEFAULT_QUERY_TYPE,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Create a one-time projection that runs to completion and stops."""
        _require(query=query)
        await self._create(
            None, {"mode": "onetime", "query": query, "type": type}, credentials
        )

    async def create_transient(
        self,
        name: str,
        query: str,
        type: str = DEFAULT_QUERY_TYPE,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        _require(name=name, query=query)
        await self._create(
            name,
            {"mode": "transient", "name": name, "query": query, "type": type},
            credentials,
        )

    async def create_continuous(
        self,
        name: str,
        query: str,
        track_emitted_streams: bool = False,
        type: str = DEFAULT_QUERY_TYPE,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Create a continuous projection with emit enabled.

        Raises:
            InvalidConfiguration: If ``name`` or ``query`` is empty
            ProjectionAlreadyExists: If a projection named ``name`` exists
        """
        _require(name=name, query=query)
        await self._create(
            name,
            {
                "mode": "continuous",
                "name": name,
                "query": query,
                "type": type,
                "emit": True,
                "track_emitted_streams": track_emitted_streams,
            },
            credentials,
        )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    async def enable(self, name: str, *, credentials: UserCredentials | None = None) -> None:
        await self._named("enable", name, credentials=credentials)

    async def disable(self, name: str, *, credentials: UserCredentials | None = None) -> None:
        await self._named("disable", name, credentials=credentials)

    async def abort(self, name: str, *, credentials: UserCredentials | None = None) -> None:
        await self._named("abort", name, credentials=credentials)

    async def reset(self, name: str, *, credentials: UserCredentials | None = None) -> None:
        await self._named("reset", name, credentials=credentials, idempotent=False)

    async def delete(
        self,
        name: str,
        delete_emitted_streams: bool = False,
        delete_state_stream: bool = False,
        delete_checkpoint_stream: bool = False,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        await self._named(
            "delete",
            name,
            {
                "delete_emitted_streams": delete_emitted_streams,
                "delete_state_stream": delete_state_stream,
                "delete_checkpoint_stream": delete_checkpoint_stream,
            },
            credentials=credentials,
            idempotent=False,
        )

    async def update_query(
        self,
        name: str,
        query: str,
        emit_enabled: bool | None = None,
        *,
        credentials: UserCredentials | None = None,
    ) -> None:
        """Replace the query of a projection; ``emit_enabled`` is left as is when None."""
        _require(name=name, query=query)
        args: dict[str, Any] = {"query": query}
        if emit_enabled is not None:
            args["emit"] = emit_enabled
        await self._named("update_query", name, args, credentials=credentials)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def get_status(
        self, name: str, *, credentials: UserCredentials | None = None
    ) -> ProjectionDetails:
        response = await self._named("get_status", name, credentials=credentials)
        return ProjectionDetails.from_dict(response.body["status"])

    async def get_state(
        self, name: str, *, credentials: UserCredentials | None = None
    ) -> Any:
        response = await self._named("get_state", name, credentials=credentials)
        return response.body.get("state")

    async def get_partition_state(
        self,
        name: str,
        partition: str,
        *,
        credentials: UserCredentials | None = None,
    ) -> Any:
        response = await self._named(
            "get_state", name, {"partition": partition}, credentials=credentials
        )
        return response.body.get("state")

    async def get_result(
        self, name: str, *, credentials: UserCredentials | None = None
    ) -> Any:
        response = await self._named("get_result", name, credentials=credentials)
        return response.body.get("result")

    async def get_partition_result(
        self,
        name: str,
        partition: str,
        *,
        credentials: UserCredentials | None = None,
    ) -> Any:
        response = await self._named(
            "get_result", name, {"partition": partition}, credentials=credentials
        )
        return response.body.get("result")

    async def get_statistics(
        self, name: str, *, credentials: UserCredentials | None = None
    ) -> dict[str, Any]:
        response = await self._named("get_statistics", name, credentials=credentials)
        return dict(response.body.get("statistics") or {})

    async def get_query(
        self, name: str, *, credentials: UserCredentials | None = None
    ) -> str:
        response = await self._named("get_query", name, credentials=credentials)
        return str(response.body.get("query", ""))

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _list(
        self, mode: str, credentials: UserCredentials | None
    ) -> list[ProjectionDetails]:
        response = await self._command("list", {"mode": mode}, credentials)
        entries = response.body.get("projections") or []
        return [ProjectionDetails.from_dict(entry) for entry in entries]

    async def _create(
        self,
        name: str | None,
        args: dict[str, Any],
        credentials: UserCredentials | None,
    ) -> None:
        try:
            await self._command("create", args, credentials, idempotent=False)
        except CommandConflict as err:
            message = (
                f"Projection '{name}' already exists"
                if name
                else "One-time projection conflicts with an existing projection"
            )
            raise ProjectionAlreadyExists(err.code, message) from err
        _LOGGER.debug("Created %s projection %s", args["mode"], name or "(one-time)")

    async def _named(
        self,
        command: str,
        name: str,
        args: dict[str, Any] | None = None,
        *,
        credentials: UserCredentials | None,
        idempotent: bool = True,
    ) -> Frame:
        _require(name=name)
        try:
            return await self._command(
                command,
                {"name": name, **(args or {})},
                credentials,
                idempotent=idempotent,
            )
        except ResourceNotFound as err:
            raise ProjectionNotFound(err.code, f"Projection '{name}' not found") from err

    async def _command(
        self,
        command: str,
        args: dict[str, Any],
        credentials: UserCredentials | None,
        *,
        idempotent: bool = True,
    ) -> Frame:
        response = await self._dispatcher.send(
            FrameKind.PROJECTION_COMMAND,
            {"command": command, **args},
            credentials=credentials or self._default_credentials,
            timeout=self._timeout,
            idempotent=idempotent,
        )
        if response.kind is not FrameKind.PROJECTION_COMMAND_COMPLETED:
            raise ServerError(
                "unexpected_response",
                f"Unexpected response to {command}: {response.kind.value}",
            )
        return response


def _require(**values: str) -> None:
    errors = [f"{key.capitalize()} cannot be empty" for key, value in values.items() if not value]
    if errors:
        raise InvalidConfiguration("; ".join(errors), errors=errors)
