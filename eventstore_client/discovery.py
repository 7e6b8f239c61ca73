"""Endpoint discovery for single nodes and gossip-based clusters."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from .errors import ClusterDiscoveryError

_LOGGER = logging.getLogger(__name__)

DEFAULT_HTTP_PORT = 2113

# Lower rank is preferred.
_STATE_RANK: dict[str, int] = {
    "Leader": 0,
    "Master": 0,
    "Follower": 1,
    "Slave": 1,
    "PreReplica": 2,
    "ReadOnlyReplica": 2,
    "ReadOnlyLeaderless": 3,
    "Clone": 3,
    "CatchingUp": 4,
    "PreReadOnlyReplica": 4,
    "PreLeader": 5,
    "PreMaster": 5,
    "Unknown": 6,
    "Initializing": 6,
    "DiscoverLeader": 6,
}
_IGNORED_STATES = frozenset({"Manager", "ShuttingDown", "Shutdown"})


@dataclass(frozen=True, slots=True)
class EndPoint:
    """Host/port pair."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class GossipMember:
    """Member entry from a gossip document."""

    state: str
    is_alive: bool
    tcp_endpoint: EndPoint
    http_endpoint: EndPoint

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GossipMember:
        tcp_host = data.get("externalTcpIp") or data.get("externalHttpIp", "")
        http_host = data.get("externalHttpIp") or tcp_host
        return cls(
            state=str(data.get("state", "Unknown")),
            is_alive=data.get("isAlive") is True,
            tcp_endpoint=EndPoint(tcp_host, int(data.get("externalTcpPort", 0))),
            http_endpoint=EndPoint(
                http_host, int(data.get("externalHttpPort", DEFAULT_HTTP_PORT))
            ),
        )


class EndPointDiscoverer(Protocol):
    """Resolves the endpoint the session should connect to."""

    async def discover(
        self, failed_endpoint: EndPoint | None = None
    ) -> EndPoint:  # pragma: no cover - protocol definition
        ...


class StaticEndPointDiscoverer:
    """Always returns the configured endpoint."""

    def __init__(self, endpoint: EndPoint) -> None:
        self._endpoint = endpoint

    async def discover(self, failed_endpoint: EndPoint | None = None) -> EndPoint:
        return self._endpoint


class ClusterEndPointDiscoverer:
    """Discover the best cluster node through HTTP gossip.

    Usage:
        async with aiohttp.ClientSession() as http:
            discoverer = ClusterEndPointDiscoverer(
                http, [EndPoint("node1", 2113), EndPoint("node2", 2113)]
            )
            endpoint = await discoverer.discover()
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        gossip_seeds: Sequence[EndPoint],
        *,
        max_discover_attempts: int = 10,
        gossip_timeout: float = 1.0,
        prefer_random_node: bool = False,
        retry_delay: float = 0.1,
    ) -> None:
        if not gossip_seeds:
            raise ValueError("At least one gossip seed is required")
        if max_discover_attempts < 1:
            raise ValueError("max_discover_attempts must be positive")
        self._session = session
        self._gossip_seeds = list(gossip_seeds)
        self._max_discover_attempts = max_discover_attempts
        self._gossip_timeout = gossip_timeout
        self._prefer_random_node = prefer_random_node
        self._retry_delay = retry_delay
        self._old_gossip: list[GossipMember] = []

    async def discover(self, failed_endpoint: EndPoint | None = None) -> EndPoint:
        """Return the TCP endpoint of the best available node.

        Raises:
            ClusterDiscoveryError: If no attempt yields a usable node
        """
        for attempt in range(1, self._max_discover_attempts + 1):
            endpoint = await self._discover_endpoint(failed_endpoint)
            if endpoint is not None:
                _LOGGER.info(
                    "Discovering attempt %d/%d successful: best candidate is %s",
                    attempt,
                    self._max_discover_attempts,
                    endpoint,
                )
                return endpoint

            _LOGGER.info(
                "Discovering attempt %d/%d failed: no candidate found",
                attempt,
                self._max_discover_attempts,
            )
            await asyncio.sleep(self._retry_delay)

        raise ClusterDiscoveryError(
            f"Failed to discover candidate in {self._max_discover_attempts} attempts"
        )

    async def _discover_endpoint(self, failed_endpoint: EndPoint | None) -> EndPoint | None:
        candidates = (
            self._candidates_from_old_gossip(failed_endpoint)
            if self._old_gossip
            else self._candidates_from_seeds()
        )

        for candidate in candidates:
            members = await self._fetch_gossip(candidate)
            if not members:
                continue
            best = self._determine_best_node(members, failed_endpoint)
            if best is not None:
                self._old_gossip = members
                return best
        return None

    def _candidates_from_seeds(self) -> list[EndPoint]:
        seeds = list(self._gossip_seeds)
        random.shuffle(seeds)
        return seeds

    def _candidates_from_old_gossip(self, failed_endpoint: EndPoint | None) -> list[EndPoint]:
        members = [
            m for m in self._old_gossip
            if failed_endpoint is None or m.tcp_endpoint != failed_endpoint
        ]
        # Managers know the cluster but never serve clients; ask them last.
        nodes = [m.http_endpoint for m in members if m.state != "Manager"]
        managers = [m.http_endpoint for m in members if m.state == "Manager"]
        random.shuffle(nodes)
        random.shuffle(managers)
        return nodes + managers

    async def _fetch_gossip(self, endpoint: EndPoint) -> list[GossipMember] | None:
        url = f"http://{endpoint.host}:{endpoint.port}/gossip?format=json"
        try:
            async with self._session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self._gossip_timeout),
            ) as resp:
                if resp.status != 200:
                    _LOGGER.debug("Gossip from %s returned %d", endpoint, resp.status)
                    return None
                data = await resp.json()
        except TimeoutError:
            _LOGGER.debug("Gossip from %s timed out", endpoint)
            return None
        except (aiohttp.ClientError, ValueError) as err:
            _LOGGER.debug("Gossip from %s failed: %s", endpoint, err)
            return None

        if not isinstance(data, dict) or not isinstance(data.get("members"), list):
            _LOGGER.debug("Gossip from %s is not a member list", endpoint)
            return None
        return [
            GossipMember.from_dict(member)
            for member in data["members"]
            if isinstance(member, dict)
        ]

    def _determine_best_node(
        self, members: list[GossipMember], failed_endpoint: EndPoint | None
    ) -> EndPoint | None:
        nodes = [
            m for m in members
            if m.is_alive
            and m.state not in _IGNORED_STATES
            and m.tcp_endpoint != failed_endpoint
        ]
        if not nodes:
            return None

        nodes.sort(key=lambda m: _STATE_RANK.get(m.state, len(_STATE_RANK)))
        node = nodes[0]
        if self._prefer_random_node:
            node = random.choice(nodes)

        _LOGGER.info("Discovering: found best choice %s (%s)", node.tcp_endpoint, node.state)
        return node.tcp_endpoint
