"""
Host Directory

Resolves a host id to the facts the control plane needs: address, agent
identity and install status, and last heartbeat. The inventory itself is owned
by another service; this module only reads from it.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from ..utils.exceptions import HostNotFoundError, DependencyError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class AgentStatus(str, Enum):
    INSTALLED = "installed"
    NOT_INSTALLED = "not_installed"
    OFFLINE = "offline"


HOST_TYPE_BARE_METAL = "bare_metal"


@dataclass
class HostInfo:
    """Read-only view of a managed host"""
    id: int
    name: str
    ip_address: str
    host_type: str = HOST_TYPE_BARE_METAL
    agent_id: str = ""
    agent_status: AgentStatus = AgentStatus.NOT_INSTALLED
    last_heartbeat: Optional[float] = None

    @property
    def is_bare_metal(self) -> bool:
        """Bare-metal (and untyped) hosts run an agent and need a live heartbeat."""
        return self.host_type in (HOST_TYPE_BARE_METAL, "")

    def is_online(self, timeout: float, now: Optional[float] = None) -> bool:
        if self.last_heartbeat is None:
            return False
        if now is None:
            now = time.time()
        return now - self.last_heartbeat <= timeout

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["agent_status"] = AgentStatus(self.agent_status).value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostInfo":
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            ip_address=data.get("ip_address", ""),
            host_type=data.get("host_type") or "",
            agent_id=data.get("agent_id") or "",
            agent_status=AgentStatus(data.get("agent_status") or AgentStatus.NOT_INSTALLED.value),
            last_heartbeat=data.get("last_heartbeat"),
        )


class HostDirectory(ABC):
    """Capability to look up a host by id."""

    @abstractmethod
    async def get_host(self, host_id: int) -> HostInfo:
        """
        Resolve a host.

        Raises:
            HostNotFoundError: If the host is unknown
            DependencyError: If the directory itself cannot be reached
        """
        pass


class InMemoryHostDirectory(HostDirectory):
    """
    Host directory kept in process memory.

    Hosts are added with register() and kept alive with heartbeat().
    """

    def __init__(self):
        self._hosts: Dict[int, HostInfo] = {}

    def register(self, host: HostInfo) -> HostInfo:
        self._hosts[host.id] = host
        logger.info(f"Registered host {host.id} ({host.name}, {host.ip_address})")
        return host

    def heartbeat(self, host_id: int, timestamp: Optional[float] = None) -> None:
        host = self._hosts.get(host_id)
        if host is None:
            raise HostNotFoundError(host_id)
        host.last_heartbeat = timestamp if timestamp is not None else time.time()

    async def get_host(self, host_id: int) -> HostInfo:
        host = self._hosts.get(host_id)
        if host is None:
            raise HostNotFoundError(host_id)
        return host


class HTTPHostDirectory(HostDirectory):
    """
    Host directory backed by the inventory service's REST API.

    Expects ``GET {base_url}/api/hosts/{id}`` to return the host as JSON,
    optionally wrapped in a ``data`` field.
    """

    def __init__(self, base_url: str, request_timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout

    async def get_host(self, host_id: int) -> HostInfo:
        url = f"{self.base_url}/api/hosts/{host_id}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.request_timeout)
                ) as response:
                    if response.status == 404:
                        raise HostNotFoundError(host_id)
                    if response.status != 200:
                        raise DependencyError(
                            f"host directory returned HTTP {response.status} for host {host_id}"
                        )
                    payload = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Host directory unreachable at {self.base_url}: {e}")
            raise DependencyError(f"host directory unreachable: {e}")

        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]

        try:
            return HostInfo.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise DependencyError(f"invalid host record for host {host_id}: {e}")
