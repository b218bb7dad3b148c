"""
Installer boundary.

The installer unpacks and configures the engine on a host. The control plane
starts an installation and then polls its status; it never looks inside the
packaging steps.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from ..utils.exceptions import InstallerError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepInfo:
    """One granular installer step (download, extract, configure_cluster, ...)"""
    step: str
    name: str = ""
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    message: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepInfo":
        return cls(
            step=data.get("step", ""),
            name=data.get("name", ""),
            status=StepStatus(data.get("status") or StepStatus.PENDING.value),
            progress=int(data.get("progress") or 0),
            message=data.get("message") or "",
            error=data.get("error") or "",
        )


@dataclass
class InstallationStatus:
    host_id: int
    status: StepStatus
    id: str = ""
    current_step: str = ""
    steps: List[StepInfo] = field(default_factory=list)
    progress: int = 0
    message: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallationStatus":
        return cls(
            host_id=int(data.get("host_id") or 0),
            status=StepStatus(data.get("status") or StepStatus.PENDING.value),
            id=str(data.get("id") or ""),
            current_step=data.get("current_step") or "",
            steps=[StepInfo.from_dict(step) for step in data.get("steps") or []],
            progress=int(data.get("progress") or 0),
            message=data.get("message") or "",
            error=data.get("error") or "",
        )


@dataclass
class InstallationRequest:
    """Everything one host needs to install and join the cluster."""
    cluster_id: int
    version: str
    install_dir: str
    deployment_mode: str
    node_role: str
    master_addresses: List[str] = field(default_factory=list)
    worker_addresses: List[str] = field(default_factory=list)
    cluster_port: int = 5801
    http_port: int = 8080
    worker_port: Optional[int] = None
    plugins: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Installer(ABC):
    """Starts and tracks engine installations on hosts."""

    @abstractmethod
    async def start_installation(self, host_id: int, request: InstallationRequest) -> InstallationStatus:
        """
        Start installing on a host.

        Raises:
            InstallerError: If the installer rejects the request or is unreachable
        """
        pass

    @abstractmethod
    async def get_installation_status(self, host_id: int) -> InstallationStatus:
        pass


class HTTPInstaller(Installer):
    """
    Installer reached over its REST API.

    - ``POST {base_url}/api/v1/hosts/{id}/install``
    - ``GET  {base_url}/api/v1/hosts/{id}/install/status``
    """

    def __init__(self, base_url: str, request_timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method,
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout)
                ) as response:
                    if response.status != 200:
                        error = await response.text()
                        raise InstallerError(f"installer returned HTTP {response.status}: {error}")
                    data = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Installer request {method} {url} failed: {e}")
            raise InstallerError(f"installer unreachable: {e}")

        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return data

    async def start_installation(self, host_id: int, request: InstallationRequest) -> InstallationStatus:
        url = f"{self.base_url}/api/v1/hosts/{host_id}/install"
        logger.info(f"Starting installation on host {host_id} (version {request.version}, role {request.node_role})")
        data = await self._request("POST", url, request.to_dict())
        data.setdefault("host_id", host_id)
        return InstallationStatus.from_dict(data)

    async def get_installation_status(self, host_id: int) -> InstallationStatus:
        url = f"{self.base_url}/api/v1/hosts/{host_id}/install/status"
        data = await self._request("GET", url)
        data.setdefault("host_id", host_id)
        return InstallationStatus.from_dict(data)
