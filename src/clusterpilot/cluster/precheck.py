"""
Node admission precheck.

Runs an ordered battery of readiness checks against a candidate host:

1. agent_status     - host resolvable, agent installed, heartbeat fresh
2. port_check       - membership port probe
3. directory_check  - install directory probe
4. rest_check       - engine REST endpoint, membership port first, then API port

A failed agent_status check ends the run. Probes are skipped when no
dispatcher is configured. Prechecks never touch the registry.
"""
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from ..agents.dispatcher import AgentDispatcher, CommandType, probe_params
from ..hosts.directory import AgentStatus, HostDirectory, HostInfo
from ..registry.models import Cluster, NodeRole
from ..utils.exceptions import DependencyError, DispatchError
from ..utils.logging import get_logger
from .health import DEFAULT_HEARTBEAT_TIMEOUT

logger = get_logger(__name__)


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


CHECK_AGENT_STATUS = "agent_status"
CHECK_PORT = "port_check"
CHECK_DIRECTORY = "directory_check"
CHECK_REST = "rest_check"


@dataclass
class PrecheckItem:
    name: str
    status: CheckStatus
    message: str = ""


@dataclass
class PrecheckResult:
    success: bool
    message: str = ""
    items: List[PrecheckItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for item in data["items"]:
            item["status"] = CheckStatus(item["status"]).value
        return data

    def failed_items(self) -> List[PrecheckItem]:
        return [item for item in self.items if item.status == CheckStatus.FAILED]


@dataclass
class PrecheckRequest:
    """Candidate node to validate."""
    host_id: int
    role: NodeRole = NodeRole.MASTER_WORKER
    install_dir: str = ""
    membership_port: int = 5801
    api_port: Optional[int] = None


class PrecheckEngine:
    """Runs prechecks through the host directory and agent dispatcher."""

    def __init__(
        self,
        host_directory: HostDirectory,
        dispatcher: Optional[AgentDispatcher] = None,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        membership_rest_path: str = "/hazelcast/rest/cluster",
        api_rest_path: str = "/overview"
    ):
        self.host_directory = host_directory
        self.dispatcher = dispatcher
        self.heartbeat_timeout = heartbeat_timeout
        self.membership_rest_path = membership_rest_path
        self.api_rest_path = api_rest_path

    async def run(self, cluster: Optional[Cluster], request: PrecheckRequest) -> PrecheckResult:
        """
        Run all checks for a candidate node.

        Args:
            cluster: Target cluster, or None for a cluster that does not exist yet
            request: Candidate host, role, install dir and ports

        Returns:
            PrecheckResult; success iff no item failed
        """
        agent_item, host = await self._check_agent_status(request.host_id)
        if agent_item.status == CheckStatus.FAILED:
            logger.info(f"Precheck for host {request.host_id} stopped at agent_status: {agent_item.message}")
            return self._summarize([agent_item])

        items = [agent_item]

        if self.dispatcher is None:
            reason = "Agent dispatcher not configured"
            items.extend(
                PrecheckItem(name, CheckStatus.SKIPPED, reason)
                for name in (CHECK_PORT, CHECK_DIRECTORY, CHECK_REST)
            )
            return self._summarize(items)

        install_dir = request.install_dir or (cluster.install_dir if cluster else "")

        items.append(await self._check_port(host, request.membership_port))
        items.append(await self._check_directory(host, install_dir))
        items.append(await self._check_rest(host, request.membership_port, request.api_port))

        result = self._summarize(items)
        logger.info(f"Precheck for host {request.host_id}: {result.message}")
        return result

    async def _check_agent_status(self, host_id: int):
        try:
            host = await self.host_directory.get_host(host_id)
        except DependencyError as e:
            return PrecheckItem(CHECK_AGENT_STATUS, CheckStatus.FAILED, f"Failed to get host information: {e}"), None

        if host.agent_status != AgentStatus.INSTALLED:
            return PrecheckItem(
                CHECK_AGENT_STATUS,
                CheckStatus.FAILED,
                f"Agent is not installed on host {host.name} (status: {AgentStatus(host.agent_status).value})"
            ), host

        if not host.is_online(self.heartbeat_timeout, time.time()):
            return PrecheckItem(
                CHECK_AGENT_STATUS,
                CheckStatus.FAILED,
                f"Host {host.name} is offline"
            ), host

        return PrecheckItem(CHECK_AGENT_STATUS, CheckStatus.PASSED, "Agent is installed and online"), host

    async def _probe(self, host: HostInfo, command_type: CommandType, **params):
        """Send one probe; returns (passed, message)."""
        try:
            reply = await self.dispatcher.send(host.agent_id, command_type, probe_params(command_type, **params))
        except DispatchError as e:
            return False, f"Failed to send command: {e}"
        return reply.success, reply.message

    async def _check_port(self, host: HostInfo, port: int) -> PrecheckItem:
        passed, message = await self._probe(host, CommandType.CHECK_PORT, port=port)
        if passed:
            return PrecheckItem(CHECK_PORT, CheckStatus.PASSED, message or f"Port {port} is available")
        return PrecheckItem(CHECK_PORT, CheckStatus.FAILED, message or f"Port {port} check failed")

    async def _check_directory(self, host: HostInfo, path: str) -> PrecheckItem:
        if not path:
            return PrecheckItem(CHECK_DIRECTORY, CheckStatus.SKIPPED, "No install directory specified")

        passed, message = await self._probe(host, CommandType.CHECK_DIRECTORY, path=path)
        if passed:
            return PrecheckItem(CHECK_DIRECTORY, CheckStatus.PASSED, message or f"Directory {path} is writable")
        return PrecheckItem(CHECK_DIRECTORY, CheckStatus.FAILED, message or f"Directory {path} check failed")

    async def _check_rest(self, host: HostInfo, membership_port: int, api_port: Optional[int]) -> PrecheckItem:
        membership_url = f"http://{host.ip_address}:{membership_port}{self.membership_rest_path}"
        passed, message = await self._probe(host, CommandType.CHECK_HTTP, url=membership_url)
        if passed:
            return PrecheckItem(CHECK_REST, CheckStatus.PASSED, message or f"REST API reachable at {membership_url}")

        failures = [f"{membership_url}: {message}"]

        if api_port:
            api_url = f"http://{host.ip_address}:{api_port}{self.api_rest_path}"
            passed, message = await self._probe(host, CommandType.CHECK_HTTP, url=api_url)
            if passed:
                return PrecheckItem(CHECK_REST, CheckStatus.PASSED, message or f"REST API reachable at {api_url}")
            failures.append(f"{api_url}: {message}")

        return PrecheckItem(CHECK_REST, CheckStatus.FAILED, "REST API unreachable (" + "; ".join(failures) + ")")

    def _summarize(self, items: List[PrecheckItem]) -> PrecheckResult:
        failed = [item.name for item in items if item.status == CheckStatus.FAILED]
        if failed:
            return PrecheckResult(False, f"Precheck failed: {', '.join(failed)}", items)
        return PrecheckResult(True, "All prechecks passed", items)
