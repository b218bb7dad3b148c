"""
Cluster health derived from host heartbeats.

Health is computed on every call and never stored.
"""
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from ..hosts.directory import HostDirectory, HostInfo
from ..registry.models import Cluster, Node
from ..utils.exceptions import DependencyError
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT = 30.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class NodeStatusInfo:
    node_id: int
    host_id: int
    host_name: str
    host_ip: str
    role: str
    status: str
    is_online: bool
    process_pid: int = 0


@dataclass
class ClusterStatusInfo:
    cluster_id: int
    cluster_name: str
    status: str
    health_status: HealthStatus
    total_nodes: int
    online_nodes: int
    offline_nodes: int
    nodes: List[NodeStatusInfo] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["health_status"] = self.health_status.value
        return data


def is_host_online(host: Optional[HostInfo], now: float, timeout: float = DEFAULT_HEARTBEAT_TIMEOUT) -> bool:
    """A host is online iff its last heartbeat is no older than the timeout."""
    if host is None:
        return False
    return host.is_online(timeout, now)


def aggregate_health(total: int, offline: int) -> HealthStatus:
    if total == 0:
        return HealthStatus.UNKNOWN
    if offline > 0:
        return HealthStatus.UNHEALTHY
    return HealthStatus.HEALTHY


class HealthAggregator:
    """Builds ClusterStatusInfo by resolving every node's host."""

    def __init__(self, host_directory: HostDirectory, heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT):
        self.host_directory = host_directory
        self.heartbeat_timeout = heartbeat_timeout

    async def cluster_status(
        self,
        cluster: Cluster,
        nodes: List[Node],
        now: Optional[float] = None
    ) -> ClusterStatusInfo:
        if now is None:
            now = time.time()

        node_infos = []
        online = 0

        for node in nodes:
            try:
                host = await self.host_directory.get_host(node.host_id)
            except DependencyError as e:
                # Unresolvable hosts count as offline
                logger.debug(f"Host {node.host_id} for node {node.id} unresolved: {e}")
                host = None

            node_online = is_host_online(host, now, self.heartbeat_timeout)
            if node_online:
                online += 1

            node_infos.append(NodeStatusInfo(
                node_id=node.id,
                host_id=node.host_id,
                host_name=host.name if host else "",
                host_ip=host.ip_address if host else "",
                role=node.role.value,
                status=node.status.value,
                is_online=node_online,
                process_pid=node.process_pid,
            ))

        total = len(nodes)
        offline = total - online

        return ClusterStatusInfo(
            cluster_id=cluster.id,
            cluster_name=cluster.name,
            status=cluster.status.value,
            health_status=aggregate_health(total, offline),
            total_nodes=total,
            online_nodes=online,
            offline_nodes=offline,
            nodes=node_infos,
        )
