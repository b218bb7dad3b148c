"""
Cluster and node entities held by the registry.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class DeploymentMode(str, Enum):
    """How masters and workers are laid out across hosts."""
    HYBRID = "hybrid"
    SEPARATED = "separated"


class ClusterStatus(str, Enum):
    CREATED = "created"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class NodeRole(str, Enum):
    MASTER = "master"
    WORKER = "worker"
    MASTER_WORKER = "master/worker"

    @property
    def is_master(self) -> bool:
        return self in (NodeRole.MASTER, NodeRole.MASTER_WORKER)


class NodeStatus(str, Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


# Statuses that block deletion
BUSY_CLUSTER_STATUSES = (ClusterStatus.RUNNING, ClusterStatus.DEPLOYING)

MIN_PORT = 1
MAX_PORT = 65535


@dataclass
class Node:
    """One engine process bound to a host and a role."""
    id: int
    cluster_id: int
    host_id: int
    role: NodeRole
    install_dir: str = ""
    membership_port: int = 5801
    api_port: Optional[int] = None
    worker_port: Optional[int] = None
    status: NodeStatus = NodeStatus.PENDING
    process_pid: int = 0
    process_status: str = ""
    last_event_at: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["status"] = self.status.value
        return data


@dataclass
class Cluster:
    """A named group of nodes running the engine together."""
    id: int
    name: str
    deployment_mode: DeploymentMode
    description: str = ""
    version: str = ""
    status: ClusterStatus = ClusterStatus.CREATED
    install_dir: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0
    nodes: List[Node] = field(default_factory=list)

    def to_dict(self, include_nodes: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "deployment_mode": self.deployment_mode.value,
            "version": self.version,
            "status": self.status.value,
            "install_dir": self.install_dir,
            "config": self.config,
            "node_count": len(self.nodes),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_nodes:
            data["nodes"] = [node.to_dict() for node in self.nodes]
        return data


@dataclass
class ClusterFilter:
    """Listing criteria. page_size <= 0 disables pagination."""
    name: str = ""
    status: Optional[ClusterStatus] = None
    deployment_mode: Optional[DeploymentMode] = None
    page: int = 1
    page_size: int = 20
