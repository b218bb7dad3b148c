"""
Cluster Service

Entry point for every cluster intent coming from the API or the deployment
workflow. Validates requests, consults the host directory, and delegates to
the registry, precheck engine, health aggregator and operation orchestrator.
"""
from typing import Any, Dict, List, Optional, Tuple

from ..agents.dispatcher import AgentDispatcher
from ..config.loader import Config
from ..hosts.directory import AgentStatus, HostDirectory
from ..registry.models import (
    MAX_PORT,
    MIN_PORT,
    Cluster,
    ClusterFilter,
    DeploymentMode,
    Node,
    NodeRole,
)
from ..registry.storage_sqlite import ClusterRegistry
from ..utils.exceptions import (
    AgentNotInstalledError,
    DependencyError,
    InvalidDeploymentModeError,
    InvalidNodeRoleError,
    InvalidPortError,
    LogCollectorUnavailableError,
    NodeNotFoundError,
    PrecheckFailedError,
)
from ..utils.logging import get_logger
from .health import ClusterStatusInfo, HealthAggregator
from .logs import LogCollector, LogQuery
from .operations import ClusterLockManager, OperationOrchestrator, OperationResult, OperationType
from .precheck import PrecheckEngine, PrecheckRequest, PrecheckResult

logger = get_logger(__name__)


def parse_deployment_mode(mode) -> DeploymentMode:
    try:
        return DeploymentMode(mode)
    except ValueError:
        raise InvalidDeploymentModeError(mode)


def parse_node_role(role, deployment_mode: DeploymentMode) -> NodeRole:
    """master and worker are valid in any mode; master/worker only in hybrid mode."""
    try:
        node_role = NodeRole(role)
    except ValueError:
        raise InvalidNodeRoleError(role)

    if node_role == NodeRole.MASTER_WORKER and deployment_mode != DeploymentMode.HYBRID:
        raise InvalidNodeRoleError(role)
    return node_role


def validate_port(field: str, value: Optional[int]) -> None:
    if value is None:
        return
    if not MIN_PORT <= value <= MAX_PORT:
        raise InvalidPortError(field, value)


def normalize_ports(
    role: NodeRole,
    deployment_mode: DeploymentMode,
    api_port: Optional[int],
    worker_port: Optional[int]
) -> Tuple[Optional[int], Optional[int]]:
    """Drop ports that have no meaning for the role (after range validation)."""
    validate_port("api_port", api_port)
    validate_port("worker_port", worker_port)

    if not role.is_master:
        api_port = None
    if not (role.is_master and deployment_mode == DeploymentMode.HYBRID):
        worker_port = None
    return api_port, worker_port


class ClusterService:
    """Facade over the cluster control loop."""

    def __init__(
        self,
        registry: ClusterRegistry,
        host_directory: HostDirectory,
        dispatcher: Optional[AgentDispatcher] = None,
        config: Optional[Config] = None,
        lock_manager: Optional[ClusterLockManager] = None,
        log_collector: Optional[LogCollector] = None
    ):
        self.config = config or Config()
        self.registry = registry
        self.host_directory = host_directory
        self.dispatcher = dispatcher
        self.log_collector = log_collector
        self.locks = lock_manager or ClusterLockManager(self.config.locks.acquire_timeout_seconds)

        heartbeat_timeout = self.config.health.heartbeat_timeout_seconds

        self.health = HealthAggregator(host_directory, heartbeat_timeout)
        self.precheck_engine = PrecheckEngine(
            host_directory,
            dispatcher,
            heartbeat_timeout=heartbeat_timeout,
            membership_rest_path=self.config.health.membership_rest_path,
            api_rest_path=self.config.health.api_rest_path,
        )
        self.orchestrator = OperationOrchestrator(
            registry,
            host_directory,
            dispatcher,
            lock_manager=self.locks,
            heartbeat_timeout=heartbeat_timeout,
            max_parallel_nodes=self.config.execution.max_parallel_nodes,
            node_timeout=self.config.execution.node_timeout_seconds,
        )

    # Clusters

    def create_cluster(
        self,
        name: str,
        deployment_mode,
        description: str = "",
        version: str = "",
        install_dir: str = "",
        config: Optional[Dict[str, Any]] = None
    ) -> Cluster:
        mode = parse_deployment_mode(deployment_mode)
        return self.registry.create_cluster(
            name=name,
            deployment_mode=mode,
            description=description,
            version=version,
            install_dir=install_dir,
            config=config,
        )

    def get_cluster(self, cluster_id: int) -> Cluster:
        return self.registry.get_cluster(cluster_id, with_nodes=True)

    def list_clusters(self, cluster_filter: Optional[ClusterFilter] = None) -> Tuple[List[Cluster], int]:
        return self.registry.list_clusters(cluster_filter)

    def clusters_for_host(self, host_id: int) -> List[Cluster]:
        return self.registry.clusters_for_host(host_id)

    def update_cluster(self, cluster_id: int, **fields) -> Cluster:
        cluster = self.registry.update_cluster(cluster_id, **fields)
        logger.info(f"Cluster {cluster_id} updated: {sorted(k for k, v in fields.items() if v is not None)}")
        return cluster

    async def delete_cluster(self, cluster_id: int) -> None:
        async with self.locks.hold(cluster_id):
            self.registry.delete_cluster(cluster_id)

    # Nodes

    async def add_node(
        self,
        cluster_id: int,
        host_id: int,
        role,
        install_dir: str = "",
        membership_port: Optional[int] = None,
        api_port: Optional[int] = None,
        worker_port: Optional[int] = None,
        precheck: bool = False
    ) -> Node:
        """
        Admit a host into a cluster.

        Raises:
            ClusterNotFoundError: Unknown cluster
            InvalidNodeRoleError / InvalidPortError: Bad request
            HostNotFoundError: Host cannot be resolved
            AgentNotInstalledError: Bare-metal host without an installed agent
            PrecheckFailedError: precheck=True and the precheck failed
            NodeAlreadyExistsError: Host already holds the role in this cluster
        """
        cluster = self.registry.get_cluster(cluster_id)
        node_role = parse_node_role(role, cluster.deployment_mode)

        if membership_port is None:
            membership_port = self.config.defaults.membership_port
        validate_port("membership_port", membership_port)
        api_port, worker_port = normalize_ports(node_role, cluster.deployment_mode, api_port, worker_port)

        host = await self.host_directory.get_host(host_id)
        if host.is_bare_metal and host.agent_status != AgentStatus.INSTALLED:
            raise AgentNotInstalledError(host_id)

        if precheck:
            result = await self.precheck_engine.run(cluster, PrecheckRequest(
                host_id=host_id,
                role=node_role,
                install_dir=install_dir,
                membership_port=membership_port,
                api_port=api_port,
            ))
            if not result.success:
                raise PrecheckFailedError(result.message)

        async with self.locks.hold(cluster_id):
            return self.registry.add_node(
                cluster_id=cluster_id,
                host_id=host_id,
                role=node_role,
                install_dir=install_dir,
                membership_port=membership_port,
                api_port=api_port,
                worker_port=worker_port,
            )

    def get_nodes(self, cluster_id: int) -> List[Node]:
        self.registry.get_cluster(cluster_id)
        return self.registry.list_nodes(cluster_id)

    async def describe_nodes(self, cluster_id: int) -> List[Dict[str, Any]]:
        """Nodes with the name and address of their host; lookup failures leave them blank."""
        described = []
        for node in self.get_nodes(cluster_id):
            data = node.to_dict()
            data["host_name"] = ""
            data["host_ip"] = ""
            try:
                host = await self.host_directory.get_host(node.host_id)
            except DependencyError as e:
                logger.debug(f"Host {node.host_id} of node {node.id} not resolved: {e}")
            else:
                data["host_name"] = host.name
                data["host_ip"] = host.ip_address
            described.append(data)
        return described

    def _get_cluster_node(self, cluster_id: int, node_id: int) -> Tuple[Cluster, Node]:
        cluster = self.registry.get_cluster(cluster_id)
        node = self.registry.get_node(node_id)
        if node.cluster_id != cluster_id:
            raise NodeNotFoundError(node_id)
        return cluster, node

    async def update_node(
        self,
        cluster_id: int,
        node_id: int,
        install_dir: Optional[str] = None,
        membership_port: Optional[int] = None,
        api_port: Optional[int] = None,
        worker_port: Optional[int] = None
    ) -> Node:
        """Update a node's install dir and ports; omitted values stay as they are."""
        cluster, node = self._get_cluster_node(cluster_id, node_id)

        fields: Dict[str, Any] = {}
        if install_dir is not None:
            fields["install_dir"] = install_dir
        if membership_port is not None:
            validate_port("membership_port", membership_port)
            fields["membership_port"] = membership_port
        if api_port is not None or worker_port is not None:
            api, worker = normalize_ports(node.role, cluster.deployment_mode, api_port, worker_port)
            if api_port is not None:
                fields["api_port"] = api
            if worker_port is not None:
                fields["worker_port"] = worker

        async with self.locks.hold(cluster_id):
            return self.registry.update_node(node_id, **fields)

    async def remove_node(self, cluster_id: int, node_id: int) -> None:
        self._get_cluster_node(cluster_id, node_id)
        async with self.locks.hold(cluster_id):
            self.registry.remove_node(node_id)

    def record_process_event(self, cluster_id: int, node_id: int, pid: int, process_status: str) -> Node:
        """Apply a process event reported by a node's agent."""
        self._get_cluster_node(cluster_id, node_id)
        node = self.registry.update_node_process(node_id, pid, process_status)
        logger.info(f"Node {node_id} process event: {process_status} (pid {pid}) -> {node.status.value}")
        return node

    # Health and prechecks

    async def get_status(self, cluster_id: int) -> ClusterStatusInfo:
        cluster = self.registry.get_cluster(cluster_id, with_nodes=True)
        return await self.health.cluster_status(cluster, cluster.nodes)

    async def precheck_node(
        self,
        cluster_id: int,
        host_id: int,
        role=None,
        install_dir: str = "",
        membership_port: Optional[int] = None,
        api_port: Optional[int] = None
    ) -> PrecheckResult:
        cluster = self.registry.get_cluster(cluster_id)
        if role is None:
            role = NodeRole.MASTER_WORKER if cluster.deployment_mode == DeploymentMode.HYBRID else NodeRole.WORKER
        node_role = parse_node_role(role, cluster.deployment_mode)

        if membership_port is None:
            membership_port = self.config.defaults.membership_port
        validate_port("membership_port", membership_port)
        validate_port("api_port", api_port)

        return await self.precheck_engine.run(cluster, PrecheckRequest(
            host_id=host_id,
            role=node_role,
            install_dir=install_dir,
            membership_port=membership_port,
            api_port=api_port if node_role.is_master else None,
        ))

    # Lifecycle operations

    async def start(self, cluster_id: int, timeout: Optional[float] = None) -> OperationResult:
        return await self.orchestrator.execute(cluster_id, OperationType.START, timeout)

    async def stop(self, cluster_id: int, timeout: Optional[float] = None) -> OperationResult:
        return await self.orchestrator.execute(cluster_id, OperationType.STOP, timeout)

    async def restart(self, cluster_id: int, timeout: Optional[float] = None) -> OperationResult:
        return await self.orchestrator.execute(cluster_id, OperationType.RESTART, timeout)

    async def node_operation(
        self,
        cluster_id: int,
        node_id: int,
        operation: OperationType,
        timeout: Optional[float] = None
    ) -> OperationResult:
        return await self.orchestrator.execute_node(cluster_id, node_id, operation, timeout)

    # Logs

    async def get_node_logs(self, cluster_id: int, node_id: int, query: LogQuery) -> str:
        if self.log_collector is None:
            raise LogCollectorUnavailableError()

        cluster, node = self._get_cluster_node(cluster_id, node_id)
        host = await self.host_directory.get_host(node.host_id)
        return await self.log_collector.collect(cluster, node, host, query)


# Global service instance
_cluster_service: Optional[ClusterService] = None


def get_cluster_service() -> Optional[ClusterService]:
    """Get global cluster service instance"""
    return _cluster_service


def init_cluster_service(
    registry: ClusterRegistry,
    host_directory: HostDirectory,
    dispatcher: Optional[AgentDispatcher] = None,
    config: Optional[Config] = None,
    log_collector: Optional[LogCollector] = None
) -> ClusterService:
    """Initialize global cluster service"""
    global _cluster_service
    _cluster_service = ClusterService(
        registry,
        host_directory,
        dispatcher=dispatcher,
        config=config,
        log_collector=log_collector,
    )
    return _cluster_service


def set_cluster_service(service: Optional[ClusterService]) -> None:
    """Set the global cluster service instance (for testing)."""
    global _cluster_service
    _cluster_service = service
