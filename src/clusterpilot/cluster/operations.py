"""
Cluster-wide start/stop/restart.

The orchestrator fans an operation out to every node with bounded
parallelism, records one result per node, and moves node and cluster
statuses according to the outcome. There is exactly one pass and no
automatic retry: a partial failure comes back as success=False with the
per-node detail.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from ..agents.dispatcher import AgentDispatcher, CommandType
from ..hosts.directory import HostDirectory
from ..registry.models import Cluster, ClusterStatus, Node, NodeStatus
from ..registry.storage_sqlite import ClusterRegistry
from ..utils.exceptions import ClusterBusyError, DependencyError, DispatchError, NodeNotFoundError
from ..utils.logging import logger
from .health import DEFAULT_HEARTBEAT_TIMEOUT


class OperationType(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"

    @property
    def target_node_status(self) -> NodeStatus:
        return NodeStatus.STOPPED if self == OperationType.STOP else NodeStatus.RUNNING

    @property
    def target_cluster_status(self) -> ClusterStatus:
        return ClusterStatus.STOPPED if self == OperationType.STOP else ClusterStatus.RUNNING


MESSAGE_SUCCESS = "Operation completed successfully"
MESSAGE_PARTIAL = "Operation completed with errors"
MESSAGE_QUEUED_NO_SENDER = "Operation queued (Agent sender not configured)"


@dataclass
class NodeOperationResult:
    node_id: int
    host_id: int
    host_name: str
    success: bool
    message: str


@dataclass
class OperationResult:
    cluster_id: int
    operation: OperationType
    success: bool
    message: str
    node_results: List[NodeOperationResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["operation"] = self.operation.value
        return data


class ClusterLockManager:
    """
    One writer at a time per cluster.

    A second writer waits for the lock; with a positive acquire timeout it
    gives up with ClusterBusyError once the timeout passes.
    """

    def __init__(self, acquire_timeout: float = 0.0):
        self.acquire_timeout = acquire_timeout
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, cluster_id: int) -> asyncio.Lock:
        lock = self._locks.get(cluster_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[cluster_id] = lock
        return lock

    def is_locked(self, cluster_id: int) -> bool:
        lock = self._locks.get(cluster_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, cluster_id: int):
        lock = self._lock_for(cluster_id)

        if self.acquire_timeout and self.acquire_timeout > 0:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                raise ClusterBusyError(cluster_id)
        else:
            await lock.acquire()

        try:
            yield
        finally:
            lock.release()


class OperationOrchestrator:
    """Runs start/stop/restart across a cluster's nodes."""

    def __init__(
        self,
        registry: ClusterRegistry,
        host_directory: HostDirectory,
        dispatcher: Optional[AgentDispatcher] = None,
        lock_manager: Optional[ClusterLockManager] = None,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        max_parallel_nodes: int = 8,
        node_timeout: Optional[float] = None
    ):
        self.registry = registry
        self.host_directory = host_directory
        self.dispatcher = dispatcher
        self.locks = lock_manager or ClusterLockManager()
        self.heartbeat_timeout = heartbeat_timeout
        self.max_parallel_nodes = max_parallel_nodes
        self.node_timeout = node_timeout
        self.logger = logger.getChild("operations")

    async def execute(
        self,
        cluster_id: int,
        operation: OperationType,
        timeout: Optional[float] = None
    ) -> OperationResult:
        """
        Run an operation on every node of a cluster.

        Args:
            cluster_id: Target cluster
            operation: start, stop or restart
            timeout: Seconds allowed per node (default: configured node timeout)

        Returns:
            OperationResult with one entry per node, in node order

        Raises:
            ClusterNotFoundError: If the cluster does not exist
            ClusterBusyError: If another writer holds the cluster too long
        """
        operation = OperationType(operation)

        async with self.locks.hold(cluster_id):
            cluster = self.registry.get_cluster(cluster_id, with_nodes=True)

            if operation in (OperationType.START, OperationType.RESTART):
                self.registry.update_cluster_status(cluster_id, ClusterStatus.DEPLOYING)

            self.logger.info(
                f"Executing {operation.value} on cluster {cluster_id} ({cluster.name}): "
                f"{len(cluster.nodes)} node(s)"
            )
            start_time = time.time()

            try:
                node_results = await self._fan_out(cluster, cluster.nodes, operation, timeout)
            except asyncio.CancelledError:
                self.registry.update_cluster_status(cluster_id, ClusterStatus.ERROR)
                self.logger.warning(f"Operation {operation.value} on cluster {cluster_id} cancelled, cluster status -> error")
                raise

            success = all(result.success for result in node_results)
            cluster_status = operation.target_cluster_status if success else ClusterStatus.ERROR
            self.registry.update_cluster_status(cluster_id, cluster_status)

            failed = sum(1 for result in node_results if not result.success)
            self.logger.info(
                f"Operation {operation.value} on cluster {cluster_id} finished in "
                f"{time.time() - start_time:.2f}s: {len(node_results) - failed} ok, {failed} failed, "
                f"cluster status -> {cluster_status.value}"
            )

            return OperationResult(
                cluster_id=cluster_id,
                operation=operation,
                success=success,
                message=MESSAGE_SUCCESS if success else MESSAGE_PARTIAL,
                node_results=node_results,
            )

    async def execute_node(
        self,
        cluster_id: int,
        node_id: int,
        operation: OperationType,
        timeout: Optional[float] = None
    ) -> OperationResult:
        """
        Run an operation on a single node, then recompute the cluster status
        from all node statuses.
        """
        operation = OperationType(operation)

        async with self.locks.hold(cluster_id):
            cluster = self.registry.get_cluster(cluster_id)
            node = self.registry.get_node(node_id)
            if node.cluster_id != cluster_id:
                raise NodeNotFoundError(node_id)

            try:
                result = await self._process_node(cluster, node, operation, timeout)
            except asyncio.CancelledError:
                self.registry.update_cluster_status(cluster_id, ClusterStatus.ERROR)
                raise

            nodes = self.registry.list_nodes(cluster_id)
            new_status = self._derive_cluster_status(nodes)
            if new_status is not None and new_status != cluster.status:
                self.registry.update_cluster_status(cluster_id, new_status)

            self.logger.info(
                f"Node {node_id} {operation.value} on cluster {cluster_id}: "
                f"success={result.success}, {result.message}"
            )

            return OperationResult(
                cluster_id=cluster_id,
                operation=operation,
                success=result.success,
                message=MESSAGE_SUCCESS if result.success else MESSAGE_PARTIAL,
                node_results=[result],
            )

    @staticmethod
    def _derive_cluster_status(nodes: List[Node]) -> Optional[ClusterStatus]:
        statuses = {node.status for node in nodes}
        if not statuses:
            return None
        if NodeStatus.ERROR in statuses:
            return ClusterStatus.ERROR
        if statuses == {NodeStatus.RUNNING}:
            return ClusterStatus.RUNNING
        if statuses == {NodeStatus.STOPPED}:
            return ClusterStatus.STOPPED
        return None

    async def _fan_out(
        self,
        cluster: Cluster,
        nodes: List[Node],
        operation: OperationType,
        timeout: Optional[float]
    ) -> List[NodeOperationResult]:
        if not nodes:
            return []

        semaphore = asyncio.Semaphore(min(len(nodes), self.max_parallel_nodes))

        async def bounded(node: Node) -> NodeOperationResult:
            try:
                async with semaphore:
                    return await self._process_node(cluster, node, operation, timeout)
            except asyncio.CancelledError:
                # Interrupted before an outcome was recorded
                self.registry.update_node_status(node.id, NodeStatus.ERROR)
                raise

        # gather keeps results in node order
        return list(await asyncio.gather(*(bounded(node) for node in nodes)))

    async def _process_node(
        self,
        cluster: Cluster,
        node: Node,
        operation: OperationType,
        timeout: Optional[float]
    ) -> NodeOperationResult:
        """Run the operation on one node and persist that node's status."""
        try:
            result = await self._run_node(cluster, node, operation, timeout)
        except asyncio.CancelledError:
            self.registry.update_node_status(node.id, NodeStatus.ERROR)
            raise
        except Exception as e:
            self.logger.error(f"Unexpected failure on node {node.id}: {e}", exc_info=True)
            result = NodeOperationResult(node.id, node.host_id, "", False, str(e))

        node_status = operation.target_node_status if result.success else NodeStatus.ERROR
        self.registry.update_node_status(node.id, node_status)

        if not result.success:
            self.logger.warning(f"Node {node.id} (host {node.host_id}) {operation.value} failed: {result.message}")

        return result

    async def _run_node(
        self,
        cluster: Cluster,
        node: Node,
        operation: OperationType,
        timeout: Optional[float]
    ) -> NodeOperationResult:
        try:
            host = await self.host_directory.get_host(node.host_id)
        except DependencyError as e:
            return NodeOperationResult(
                node.id, node.host_id, "", False, f"Failed to get host information: {e}"
            )

        if not host.is_bare_metal:
            return NodeOperationResult(
                node.id, host.id, host.name, True, f"Operation queued for {host.host_type} host"
            )

        if not host.is_online(self.heartbeat_timeout, time.time()):
            return NodeOperationResult(node.id, host.id, host.name, False, "Host is offline")

        if self.dispatcher is None or not host.agent_id:
            return NodeOperationResult(node.id, host.id, host.name, True, MESSAGE_QUEUED_NO_SENDER)

        params = {
            "cluster_id": str(cluster.id),
            "node_id": str(node.id),
            "role": node.role.value,
            "install_dir": node.install_dir or cluster.install_dir,
        }

        effective_timeout = timeout or self.node_timeout

        try:
            send = self.dispatcher.send(host.agent_id, CommandType(operation.value), params)
            if effective_timeout:
                reply = await asyncio.wait_for(send, timeout=effective_timeout)
            else:
                reply = await send
        except asyncio.TimeoutError:
            return NodeOperationResult(
                node.id, host.id, host.name, False,
                f"Operation timed out after {effective_timeout}s"
            )
        except DispatchError as e:
            return NodeOperationResult(node.id, host.id, host.name, False, f"Failed to send command: {e}")

        return NodeOperationResult(node.id, host.id, host.name, reply.success, reply.message)
