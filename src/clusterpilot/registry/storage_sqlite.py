"""
SQLite-backed registry of clusters and their nodes.

- WAL mode for concurrent readers alongside a single writer
- Thread-local connections
- Every check-then-write runs inside one BEGIN IMMEDIATE transaction,
  backed by UNIQUE constraints on cluster names and (cluster, host, role)
"""
import sqlite3
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..utils.logging import logger
from ..utils.exceptions import (
    ClusterHasRunningTaskError,
    ClusterNameDuplicateError,
    ClusterNameEmptyError,
    ClusterNotFoundError,
    NodeAlreadyExistsError,
    NodeNotFoundError,
)
from .models import (
    BUSY_CLUSTER_STATUSES,
    Cluster,
    ClusterFilter,
    ClusterStatus,
    DeploymentMode,
    Node,
    NodeRole,
    NodeStatus,
)


# Process events reported by agents, mapped onto node status
_PROCESS_STATUS_TO_NODE_STATUS = {
    "running": NodeStatus.RUNNING,
    "stopped": NodeStatus.STOPPED,
    "crashed": NodeStatus.ERROR,
}

_UPDATABLE_NODE_FIELDS = ("install_dir", "membership_port", "api_port", "worker_port")


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so the name filter matches them literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ClusterRegistry:
    """
    Thread-safe store for Cluster and Node rows.

    Reads are served from whatever snapshot the connection sees; writers are
    serialized by SQLite's reserved lock taken at BEGIN IMMEDIATE.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the registry.

        Args:
            storage_path: Path to SQLite database file
                (defaults to ~/.clusterpilot/registry.db)
        """
        if storage_path is None:
            storage_path = Path.home() / ".clusterpilot" / "registry.db"

        self.storage_path = Path(storage_path)
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self.logger = logger.getChild("registry")

        self._init_schema()

        self.logger.info(f"Cluster registry initialized: {self.storage_path}")

    # Connection handling

    def _connection(self) -> sqlite3.Connection:
        """Thread-local connection in autocommit mode; transactions are explicit."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(
                str(self.storage_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=10.0,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _read(self):
        yield self._connection()

    @contextmanager
    def _transaction(self):
        """Write transaction holding the reserved lock from the first statement."""
        conn = self._connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _init_schema(self):
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS clusters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    deployment_mode TEXT NOT NULL,
                    version TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'created',
                    install_dir TEXT NOT NULL DEFAULT '',
                    config TEXT,  -- JSON object
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_clusters_status ON clusters(status)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS cluster_nodes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cluster_id INTEGER NOT NULL REFERENCES clusters(id) ON DELETE CASCADE,
                    host_id INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    install_dir TEXT NOT NULL DEFAULT '',
                    membership_port INTEGER NOT NULL,
                    api_port INTEGER,
                    worker_port INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    process_pid INTEGER NOT NULL DEFAULT 0,
                    process_status TEXT NOT NULL DEFAULT '',
                    last_event_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE (cluster_id, host_id, role)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_cluster ON cluster_nodes(cluster_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_host ON cluster_nodes(host_id)")

    # Clusters

    def create_cluster(
        self,
        name: str,
        deployment_mode: DeploymentMode,
        description: str = "",
        version: str = "",
        install_dir: str = "",
        config: Optional[Dict[str, Any]] = None
    ) -> Cluster:
        """
        Insert a new cluster in status ``created``.

        Raises:
            ClusterNameEmptyError: If the name is empty or blank
            ClusterNameDuplicateError: If another cluster already uses the name
        """
        name = (name or "").strip()
        if not name:
            raise ClusterNameEmptyError()

        now = datetime.now().timestamp()

        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT COUNT(*) FROM clusters WHERE name = ?", (name,)
                ).fetchone()[0]
                if existing:
                    raise ClusterNameDuplicateError(name)

                cursor = conn.execute("""
                    INSERT INTO clusters (
                        name, description, deployment_mode, version, status,
                        install_dir, config, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    name,
                    description or "",
                    DeploymentMode(deployment_mode).value,
                    version or "",
                    ClusterStatus.CREATED.value,
                    install_dir or "",
                    json.dumps(config or {}),
                    now,
                    now
                ))
                cluster_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            raise ClusterNameDuplicateError(name)

        self.logger.info(f"Created cluster {cluster_id}: {name} (mode: {DeploymentMode(deployment_mode).value})")
        return self.get_cluster(cluster_id)

    def get_cluster(self, cluster_id: int, with_nodes: bool = False) -> Cluster:
        """
        Get a cluster by ID.

        Raises:
            ClusterNotFoundError: If no such cluster exists
        """
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM clusters WHERE id = ?", (cluster_id,)
            ).fetchone()
            if not row:
                raise ClusterNotFoundError(cluster_id)

            cluster = self._row_to_cluster(row)
            if with_nodes:
                cluster.nodes = self._select_nodes(conn, cluster_id)
            return cluster

    def list_clusters(self, cluster_filter: Optional[ClusterFilter] = None) -> Tuple[List[Cluster], int]:
        """
        List clusters matching the filter, newest first.

        Returns:
            (clusters in the requested page, total number of matches)
        """
        cluster_filter = cluster_filter or ClusterFilter()

        clauses = []
        params: List[Any] = []

        if cluster_filter.name:
            clauses.append("name LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(cluster_filter.name)}%")
        if cluster_filter.status:
            clauses.append("status = ?")
            params.append(ClusterStatus(cluster_filter.status).value)
        if cluster_filter.deployment_mode:
            clauses.append("deployment_mode = ?")
            params.append(DeploymentMode(cluster_filter.deployment_mode).value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._read() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM clusters {where}", params
            ).fetchone()[0]

            query = f"SELECT * FROM clusters {where} ORDER BY created_at DESC, id DESC"
            page_params = list(params)
            if cluster_filter.page_size and cluster_filter.page_size > 0:
                page = max(cluster_filter.page, 1)
                query += " LIMIT ? OFFSET ?"
                page_params.extend([cluster_filter.page_size, (page - 1) * cluster_filter.page_size])

            rows = conn.execute(query, page_params).fetchall()

            clusters = []
            for row in rows:
                cluster = self._row_to_cluster(row)
                cluster.nodes = self._select_nodes(conn, cluster.id)
                clusters.append(cluster)

        return clusters, total

    def update_cluster(
        self,
        cluster_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        version: Optional[str] = None,
        install_dir: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> Cluster:
        """
        Update mutable cluster fields. Deployment mode is never updated.

        Raises:
            ClusterNotFoundError, ClusterNameEmptyError, ClusterNameDuplicateError
        """
        updates = []
        params: List[Any] = []

        if name is not None:
            name = name.strip()
            if not name:
                raise ClusterNameEmptyError()

        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT name FROM clusters WHERE id = ?", (cluster_id,)
                ).fetchone()
                if not row:
                    raise ClusterNotFoundError(cluster_id)

                if name is not None and name != row["name"]:
                    taken = conn.execute(
                        "SELECT COUNT(*) FROM clusters WHERE name = ? AND id != ?",
                        (name, cluster_id)
                    ).fetchone()[0]
                    if taken:
                        raise ClusterNameDuplicateError(name)
                    updates.append("name = ?")
                    params.append(name)

                if description is not None:
                    updates.append("description = ?")
                    params.append(description)
                if version is not None:
                    updates.append("version = ?")
                    params.append(version)
                if install_dir is not None:
                    updates.append("install_dir = ?")
                    params.append(install_dir)
                if config is not None:
                    updates.append("config = ?")
                    params.append(json.dumps(config))

                if updates:
                    updates.append("updated_at = ?")
                    params.append(datetime.now().timestamp())
                    params.append(cluster_id)
                    conn.execute(
                        f"UPDATE clusters SET {', '.join(updates)} WHERE id = ?", params
                    )
        except sqlite3.IntegrityError:
            raise ClusterNameDuplicateError(name or "")

        self.logger.debug(f"Updated cluster {cluster_id}")
        return self.get_cluster(cluster_id, with_nodes=True)

    def delete_cluster(self, cluster_id: int) -> None:
        """
        Delete a cluster and all of its nodes in one transaction.

        Raises:
            ClusterNotFoundError: If no such cluster exists
            ClusterHasRunningTaskError: If the cluster is running or deploying
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status FROM clusters WHERE id = ?", (cluster_id,)
            ).fetchone()
            if not row:
                raise ClusterNotFoundError(cluster_id)

            if ClusterStatus(row["status"]) in BUSY_CLUSTER_STATUSES:
                raise ClusterHasRunningTaskError(cluster_id)

            removed = conn.execute(
                "DELETE FROM cluster_nodes WHERE cluster_id = ?", (cluster_id,)
            ).rowcount
            conn.execute("DELETE FROM clusters WHERE id = ?", (cluster_id,))

        self.logger.info(f"Deleted cluster {cluster_id} with {removed} node(s)")

    def update_cluster_status(self, cluster_id: int, status: ClusterStatus) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE clusters SET status = ?, updated_at = ? WHERE id = ?",
                (ClusterStatus(status).value, datetime.now().timestamp(), cluster_id)
            )
            if cursor.rowcount == 0:
                raise ClusterNotFoundError(cluster_id)

        self.logger.debug(f"Cluster {cluster_id} status -> {ClusterStatus(status).value}")

    def clusters_for_host(self, host_id: int) -> List[Cluster]:
        """Clusters that have at least one node on the given host."""
        with self._read() as conn:
            rows = conn.execute("""
                SELECT DISTINCT clusters.* FROM clusters
                JOIN cluster_nodes ON cluster_nodes.cluster_id = clusters.id
                WHERE cluster_nodes.host_id = ?
                ORDER BY clusters.id
            """, (host_id,)).fetchall()
            clusters = [self._row_to_cluster(row) for row in rows]
            for cluster in clusters:
                cluster.nodes = self._select_nodes(conn, cluster.id)
            return clusters

    # Nodes

    def add_node(
        self,
        cluster_id: int,
        host_id: int,
        role: NodeRole,
        membership_port: int,
        install_dir: str = "",
        api_port: Optional[int] = None,
        worker_port: Optional[int] = None
    ) -> Node:
        """
        Insert a node in status ``pending``.

        Raises:
            ClusterNotFoundError: If the cluster does not exist
            NodeAlreadyExistsError: If the host already holds this role in the cluster
        """
        role = NodeRole(role)
        now = datetime.now().timestamp()

        try:
            with self._transaction() as conn:
                exists = conn.execute(
                    "SELECT COUNT(*) FROM clusters WHERE id = ?", (cluster_id,)
                ).fetchone()[0]
                if not exists:
                    raise ClusterNotFoundError(cluster_id)

                duplicate = conn.execute("""
                    SELECT COUNT(*) FROM cluster_nodes
                    WHERE cluster_id = ? AND host_id = ? AND role = ?
                """, (cluster_id, host_id, role.value)).fetchone()[0]
                if duplicate:
                    raise NodeAlreadyExistsError(host_id, role.value)

                cursor = conn.execute("""
                    INSERT INTO cluster_nodes (
                        cluster_id, host_id, role, install_dir,
                        membership_port, api_port, worker_port,
                        status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    cluster_id,
                    host_id,
                    role.value,
                    install_dir or "",
                    membership_port,
                    api_port,
                    worker_port,
                    NodeStatus.PENDING.value,
                    now,
                    now
                ))
                node_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            raise NodeAlreadyExistsError(host_id, role.value)

        self.logger.info(
            f"Added node {node_id} to cluster {cluster_id}: host={host_id}, role={role.value}, "
            f"membership_port={membership_port}"
        )
        return self.get_node(node_id)

    def get_node(self, node_id: int) -> Node:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM cluster_nodes WHERE id = ?", (node_id,)
            ).fetchone()
            if not row:
                raise NodeNotFoundError(node_id)
            return self._row_to_node(row)

    def list_nodes(self, cluster_id: int) -> List[Node]:
        with self._read() as conn:
            return self._select_nodes(conn, cluster_id)

    def update_node(self, node_id: int, **fields) -> Node:
        """
        Update node configuration (install_dir and ports).

        Passing None for a port clears it; omitted fields are left alone.
        """
        updates = []
        params: List[Any] = []
        for key, value in fields.items():
            if key not in _UPDATABLE_NODE_FIELDS:
                raise ValueError(f"Field cannot be updated: {key}")
            updates.append(f"{key} = ?")
            params.append(value)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM cluster_nodes WHERE id = ?", (node_id,)
            ).fetchone()
            if not row:
                raise NodeNotFoundError(node_id)

            if updates:
                updates.append("updated_at = ?")
                params.append(datetime.now().timestamp())
                params.append(node_id)
                conn.execute(
                    f"UPDATE cluster_nodes SET {', '.join(updates)} WHERE id = ?", params
                )

        self.logger.debug(f"Updated node {node_id}: {sorted(fields)}")
        return self.get_node(node_id)

    def remove_node(self, node_id: int) -> None:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM cluster_nodes WHERE id = ?", (node_id,))
            if cursor.rowcount == 0:
                raise NodeNotFoundError(node_id)

        self.logger.info(f"Removed node {node_id}")

    def update_node_status(self, node_id: int, status: NodeStatus) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE cluster_nodes SET status = ?, updated_at = ? WHERE id = ?",
                (NodeStatus(status).value, datetime.now().timestamp(), node_id)
            )
            if cursor.rowcount == 0:
                raise NodeNotFoundError(node_id)

    def update_node_process(self, node_id: int, pid: int, process_status: str) -> Node:
        """
        Record a process event reported by an agent.

        ``running``/``stopped``/``crashed`` map to node status running/stopped/error;
        anything else counts as stopped.
        """
        node_status = _PROCESS_STATUS_TO_NODE_STATUS.get(process_status, NodeStatus.STOPPED)
        now = datetime.now().timestamp()

        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE cluster_nodes
                SET process_pid = ?, process_status = ?, status = ?,
                    last_event_at = ?, updated_at = ?
                WHERE id = ?
            """, (pid, process_status, node_status.value, now, now, node_id))
            if cursor.rowcount == 0:
                raise NodeNotFoundError(node_id)

        return self.get_node(node_id)

    # Row conversion

    def _select_nodes(self, conn: sqlite3.Connection, cluster_id: int) -> List[Node]:
        rows = conn.execute(
            "SELECT * FROM cluster_nodes WHERE cluster_id = ? ORDER BY id",
            (cluster_id,)
        ).fetchall()
        return [self._row_to_node(row) for row in rows]

    def _row_to_cluster(self, row: sqlite3.Row) -> Cluster:
        return Cluster(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            deployment_mode=DeploymentMode(row["deployment_mode"]),
            version=row["version"],
            status=ClusterStatus(row["status"]),
            install_dir=row["install_dir"],
            config=json.loads(row["config"]) if row["config"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_node(self, row: sqlite3.Row) -> Node:
        return Node(
            id=row["id"],
            cluster_id=row["cluster_id"],
            host_id=row["host_id"],
            role=NodeRole(row["role"]),
            install_dir=row["install_dir"],
            membership_port=row["membership_port"],
            api_port=row["api_port"],
            worker_port=row["worker_port"],
            status=NodeStatus(row["status"]),
            process_pid=row["process_pid"],
            process_status=row["process_status"],
            last_event_at=row["last_event_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self):
        """Close this thread's database connection."""
        if hasattr(self._local, "conn"):
            self._local.conn.close()
            delattr(self._local, "conn")
