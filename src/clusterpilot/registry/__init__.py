"""
Durable store of clusters and nodes.
"""
from .models import (
    Cluster,
    ClusterFilter,
    ClusterStatus,
    DeploymentMode,
    Node,
    NodeRole,
    NodeStatus,
)
from .storage_sqlite import ClusterRegistry

__all__ = [
    "Cluster",
    "ClusterFilter",
    "ClusterRegistry",
    "ClusterStatus",
    "DeploymentMode",
    "Node",
    "NodeRole",
    "NodeStatus",
]
