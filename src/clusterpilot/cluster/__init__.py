"""
Cluster Management Module

Health, prechecks and lifecycle operations for registered clusters.
"""
from .health import ClusterStatusInfo, HealthAggregator, HealthStatus
from .logs import AgentLogCollector, LogCollector, LogMode, LogQuery
from .operations import ClusterLockManager, OperationOrchestrator, OperationResult, OperationType
from .precheck import CheckStatus, PrecheckEngine, PrecheckRequest, PrecheckResult
from .service import ClusterService, get_cluster_service, init_cluster_service

__all__ = [
    "AgentLogCollector",
    "CheckStatus",
    "ClusterLockManager",
    "ClusterService",
    "ClusterStatusInfo",
    "HealthAggregator",
    "HealthStatus",
    "LogCollector",
    "LogMode",
    "LogQuery",
    "OperationOrchestrator",
    "OperationResult",
    "OperationType",
    "PrecheckEngine",
    "PrecheckRequest",
    "PrecheckResult",
    "get_cluster_service",
    "init_cluster_service",
]
