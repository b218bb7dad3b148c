"""
Cluster API Endpoints

- Cluster CRUD and listing
- Node admission, update and removal
- Cluster and node start/stop/restart
- Health status, node precheck and node logs
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ....cluster.logs import LogQuery
from ....cluster.operations import OperationType
from ....cluster.service import ClusterService, get_cluster_service
from ....registry.models import ClusterFilter, ClusterStatus, DeploymentMode
from ....utils.logging import get_logger
from ..errors import envelope
from ..middleware import limiter, MUTATION_RATE_LIMIT, OPERATION_RATE_LIMIT

logger = get_logger(__name__)
router = APIRouter(prefix="/api/v1/clusters", tags=["clusters"])


def get_service() -> ClusterService:
    """Dependency to get the cluster service."""
    service = get_cluster_service()
    if service is None:
        raise HTTPException(status_code=503, detail="Cluster service not initialized")
    return service


# Request models

class CreateClusterRequest(BaseModel):
    name: str
    description: str = ""
    deployment_mode: str = DeploymentMode.HYBRID.value
    version: str = ""
    install_dir: str = ""
    config: Optional[Dict[str, Any]] = None


class UpdateClusterRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    install_dir: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class AddNodeRequest(BaseModel):
    host_id: int
    role: str
    install_dir: str = ""
    membership_port: Optional[int] = None
    api_port: Optional[int] = None
    worker_port: Optional[int] = None
    precheck: bool = Field(False, description="Run the precheck and reject the node if it fails")


class UpdateNodeRequest(BaseModel):
    install_dir: Optional[str] = None
    membership_port: Optional[int] = None
    api_port: Optional[int] = None
    worker_port: Optional[int] = None


class ProcessEventRequest(BaseModel):
    pid: int = Field(0, ge=0)
    process_status: str


class PrecheckNodeRequest(BaseModel):
    host_id: int
    role: Optional[str] = None
    install_dir: str = ""
    membership_port: Optional[int] = None
    api_port: Optional[int] = None


# Clusters

@router.post("")
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_cluster(
    request: Request,
    body: CreateClusterRequest,
    service: ClusterService = Depends(get_service)
):
    cluster = service.create_cluster(
        name=body.name,
        deployment_mode=body.deployment_mode,
        description=body.description,
        version=body.version,
        install_dir=body.install_dir,
        config=body.config,
    )
    return envelope(cluster.to_dict())


@router.get("")
async def list_clusters(
    name: str = "",
    status: Optional[ClusterStatus] = None,
    deployment_mode: Optional[DeploymentMode] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=0, le=500),
    service: ClusterService = Depends(get_service)
):
    """
    List clusters, newest first.

    ``total`` counts every match regardless of the page window;
    page_size=0 returns all matches.
    """
    clusters, total = service.list_clusters(ClusterFilter(
        name=name,
        status=status,
        deployment_mode=deployment_mode,
        page=page,
        page_size=page_size,
    ))
    return envelope({
        "clusters": [cluster.to_dict() for cluster in clusters],
        "total": total,
        "page": page,
        "page_size": page_size,
    })


@router.get("/hosts/{host_id}")
async def list_clusters_for_host(host_id: int, service: ClusterService = Depends(get_service)):
    """Clusters with at least one node on the host."""
    clusters = service.clusters_for_host(host_id)
    return envelope([cluster.to_dict() for cluster in clusters])


@router.get("/{cluster_id}")
async def get_cluster(cluster_id: int, service: ClusterService = Depends(get_service)):
    cluster = service.get_cluster(cluster_id)
    return envelope(cluster.to_dict(include_nodes=True))


@router.put("/{cluster_id}")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_cluster(
    request: Request,
    cluster_id: int,
    body: UpdateClusterRequest,
    service: ClusterService = Depends(get_service)
):
    cluster = service.update_cluster(cluster_id, **body.model_dump(exclude_none=True))
    return envelope(cluster.to_dict(include_nodes=True))


@router.delete("/{cluster_id}")
@limiter.limit(MUTATION_RATE_LIMIT)
async def delete_cluster(request: Request, cluster_id: int, service: ClusterService = Depends(get_service)):
    await service.delete_cluster(cluster_id)
    return envelope()


# Nodes

@router.post("/{cluster_id}/nodes/precheck")
@limiter.limit(MUTATION_RATE_LIMIT)
async def precheck_node(
    request: Request,
    cluster_id: int,
    body: PrecheckNodeRequest,
    service: ClusterService = Depends(get_service)
):
    """Run the admission precheck for a candidate node. Never changes the cluster."""
    result = await service.precheck_node(
        cluster_id,
        host_id=body.host_id,
        role=body.role,
        install_dir=body.install_dir,
        membership_port=body.membership_port,
        api_port=body.api_port,
    )
    return envelope(result.to_dict())


@router.post("/{cluster_id}/nodes")
@limiter.limit(MUTATION_RATE_LIMIT)
async def add_node(
    request: Request,
    cluster_id: int,
    body: AddNodeRequest,
    service: ClusterService = Depends(get_service)
):
    node = await service.add_node(
        cluster_id,
        host_id=body.host_id,
        role=body.role,
        install_dir=body.install_dir,
        membership_port=body.membership_port,
        api_port=body.api_port,
        worker_port=body.worker_port,
        precheck=body.precheck,
    )
    return envelope(node.to_dict())


@router.get("/{cluster_id}/nodes")
async def list_nodes(cluster_id: int, service: ClusterService = Depends(get_service)):
    return envelope(await service.describe_nodes(cluster_id))


@router.put("/{cluster_id}/nodes/{node_id}")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_node(
    request: Request,
    cluster_id: int,
    node_id: int,
    body: UpdateNodeRequest,
    service: ClusterService = Depends(get_service)
):
    node = await service.update_node(cluster_id, node_id, **body.model_dump(exclude_none=True))
    return envelope(node.to_dict())


@router.delete("/{cluster_id}/nodes/{node_id}")
@limiter.limit(MUTATION_RATE_LIMIT)
async def remove_node(
    request: Request,
    cluster_id: int,
    node_id: int,
    service: ClusterService = Depends(get_service)
):
    await service.remove_node(cluster_id, node_id)
    return envelope()


@router.get("/{cluster_id}/nodes/{node_id}/logs")
async def get_node_logs(
    cluster_id: int,
    node_id: int,
    lines: Optional[int] = None,
    mode: Optional[str] = None,
    filter: Optional[str] = None,
    date: Optional[str] = None,
    service: ClusterService = Depends(get_service)
):
    query = LogQuery.parse(lines=lines, mode=mode, filter=filter, date=date)
    logs = await service.get_node_logs(cluster_id, node_id, query)
    return envelope({"logs": logs})


@router.post("/{cluster_id}/nodes/{node_id}/process-event")
async def record_process_event(
    cluster_id: int,
    node_id: int,
    body: ProcessEventRequest,
    service: ClusterService = Depends(get_service)
):
    """Process state reported by the node's agent (running, stopped, crashed)."""
    logger.debug(f"Process event for node {node_id} in cluster {cluster_id}: {body.process_status} (pid {body.pid})")
    node = service.record_process_event(cluster_id, node_id, body.pid, body.process_status)
    return envelope(node.to_dict())


# Operations

@router.get("/{cluster_id}/status")
async def get_cluster_status(cluster_id: int, service: ClusterService = Depends(get_service)):
    """Health computed from host heartbeats at request time."""
    info = await service.get_status(cluster_id)
    return envelope(info.to_dict())


@router.post("/{cluster_id}/start")
@limiter.limit(OPERATION_RATE_LIMIT)
async def start_cluster(
    request: Request,
    cluster_id: int,
    timeout: Optional[float] = Query(None, gt=0),
    service: ClusterService = Depends(get_service)
):
    return envelope((await service.start(cluster_id, timeout)).to_dict())


@router.post("/{cluster_id}/stop")
@limiter.limit(OPERATION_RATE_LIMIT)
async def stop_cluster(
    request: Request,
    cluster_id: int,
    timeout: Optional[float] = Query(None, gt=0),
    service: ClusterService = Depends(get_service)
):
    return envelope((await service.stop(cluster_id, timeout)).to_dict())


@router.post("/{cluster_id}/restart")
@limiter.limit(OPERATION_RATE_LIMIT)
async def restart_cluster(
    request: Request,
    cluster_id: int,
    timeout: Optional[float] = Query(None, gt=0),
    service: ClusterService = Depends(get_service)
):
    return envelope((await service.restart(cluster_id, timeout)).to_dict())


@router.post("/{cluster_id}/nodes/{node_id}/{operation}")
@limiter.limit(OPERATION_RATE_LIMIT)
async def node_operation(
    request: Request,
    cluster_id: int,
    node_id: int,
    operation: OperationType,
    timeout: Optional[float] = Query(None, gt=0),
    service: ClusterService = Depends(get_service)
):
    """Start, stop or restart a single node."""
    result = await service.node_operation(cluster_id, node_id, operation, timeout)
    return envelope(result.to_dict())
