"""
Deployment Workflow API Endpoints

Drives the guided deployment of a new cluster step by step. Workflows live
on the server, so a client can disconnect and resume by id.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from ....deploy.workflow import WorkflowManager, get_workflow_manager
from ....utils.logging import get_logger
from ..errors import envelope
from ..middleware import limiter, MUTATION_RATE_LIMIT

logger = get_logger(__name__)
router = APIRouter(prefix="/api/v1/deployments", tags=["deployments"])


def get_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    manager = get_workflow_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Deployment workflows not initialized")
    return manager


class HostSelection(BaseModel):
    host_id: int
    role: Optional[str] = None
    name: str = ""
    ip_address: str = ""


class DraftRequest(BaseModel):
    """Any subset of the draft; omitted fields are left unchanged."""
    name: Optional[str] = None
    description: Optional[str] = None
    deployment_mode: Optional[str] = None
    version: Optional[str] = None
    install_dir: Optional[str] = None
    cluster_port: Optional[int] = None
    http_port: Optional[int] = None
    worker_port: Optional[int] = None
    hosts: Optional[List[HostSelection]] = None
    plugins: Optional[List[str]] = None
    options: Optional[Dict[str, Any]] = None

    def fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@router.post("")
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_workflow(
    request: Request,
    body: Optional[DraftRequest] = None,
    manager: WorkflowManager = Depends(get_manager)
):
    workflow = manager.create(**(body.fields() if body else {}))
    return envelope(workflow.to_dict())


@router.get("")
async def list_workflows(manager: WorkflowManager = Depends(get_manager)):
    return envelope([workflow.to_dict() for workflow in manager.list()])


@router.get("/{workflow_id}")
async def get_workflow(workflow_id: str, manager: WorkflowManager = Depends(get_manager)):
    return envelope(manager.get(workflow_id).to_dict())


@router.patch("/{workflow_id}")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_draft(
    request: Request,
    workflow_id: str,
    body: DraftRequest,
    manager: WorkflowManager = Depends(get_manager)
):
    workflow = manager.update_draft(workflow_id, **body.fields())
    return envelope(workflow.to_dict())


@router.post("/{workflow_id}/next")
@limiter.limit(MUTATION_RATE_LIMIT)
async def next_step(
    request: Request,
    workflow_id: str,
    wait: bool = False,
    manager: WorkflowManager = Depends(get_manager)
):
    """
    Advance one step. Leaving ``plugins`` starts the deployment; pass
    wait=true to get the response only after it has finished.
    """
    workflow = await manager.next(workflow_id, wait=wait)
    return envelope(workflow.to_dict())


@router.post("/{workflow_id}/back")
@limiter.limit(MUTATION_RATE_LIMIT)
async def previous_step(request: Request, workflow_id: str, manager: WorkflowManager = Depends(get_manager)):
    workflow = manager.back(workflow_id)
    return envelope(workflow.to_dict())


@router.post("/{workflow_id}/precheck")
@limiter.limit(MUTATION_RATE_LIMIT)
async def run_precheck(request: Request, workflow_id: str, manager: WorkflowManager = Depends(get_manager)):
    workflow = await manager.run_precheck(workflow_id)
    return envelope(workflow.to_dict())


@router.post("/{workflow_id}/retry")
@limiter.limit(MUTATION_RATE_LIMIT)
async def retry_deploy(request: Request, workflow_id: str, manager: WorkflowManager = Depends(get_manager)):
    """Send a failed deployment back to the plugins step."""
    workflow = manager.retry(workflow_id)
    return envelope(workflow.to_dict())


@router.post("/{workflow_id}/cancel")
@limiter.limit(MUTATION_RATE_LIMIT)
async def cancel_workflow(
    request: Request,
    workflow_id: str,
    confirm: bool = False,
    manager: WorkflowManager = Depends(get_manager)
):
    """Cancel the workflow. A running deployment needs confirm=true."""
    logger.info(f"Cancel requested for workflow {workflow_id} (confirm={confirm})")
    workflow = manager.cancel(workflow_id, confirm=confirm)
    return envelope(workflow.to_dict())
