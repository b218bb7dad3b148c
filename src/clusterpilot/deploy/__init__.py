"""
Guided deployment of new clusters.
"""
from .installer import HTTPInstaller, InstallationRequest, InstallationStatus, Installer, StepInfo, StepStatus
from .workflow import (
    DeploymentWorkflow,
    DeployState,
    WorkflowManager,
    WorkflowStep,
    get_workflow_manager,
    init_workflow_manager,
)

__all__ = [
    "DeploymentWorkflow",
    "DeployState",
    "HTTPInstaller",
    "InstallationRequest",
    "InstallationStatus",
    "Installer",
    "StepInfo",
    "StepStatus",
    "WorkflowManager",
    "WorkflowStep",
    "get_workflow_manager",
    "init_workflow_manager",
]
