"""
Deployment workflow.

A server-side state machine that takes a new cluster from an empty draft to
installed hosts:

    basic -> hosts -> config -> precheck -> plugins -> deploy -> complete

Each forward move is guarded. Entering ``deploy`` starts execution; a failed
deploy can go back to ``plugins`` and run again without creating a second
cluster. Cancelling never rolls anything back.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from ..cluster.precheck import CHECK_REST, CheckStatus, PrecheckRequest, PrecheckResult
from ..cluster.service import ClusterService, parse_deployment_mode, parse_node_role
from ..config.loader import DefaultsConfig, DeployConfig
from ..registry.models import DeploymentMode, NodeRole
from ..utils.exceptions import (
    BaseClusterPilotError,
    ConfirmationRequiredError,
    DependencyError,
    InstallerError,
    InvalidTransitionError,
    NodeAlreadyExistsError,
    StepGuardError,
    WorkflowNotFoundError,
)
from ..utils.logging import get_logger
from .installer import InstallationRequest, InstallationStatus, Installer, StepStatus

logger = get_logger(__name__)


class WorkflowStep(str, Enum):
    BASIC = "basic"
    HOSTS = "hosts"
    CONFIG = "config"
    PRECHECK = "precheck"
    PLUGINS = "plugins"
    DEPLOY = "deploy"
    COMPLETE = "complete"


STEP_ORDER = list(WorkflowStep)


class DeployState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class HostCheckStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


ADVANCEABLE_CHECK_STATUSES = (HostCheckStatus.PASSED, HostCheckStatus.WARNING)


@dataclass
class SelectedHost:
    host_id: int
    role: NodeRole
    name: str = ""
    ip_address: str = ""


@dataclass
class WorkflowDraft:
    """What the user has entered so far."""
    name: str = ""
    description: str = ""
    deployment_mode: DeploymentMode = DeploymentMode.HYBRID
    version: str = ""
    install_dir: str = ""
    cluster_port: int = 5801
    http_port: int = 8080
    worker_port: int = 5802
    hosts: List[SelectedHost] = field(default_factory=list)
    plugins: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    def membership_port_for(self, role: NodeRole) -> int:
        if self.deployment_mode == DeploymentMode.SEPARATED and role == NodeRole.WORKER:
            return self.worker_port
        return self.cluster_port

    def api_port_for(self, role: NodeRole) -> Optional[int]:
        return self.http_port if role.is_master else None

    def master_addresses(self) -> List[str]:
        if self.deployment_mode == DeploymentMode.HYBRID:
            hosts = self.hosts
        else:
            hosts = [h for h in self.hosts if h.role == NodeRole.MASTER]
        return [h.ip_address for h in hosts if h.ip_address]

    def worker_addresses(self) -> List[str]:
        if self.deployment_mode != DeploymentMode.SEPARATED:
            return []
        return [h.ip_address for h in self.hosts if h.role == NodeRole.WORKER and h.ip_address]


@dataclass
class HostPrecheck:
    host_id: int
    host_name: str
    status: HostCheckStatus
    result: Optional[PrecheckResult] = None
    error: str = ""


@dataclass
class ProgressEntry:
    step: str
    status: StepStatus
    message: str = ""
    host_name: str = ""
    progress: int = 0


class DeploymentWorkflow:
    """State of one deployment session."""

    def __init__(self, draft: WorkflowDraft):
        self.id = str(uuid.uuid4())
        self.draft = draft
        self.step = WorkflowStep.BASIC
        self.deploy_state = DeployState.IDLE
        self.cluster_id: Optional[int] = None
        self.precheck_results: Dict[int, HostPrecheck] = {}
        self.progress: List[ProgressEntry] = []
        self.error = ""
        self.closed = False
        self.created_at = time.time()
        self.updated_at = self.created_at

        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def deploying(self) -> bool:
        return self.step == WorkflowStep.DEPLOY and self.deploy_state == DeployState.RUNNING

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _touch(self):
        self.updated_at = time.time()

    def _ensure_open(self):
        if self.closed:
            raise InvalidTransitionError(f"deployment workflow '{self.id}' has been cancelled")

    # Draft editing

    def update_draft(self, **fields) -> None:
        """Edit the draft; allowed before deploy starts."""
        self._ensure_open()
        if self.step in (WorkflowStep.DEPLOY, WorkflowStep.COMPLETE):
            raise InvalidTransitionError(f"draft cannot be edited in step '{self.step.value}'")

        mode = self.draft.deployment_mode
        new_mode = fields.pop("deployment_mode", None)
        if new_mode is not None:
            mode = parse_deployment_mode(new_mode)

        new_hosts = fields.pop("hosts", None)
        if new_hosts is not None:
            hosts = [self._to_selected_host(h, mode) for h in new_hosts]
        elif mode != self.draft.deployment_mode:
            # Roles depend on the mode; the selection has to be redone
            hosts = []
        else:
            hosts = self.draft.hosts

        for key in fields:
            if not hasattr(self.draft, key):
                raise ValueError(f"Unknown draft field: {key}")

        clear_prechecks = mode != self.draft.deployment_mode or new_hosts is not None

        self.draft.deployment_mode = mode
        self.draft.hosts = hosts
        for key, value in fields.items():
            if value is not None:
                setattr(self.draft, key, value)

        if clear_prechecks:
            if self.precheck_results:
                logger.debug(f"Workflow {self.id}: hosts or mode changed, precheck results cleared")
                self.precheck_results = {}
            # A new selection goes through the host and precheck guards again
            if STEP_ORDER.index(self.step) > STEP_ORDER.index(WorkflowStep.HOSTS):
                logger.info(f"Workflow {self.id}: hosts or mode changed, {self.step.value} -> hosts")
                self.step = WorkflowStep.HOSTS

        self._touch()

    @staticmethod
    def _to_selected_host(host, mode: DeploymentMode) -> SelectedHost:
        if isinstance(host, SelectedHost):
            return SelectedHost(
                host_id=host.host_id,
                role=parse_node_role(host.role, mode),
                name=host.name,
                ip_address=host.ip_address,
            )
        default_role = NodeRole.MASTER_WORKER if mode == DeploymentMode.HYBRID else NodeRole.WORKER
        return SelectedHost(
            host_id=int(host["host_id"]),
            role=parse_node_role(host.get("role") or default_role, mode),
            name=host.get("name") or "",
            ip_address=host.get("ip_address") or "",
        )

    # Transitions

    def guard_failure(self) -> Optional[str]:
        """Why the current step cannot advance, or None if it can."""
        draft = self.draft

        if self.step == WorkflowStep.BASIC:
            if not draft.name.strip():
                return "cluster name is required"

        elif self.step == WorkflowStep.HOSTS:
            return self._host_selection_failure()

        elif self.step == WorkflowStep.CONFIG:
            if not draft.version.strip():
                return "select an engine version"

        elif self.step == WorkflowStep.PRECHECK:
            return self._precheck_failure()

        elif self.step == WorkflowStep.PLUGINS:
            # Entering deploy: the selection must still be valid and prechecked
            return self._host_selection_failure() or self._precheck_failure()

        return None

    def _host_selection_failure(self) -> Optional[str]:
        hosts = self.draft.hosts
        if not hosts:
            return "select at least one host"
        if self.draft.deployment_mode == DeploymentMode.SEPARATED:
            roles = {h.role for h in hosts}
            if NodeRole.MASTER not in roles:
                return "separated mode needs at least one master host"
            if NodeRole.WORKER not in roles:
                return "separated mode needs at least one worker host"
        return None

    def _precheck_failure(self) -> Optional[str]:
        for host in self.draft.hosts:
            check = self.precheck_results.get(host.host_id)
            if check is None:
                return f"host {host.name or host.host_id} has not been prechecked"
            if check.status not in ADVANCEABLE_CHECK_STATUSES:
                return f"precheck failed on host {host.name or host.host_id}"
        return None

    def advance(self) -> WorkflowStep:
        """Move one step forward if the guard allows it."""
        self._ensure_open()

        if self.step in (WorkflowStep.DEPLOY, WorkflowStep.COMPLETE):
            raise InvalidTransitionError(f"cannot advance from step '{self.step.value}'")

        reason = self.guard_failure()
        if reason:
            raise StepGuardError(self.step.value, reason)

        previous = self.step
        self.step = STEP_ORDER[STEP_ORDER.index(self.step) + 1]
        self._touch()
        logger.info(f"Workflow {self.id}: {previous.value} -> {self.step.value}")
        return self.step

    def back(self) -> WorkflowStep:
        self._ensure_open()

        if self.step in (WorkflowStep.BASIC, WorkflowStep.DEPLOY, WorkflowStep.COMPLETE):
            raise InvalidTransitionError(f"cannot go back from step '{self.step.value}'")

        previous = self.step
        self.step = STEP_ORDER[STEP_ORDER.index(self.step) - 1]
        self._touch()
        logger.info(f"Workflow {self.id}: back {previous.value} -> {self.step.value}")
        return self.step

    def retry_from_plugins(self) -> WorkflowStep:
        """Return a failed deploy to the plugins step; the created cluster is kept."""
        self._ensure_open()

        if self.step != WorkflowStep.DEPLOY or self.deploy_state != DeployState.FAILED:
            raise InvalidTransitionError("only a failed deployment can be retried")

        self.step = WorkflowStep.PLUGINS
        self.deploy_state = DeployState.IDLE
        self.error = ""
        self._touch()
        logger.info(f"Workflow {self.id}: deploy failed, back to plugins (cluster {self.cluster_id})")
        return self.step

    def cancel(self, confirm: bool = False) -> None:
        """
        Close the workflow. While deploying, confirm=True is required because a
        cluster may already exist; in-flight installer actions are not undone.
        """
        if self.closed:
            return

        if self.deploying:
            if not confirm:
                raise ConfirmationRequiredError()
            self._cancel_requested = True
            self.deploy_state = DeployState.CANCELLED
        elif self.step == WorkflowStep.DEPLOY and self.deploy_state != DeployState.SUCCESS:
            self.deploy_state = DeployState.CANCELLED

        self.closed = True
        self._touch()
        logger.info(f"Workflow {self.id} cancelled in step {self.step.value} (cluster {self.cluster_id})")

    # Progress

    def record(self, step: str, status: StepStatus, message: str = "", host_name: str = "", progress: int = 0):
        """Add a progress entry, or update the one for the same step and host."""
        for entry in self.progress:
            if entry.step == step and entry.host_name == host_name:
                entry.status = status
                entry.message = message
                entry.progress = progress
                break
        else:
            self.progress.append(ProgressEntry(step, status, message, host_name, progress))
        self._touch()

    def to_dict(self) -> Dict[str, Any]:
        draft = asdict(self.draft)
        draft["deployment_mode"] = self.draft.deployment_mode.value
        for host in draft["hosts"]:
            host["role"] = NodeRole(host["role"]).value

        return {
            "id": self.id,
            "step": self.step.value,
            "deploy_state": self.deploy_state.value,
            "cluster_id": self.cluster_id,
            "closed": self.closed,
            "draft": draft,
            "precheck_results": [
                {
                    "host_id": check.host_id,
                    "host_name": check.host_name,
                    "status": check.status.value,
                    "result": check.result.to_dict() if check.result else None,
                    "error": check.error,
                }
                for check in self.precheck_results.values()
            ],
            "progress": [
                {**asdict(entry), "status": entry.status.value} for entry in self.progress
            ],
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class _DeployCancelled(Exception):
    pass


def host_check_status(result: PrecheckResult) -> HostCheckStatus:
    """
    Map a precheck onto the workflow's pass/warn/fail scale.

    The engine REST endpoint does not exist before installation, so a REST
    failure alone is only a warning here.
    """
    if result.success:
        return HostCheckStatus.PASSED
    failed = {item.name for item in result.items if item.status == CheckStatus.FAILED}
    if failed == {CHECK_REST}:
        return HostCheckStatus.WARNING
    return HostCheckStatus.FAILED


class WorkflowManager:
    """Holds deployment workflows and runs their prechecks and deploys."""

    def __init__(
        self,
        cluster_service: ClusterService,
        installer: Optional[Installer] = None,
        defaults: Optional[DefaultsConfig] = None,
        deploy_config: Optional[DeployConfig] = None
    ):
        self.cluster_service = cluster_service
        self.installer = installer
        self.defaults = defaults or DefaultsConfig()
        self.deploy_config = deploy_config or DeployConfig()
        self._workflows: Dict[str, DeploymentWorkflow] = {}

    def create(self, **fields) -> DeploymentWorkflow:
        draft = WorkflowDraft(
            version=self.defaults.version,
            install_dir=self.defaults.install_dir,
            cluster_port=self.defaults.membership_port,
            http_port=self.defaults.api_port,
            worker_port=self.defaults.worker_port,
        )
        workflow = DeploymentWorkflow(draft)
        if fields:
            workflow.update_draft(**fields)

        self._workflows[workflow.id] = workflow
        logger.info(f"Created deployment workflow {workflow.id}")
        return workflow

    def get(self, workflow_id: str) -> DeploymentWorkflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list(self) -> List[DeploymentWorkflow]:
        return sorted(self._workflows.values(), key=lambda w: w.created_at, reverse=True)

    def update_draft(self, workflow_id: str, **fields) -> DeploymentWorkflow:
        workflow = self.get(workflow_id)
        workflow.update_draft(**fields)
        return workflow

    async def next(self, workflow_id: str, wait: bool = False) -> DeploymentWorkflow:
        """
        Advance one step. Leaving ``plugins`` starts the deploy in the
        background; wait=True returns only after it has finished.
        """
        workflow = self.get(workflow_id)
        workflow.advance()

        if workflow.step == WorkflowStep.DEPLOY:
            workflow.deploy_state = DeployState.RUNNING
            workflow._task = asyncio.create_task(self._run_deploy(workflow))
            if wait:
                await workflow._task

        return workflow

    def back(self, workflow_id: str) -> DeploymentWorkflow:
        workflow = self.get(workflow_id)
        workflow.back()
        return workflow

    def retry(self, workflow_id: str) -> DeploymentWorkflow:
        workflow = self.get(workflow_id)
        workflow.retry_from_plugins()
        return workflow

    def cancel(self, workflow_id: str, confirm: bool = False) -> DeploymentWorkflow:
        workflow = self.get(workflow_id)
        workflow.cancel(confirm)
        return workflow

    async def wait(self, workflow_id: str) -> DeploymentWorkflow:
        """Wait for a running deploy to finish."""
        workflow = self.get(workflow_id)
        if workflow._task is not None:
            await workflow._task
        return workflow

    async def run_precheck(self, workflow_id: str) -> DeploymentWorkflow:
        """Precheck every selected host; results replace earlier ones."""
        workflow = self.get(workflow_id)
        workflow._ensure_open()
        if workflow.step != WorkflowStep.PRECHECK:
            raise InvalidTransitionError("prechecks run in the precheck step")

        # Unresolvable hosts fail their agent_status check below
        await self._resolve_hosts(workflow, strict=False)

        draft = workflow.draft
        engine = self.cluster_service.precheck_engine

        async def check(host: SelectedHost) -> HostPrecheck:
            result = await engine.run(None, PrecheckRequest(
                host_id=host.host_id,
                role=host.role,
                install_dir=draft.install_dir,
                membership_port=draft.membership_port_for(host.role),
                api_port=draft.api_port_for(host.role),
            ))
            return HostPrecheck(
                host_id=host.host_id,
                host_name=host.name,
                status=host_check_status(result),
                result=result,
            )

        checks = await asyncio.gather(*(check(host) for host in draft.hosts))
        workflow.precheck_results = {c.host_id: c for c in checks}
        workflow._touch()

        passed = sum(1 for c in checks if c.status in ADVANCEABLE_CHECK_STATUSES)
        logger.info(f"Workflow {workflow.id}: precheck {passed}/{len(checks)} host(s) ready")
        return workflow

    async def _resolve_hosts(self, workflow: DeploymentWorkflow, strict: bool = True) -> None:
        """Fill in names and addresses the client left out from the host directory."""
        for host in workflow.draft.hosts:
            if host.name and host.ip_address:
                continue
            try:
                info = await self.cluster_service.host_directory.get_host(host.host_id)
            except DependencyError:
                if strict:
                    raise
                continue
            host.name = host.name or info.name
            host.ip_address = host.ip_address or info.ip_address

    # Deploy execution

    def _check_cancel(self, workflow: DeploymentWorkflow):
        if workflow.cancel_requested:
            raise _DeployCancelled()

    async def _run_deploy(self, workflow: DeploymentWorkflow) -> None:
        draft = workflow.draft
        workflow.error = ""

        try:
            if self.installer is None:
                raise InstallerError("Installer not configured")

            if workflow.cluster_id is None:
                workflow.record("create_cluster", StepStatus.RUNNING, "Creating cluster")
                cluster = self.cluster_service.create_cluster(
                    name=draft.name,
                    deployment_mode=draft.deployment_mode,
                    description=draft.description,
                    version=draft.version,
                    install_dir=draft.install_dir,
                    config=draft.options,
                )
                workflow.cluster_id = cluster.id
                workflow.record("create_cluster", StepStatus.SUCCESS, f"Cluster {cluster.name} created")

            for host in draft.hosts:
                self._check_cancel(workflow)
                workflow.record("add_node", StepStatus.RUNNING, "Adding node", host.name)
                try:
                    await self.cluster_service.add_node(
                        workflow.cluster_id,
                        host_id=host.host_id,
                        role=host.role,
                        install_dir=draft.install_dir,
                        membership_port=draft.membership_port_for(host.role),
                        api_port=draft.api_port_for(host.role),
                    )
                except NodeAlreadyExistsError:
                    pass
                workflow.record("add_node", StepStatus.SUCCESS, "Node added", host.name)

            await self._resolve_hosts(workflow)
            master_addresses = draft.master_addresses()
            worker_addresses = draft.worker_addresses()

            for host in draft.hosts:
                self._check_cancel(workflow)
                await self._install_host(workflow, host, master_addresses, worker_addresses)

            self._check_cancel(workflow)
            workflow.deploy_state = DeployState.SUCCESS
            workflow.step = WorkflowStep.COMPLETE
            workflow._touch()
            logger.info(f"Workflow {workflow.id}: deployment of cluster {workflow.cluster_id} complete")

        except _DeployCancelled:
            workflow.deploy_state = DeployState.CANCELLED
            logger.info(f"Workflow {workflow.id}: deployment stopped after cancel")

        except BaseClusterPilotError as e:
            self._fail(workflow, str(e))

        except Exception as e:
            logger.error(f"Workflow {workflow.id}: unexpected deploy error: {e}", exc_info=True)
            self._fail(workflow, str(e))

    def _fail(self, workflow: DeploymentWorkflow, message: str):
        if workflow.cancel_requested:
            workflow.deploy_state = DeployState.CANCELLED
        else:
            workflow.deploy_state = DeployState.FAILED
        workflow.error = message
        workflow._touch()
        logger.warning(f"Workflow {workflow.id}: deployment failed: {message}")

    async def _install_host(
        self,
        workflow: DeploymentWorkflow,
        host: SelectedHost,
        master_addresses: List[str],
        worker_addresses: List[str]
    ) -> None:
        draft = workflow.draft
        label = host.name or str(host.host_id)

        workflow.record("install", StepStatus.RUNNING, "Starting installation", label)

        request = InstallationRequest(
            cluster_id=workflow.cluster_id,
            version=draft.version,
            install_dir=draft.install_dir,
            deployment_mode=draft.deployment_mode.value,
            node_role=host.role.value,
            master_addresses=master_addresses,
            worker_addresses=worker_addresses,
            cluster_port=draft.cluster_port,
            http_port=draft.http_port,
            worker_port=draft.worker_port if draft.deployment_mode == DeploymentMode.SEPARATED else None,
            plugins=list(draft.plugins),
            options=dict(draft.options),
        )

        status = await self.installer.start_installation(host.host_id, request)
        self._record_steps(workflow, host, status)

        timeout = self.deploy_config.install_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        while status.status == StepStatus.RUNNING:
            self._check_cancel(workflow)
            if deadline is not None and time.monotonic() >= deadline:
                workflow.record("install", StepStatus.FAILED, "Installation timed out", label)
                raise InstallerError(f"Installation on host {label} timed out after {timeout}s")

            await asyncio.sleep(self.deploy_config.poll_interval_seconds)
            status = await self.installer.get_installation_status(host.host_id)
            self._record_steps(workflow, host, status)

        if status.status == StepStatus.FAILED:
            workflow.record("install", StepStatus.FAILED, status.error or "Installation failed", label)
            raise InstallerError(f"Installation failed on host {label}: {status.error}")

        workflow.record("install", StepStatus.SUCCESS, "Installation complete", label, 100)
        logger.info(f"Workflow {workflow.id}: host {label} installed")

    def _record_steps(self, workflow: DeploymentWorkflow, host: SelectedHost, status: InstallationStatus):
        label = host.name or str(host.host_id)
        if status.steps:
            for step in status.steps:
                workflow.record(
                    f"{step.step}_{host.host_id}",
                    step.status,
                    step.message or step.name or step.step,
                    label,
                    step.progress,
                )
        elif status.status == StepStatus.RUNNING:
            workflow.record(
                "install",
                StepStatus.RUNNING,
                status.message or status.current_step or "Installing",
                label,
                status.progress,
            )


# Global workflow manager
_workflow_manager: Optional[WorkflowManager] = None


def get_workflow_manager() -> Optional[WorkflowManager]:
    return _workflow_manager


def init_workflow_manager(
    cluster_service: ClusterService,
    installer: Optional[Installer] = None,
    defaults: Optional[DefaultsConfig] = None,
    deploy_config: Optional[DeployConfig] = None
) -> WorkflowManager:
    global _workflow_manager
    _workflow_manager = WorkflowManager(cluster_service, installer, defaults, deploy_config)
    return _workflow_manager


def set_workflow_manager(manager: Optional[WorkflowManager]) -> None:
    """Set the global workflow manager instance (for testing)."""
    global _workflow_manager
    _workflow_manager = manager
