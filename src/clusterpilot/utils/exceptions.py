"""
Custom exceptions for clusterpilot.

The hierarchy mirrors how errors are reported to API callers: every concrete
error derives from exactly one of the four reporting classes
(validation, conflict, not-found, dependency).
"""


class BaseClusterPilotError(Exception):
    """Base exception for all clusterpilot errors."""
    pass


class ConfigError(BaseClusterPilotError):
    """Configuration-related errors."""
    pass


# Reporting classes


class ValidationError(BaseClusterPilotError):
    """Request rejected before any mutation."""
    pass


class ConflictError(BaseClusterPilotError):
    """Request conflicts with existing state; nothing was changed."""
    pass


class NotFoundError(BaseClusterPilotError):
    """Referenced entity does not exist."""
    pass


class DependencyError(BaseClusterPilotError):
    """A collaborator (host directory, agent, installer) cannot serve the request."""
    pass


# Registry errors


class ClusterNotFoundError(NotFoundError):

    def __init__(self, cluster_id=None):
        self.cluster_id = cluster_id
        super().__init__("cluster: cluster not found")


class ClusterNameDuplicateError(ConflictError):

    def __init__(self, name: str = ""):
        self.name = name
        super().__init__("cluster: cluster name already exists")


class ClusterNameEmptyError(ValidationError):

    def __init__(self):
        super().__init__("cluster: cluster name cannot be empty")


class ClusterHasRunningTaskError(ConflictError):

    def __init__(self, cluster_id=None):
        self.cluster_id = cluster_id
        super().__init__("cluster: cluster has running tasks and cannot be deleted")


class ClusterBusyError(ConflictError):
    """Another operation holds the cluster's writer lock."""

    def __init__(self, cluster_id=None):
        self.cluster_id = cluster_id
        super().__init__(f"cluster: cluster {cluster_id} has an operation in progress")


class NodeNotFoundError(NotFoundError):

    def __init__(self, node_id=None):
        self.node_id = node_id
        super().__init__("cluster: node not found")


class NodeAlreadyExistsError(ConflictError):

    def __init__(self, host_id=None, role=None):
        self.host_id = host_id
        self.role = role
        super().__init__("cluster: host already holds this role in the cluster")


class InvalidDeploymentModeError(ValidationError):

    def __init__(self, mode=None):
        self.mode = mode
        super().__init__(f"cluster: invalid deployment mode: {mode}")


class InvalidNodeRoleError(ValidationError):

    def __init__(self, role=None):
        self.role = role
        super().__init__(f"cluster: invalid node role: {role}")


class InvalidPortError(ValidationError):

    def __init__(self, field: str, value):
        self.field = field
        self.value = value
        super().__init__(f"cluster: {field} must be between 1 and 65535, got {value}")


# Host / agent errors


class HostNotFoundError(DependencyError):

    def __init__(self, host_id=None):
        self.host_id = host_id
        super().__init__(f"host: host {host_id} not found")


class AgentNotInstalledError(DependencyError):

    def __init__(self, host_id=None):
        self.host_id = host_id
        super().__init__("cluster: host agent is not installed")


class PrecheckFailedError(DependencyError):

    def __init__(self, summary: str = ""):
        self.summary = summary
        message = "cluster: node precheck failed"
        if summary:
            message += f": {summary}"
        super().__init__(message)


class DispatchError(DependencyError):
    """Sending a command to an agent failed at the transport level."""
    pass


class AgentUnreachableError(DispatchError):

    def __init__(self, agent_id: str, reason: str = ""):
        self.agent_id = agent_id
        self.reason = reason
        message = f"agent '{agent_id}' is unreachable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class CommandTimeoutError(DispatchError):

    def __init__(self, agent_id: str, timeout_seconds: float):
        self.agent_id = agent_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"command to agent '{agent_id}' timed out after {timeout_seconds}s"
        )


class InstallerError(DependencyError):
    """The external installer rejected or lost an installation."""
    pass


class LogCollectorUnavailableError(BaseClusterPilotError):
    """No log collector is configured; reported as 503."""

    def __init__(self):
        super().__init__("log collection is not configured")


# Deployment workflow errors


class WorkflowNotFoundError(NotFoundError):

    def __init__(self, workflow_id: str = ""):
        self.workflow_id = workflow_id
        super().__init__(f"deployment workflow '{workflow_id}' not found")


class StepGuardError(ValidationError):
    """A workflow transition guard rejected the move."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"cannot leave step '{step}': {reason}")


class InvalidTransitionError(ConflictError):

    def __init__(self, message: str):
        super().__init__(message)


class ConfirmationRequiredError(ConflictError):

    def __init__(self):
        super().__init__(
            "deployment is in progress and a cluster may already exist; "
            "cancel again with confirm=true"
        )
