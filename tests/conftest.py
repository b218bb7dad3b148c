"""
Shared pytest fixtures and configuration for clusterpilot tests.

This module provides common fixtures used across all test suites including:
- A temporary SQLite registry
- An in-memory host directory with a host factory
- Fake agent dispatcher and installer
- Cluster service and workflow manager wired to the fakes
- FastAPI test clients
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clusterpilot.agents.dispatcher import AgentDispatcher, CommandReply, CommandType
from clusterpilot.cluster.service import ClusterService
from clusterpilot.config.loader import Config, DeployConfig
from clusterpilot.deploy.installer import InstallationRequest, InstallationStatus, Installer, StepInfo, StepStatus
from clusterpilot.deploy.workflow import WorkflowManager
from clusterpilot.hosts.directory import AgentStatus, HostInfo, InMemoryHostDirectory
from clusterpilot.registry.storage_sqlite import ClusterRegistry
from clusterpilot.web.backend.errors import register_error_handlers
from clusterpilot.web.backend.middleware import limiter
from clusterpilot.web.backend.routes import clusters, deployments


# Fakes

ReplyScript = Union[CommandReply, Exception, Callable[[Dict[str, str]], CommandReply]]


class FakeDispatcher(AgentDispatcher):
    """Records every command; replies success unless told otherwise."""

    def __init__(self):
        super().__init__(timeout=5.0)
        self.calls: List[Tuple[str, CommandType, Dict[str, str]]] = []
        self.replies: Dict[Tuple[Optional[str], CommandType], ReplyScript] = {}
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def set_reply(self, command_type: CommandType, reply: ReplyScript, agent_id: Optional[str] = None):
        self.replies[(agent_id, CommandType(command_type))] = reply

    def commands(self, command_type: Optional[CommandType] = None) -> List[Tuple[str, CommandType, Dict[str, str]]]:
        if command_type is None:
            return list(self.calls)
        return [call for call in self.calls if call[1] == command_type]

    async def send(self, agent_id, command_type, params, timeout=None):
        command_type = CommandType(command_type)
        self.calls.append((agent_id, command_type, dict(params)))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        reply = self.replies.get((agent_id, command_type), self.replies.get((None, command_type)))
        if reply is None:
            return CommandReply(True, f"{command_type.value} ok")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(params)
        return reply


class FakeInstaller(Installer):
    """
    Scripted installer.

    ``scripts[host_id]`` is the sequence of statuses returned: the first by
    start_installation, the rest by successive status polls (the last repeats).
    Hosts without a script succeed immediately.
    """

    def __init__(self):
        self.scripts: Dict[int, List[InstallationStatus]] = {}
        self.requests: List[Tuple[int, InstallationRequest]] = []
        self._cursor: Dict[int, int] = {}

    def script(self, host_id: int, *statuses: str, error: str = ""):
        sequence = []
        for index, status in enumerate(statuses):
            step_status = StepStatus(status)
            sequence.append(InstallationStatus(
                host_id=host_id,
                status=step_status,
                current_step="extract",
                steps=[
                    StepInfo(step="download", name="Download", status=StepStatus.SUCCESS, progress=100),
                    StepInfo(step="extract", name="Extract", status=step_status, progress=50 * (index + 1)),
                ],
                error=error if step_status == StepStatus.FAILED else "",
            ))
        self.scripts[host_id] = sequence

    async def start_installation(self, host_id, request):
        self.requests.append((host_id, request))
        self._cursor[host_id] = 0
        sequence = self.scripts.get(host_id)
        if not sequence:
            return InstallationStatus(host_id=host_id, status=StepStatus.SUCCESS)
        return sequence[0]

    async def get_installation_status(self, host_id):
        sequence = self.scripts.get(host_id) or [InstallationStatus(host_id=host_id, status=StepStatus.SUCCESS)]
        cursor = min(self._cursor.get(host_id, 0) + 1, len(sequence) - 1)
        self._cursor[host_id] = cursor
        return sequence[cursor]


# Core fixtures


@pytest.fixture
def registry(tmp_path):
    """Registry backed by a temporary database."""
    store = ClusterRegistry(tmp_path / "registry.db")
    yield store
    store.close()


@pytest.fixture
def host_directory():
    return InMemoryHostDirectory()


@pytest.fixture
def add_host(host_directory):
    """Register a host; online hosts get a fresh heartbeat."""

    def _add_host(
        host_id: int,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        agent_status: AgentStatus = AgentStatus.INSTALLED,
        online: bool = True,
        host_type: str = "bare_metal",
        agent_id: Optional[str] = None
    ) -> HostInfo:
        host = HostInfo(
            id=host_id,
            name=name or f"host-{host_id}",
            ip_address=ip_address or f"10.0.0.{host_id}",
            host_type=host_type,
            agent_id=f"agent-{host_id}" if agent_id is None else agent_id,
            agent_status=agent_status,
            last_heartbeat=time.time() if online else None,
        )
        return host_directory.register(host)

    return _add_host


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def installer():
    return FakeInstaller()


@pytest.fixture
def config():
    """Default config with instant installer polling."""
    return Config(deploy=DeployConfig(poll_interval_seconds=0.0, install_timeout_seconds=5.0))


@pytest.fixture
def cluster_service(registry, host_directory, dispatcher, config):
    return ClusterService(registry, host_directory, dispatcher=dispatcher, config=config)


@pytest.fixture
def workflow_manager(cluster_service, installer, config):
    return WorkflowManager(
        cluster_service,
        installer,
        defaults=config.defaults,
        deploy_config=config.deploy,
    )


# API fixtures


@pytest.fixture(autouse=True)
def disable_rate_limits():
    """Rate limits are process-wide; keep them out of functional tests."""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def app(cluster_service, workflow_manager):
    """FastAPI app with the API routers wired to the test services."""
    app = FastAPI()
    app.state.limiter = limiter
    register_error_handlers(app)
    app.include_router(clusters.router)
    app.include_router(deployments.router)

    app.dependency_overrides[clusters.get_service] = lambda: cluster_service
    app.dependency_overrides[deployments.get_manager] = lambda: workflow_manager
    return app


@pytest.fixture
def api_client(app):
    """Test client for the API routers."""
    with TestClient(app) as client:
        yield client
