"""
Unit tests for the deployment workflow state machine and its execution.

Tests cover:
- Step guards and back navigation
- Draft editing rules, including edits after the precheck step
- Precheck pass/warning/fail mapping
- Deploy success, installer failure and timeout, retry without a second cluster
- Cancellation
"""
import asyncio

import pytest

from clusterpilot.agents.dispatcher import CommandReply, CommandType
from clusterpilot.cluster.precheck import (
    CHECK_AGENT_STATUS,
    CHECK_PORT,
    CHECK_REST,
    CheckStatus,
    PrecheckItem,
    PrecheckResult,
)
from clusterpilot.config.loader import DeployConfig
from clusterpilot.deploy.installer import StepStatus
from clusterpilot.deploy.workflow import (
    DeployState,
    DeploymentWorkflow,
    HostCheckStatus,
    WorkflowDraft,
    WorkflowManager,
    WorkflowStep,
    host_check_status,
)
from clusterpilot.registry.models import ClusterStatus, DeploymentMode, NodeRole
from clusterpilot.utils.exceptions import (
    ConfirmationRequiredError,
    InvalidNodeRoleError,
    InvalidTransitionError,
    StepGuardError,
    WorkflowNotFoundError,
)


@pytest.fixture
def hosts(add_host):
    add_host(1, name="node-a", ip_address="10.0.0.11")
    add_host(2, name="node-b", ip_address="10.0.0.12")


async def advance_to_plugins(manager: WorkflowManager, workflow_id: str):
    await manager.next(workflow_id)  # -> hosts
    await manager.next(workflow_id)  # -> config
    await manager.next(workflow_id)  # -> precheck
    await manager.run_precheck(workflow_id)
    return await manager.next(workflow_id)  # -> plugins


class TestGuards:

    @pytest.mark.asyncio
    async def test_name_required(self, workflow_manager):
        workflow = workflow_manager.create()

        with pytest.raises(StepGuardError) as exc_info:
            await workflow_manager.next(workflow.id)

        assert "name" in str(exc_info.value)
        assert workflow.step == WorkflowStep.BASIC

    @pytest.mark.asyncio
    async def test_hosts_required(self, workflow_manager):
        workflow = workflow_manager.create(name="demo")
        await workflow_manager.next(workflow.id)

        with pytest.raises(StepGuardError):
            await workflow_manager.next(workflow.id)

    @pytest.mark.asyncio
    async def test_separated_needs_master_and_worker(self, workflow_manager, hosts):
        workflow = workflow_manager.create(
            name="split", deployment_mode="separated", hosts=[{"host_id": 1, "role": "worker"}]
        )
        await workflow_manager.next(workflow.id)

        with pytest.raises(StepGuardError) as exc_info:
            await workflow_manager.next(workflow.id)
        assert "master" in str(exc_info.value)

        workflow_manager.update_draft(workflow.id, hosts=[
            {"host_id": 1, "role": "master"},
            {"host_id": 2, "role": "worker"},
        ])
        await workflow_manager.next(workflow.id)
        assert workflow.step == WorkflowStep.CONFIG

    @pytest.mark.asyncio
    async def test_version_required(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}], version="")
        await workflow_manager.next(workflow.id)
        await workflow_manager.next(workflow.id)

        with pytest.raises(StepGuardError):
            await workflow_manager.next(workflow.id)

    @pytest.mark.asyncio
    async def test_precheck_required_before_plugins(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        for _ in range(3):
            await workflow_manager.next(workflow.id)

        with pytest.raises(StepGuardError) as exc_info:
            await workflow_manager.next(workflow.id)
        assert "prechecked" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_back_navigation(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await workflow_manager.next(workflow.id)
        await workflow_manager.next(workflow.id)

        workflow_manager.back(workflow.id)
        assert workflow.step == WorkflowStep.HOSTS

        workflow_manager.back(workflow.id)
        with pytest.raises(InvalidTransitionError):
            workflow_manager.back(workflow.id)

    def test_unknown_workflow(self, workflow_manager):
        with pytest.raises(WorkflowNotFoundError):
            workflow_manager.get("missing")


class TestDraft:

    def test_defaults_from_config(self, workflow_manager):
        workflow = workflow_manager.create()

        assert workflow.draft.version == "2.3.12"
        assert workflow.draft.cluster_port == 5801
        assert workflow.draft.http_port == 8080

    def test_default_role_follows_mode(self, workflow_manager):
        hybrid = workflow_manager.create(hosts=[{"host_id": 1}])
        separated = workflow_manager.create(deployment_mode="separated", hosts=[{"host_id": 1}])

        assert hybrid.draft.hosts[0].role == NodeRole.MASTER_WORKER
        assert separated.draft.hosts[0].role == NodeRole.WORKER

    def test_invalid_role_for_mode(self, workflow_manager):
        with pytest.raises(InvalidNodeRoleError):
            workflow_manager.create(deployment_mode="separated", hosts=[{"host_id": 1, "role": "master/worker"}])

    def test_mode_change_clears_hosts(self, workflow_manager):
        workflow = workflow_manager.create(hosts=[{"host_id": 1}])

        workflow_manager.update_draft(workflow.id, deployment_mode="separated")

        assert workflow.draft.deployment_mode == DeploymentMode.SEPARATED
        assert workflow.draft.hosts == []

    def test_unknown_field(self, workflow_manager):
        workflow = workflow_manager.create()

        with pytest.raises(ValueError):
            workflow_manager.update_draft(workflow.id, colour="blue")

    def test_port_selection(self):
        draft = WorkflowDraft(deployment_mode=DeploymentMode.SEPARATED, cluster_port=5801, worker_port=5802)

        assert draft.membership_port_for(NodeRole.MASTER) == 5801
        assert draft.membership_port_for(NodeRole.WORKER) == 5802
        assert draft.api_port_for(NodeRole.MASTER) == 8080
        assert draft.api_port_for(NodeRole.WORKER) is None

    def test_addresses(self):
        draft = WorkflowDraft(deployment_mode=DeploymentMode.HYBRID)
        draft.hosts = [
            DeploymentWorkflow._to_selected_host({"host_id": 1, "ip_address": "10.0.0.1"}, DeploymentMode.HYBRID),
            DeploymentWorkflow._to_selected_host({"host_id": 2, "ip_address": "10.0.0.2"}, DeploymentMode.HYBRID),
        ]
        assert draft.master_addresses() == ["10.0.0.1", "10.0.0.2"]
        assert draft.worker_addresses() == []

        draft.deployment_mode = DeploymentMode.SEPARATED
        draft.hosts[0].role = NodeRole.MASTER
        draft.hosts[1].role = NodeRole.WORKER
        assert draft.master_addresses() == ["10.0.0.1"]
        assert draft.worker_addresses() == ["10.0.0.2"]


class TestPrecheckMapping:

    def _result(self, *failed):
        items = [
            PrecheckItem(name, CheckStatus.FAILED if name in failed else CheckStatus.PASSED)
            for name in (CHECK_AGENT_STATUS, CHECK_PORT, CHECK_REST)
        ]
        return PrecheckResult(not failed, "", items)

    def test_passed(self):
        assert host_check_status(self._result()) == HostCheckStatus.PASSED

    def test_rest_only_failure_is_warning(self):
        assert host_check_status(self._result(CHECK_REST)) == HostCheckStatus.WARNING

    def test_other_failure(self):
        assert host_check_status(self._result(CHECK_PORT, CHECK_REST)) == HostCheckStatus.FAILED

    @pytest.mark.asyncio
    async def test_warning_allows_advance(self, workflow_manager, dispatcher, hosts):
        dispatcher.set_reply(CommandType.CHECK_HTTP, CommandReply(False, "connection refused"))
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])

        await advance_to_plugins(workflow_manager, workflow.id)

        assert workflow.precheck_results[1].status == HostCheckStatus.WARNING
        assert workflow.step == WorkflowStep.PLUGINS

    @pytest.mark.asyncio
    async def test_failed_host_blocks_advance(self, workflow_manager, dispatcher, hosts):
        dispatcher.set_reply(CommandType.CHECK_PORT, CommandReply(False, "in use"), agent_id="agent-2")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])

        with pytest.raises(StepGuardError) as exc_info:
            await advance_to_plugins(workflow_manager, workflow.id)

        assert "node-b" in str(exc_info.value)
        assert workflow.precheck_results[1].status == HostCheckStatus.PASSED
        assert workflow.precheck_results[2].status == HostCheckStatus.FAILED

    @pytest.mark.asyncio
    async def test_precheck_fills_host_details(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 2}])
        for _ in range(3):
            await workflow_manager.next(workflow.id)

        await workflow_manager.run_precheck(workflow.id)

        assert workflow.draft.hosts[0].name == "node-b"
        assert workflow.draft.hosts[0].ip_address == "10.0.0.12"
        assert workflow.precheck_results[2].host_name == "node-b"

    @pytest.mark.asyncio
    async def test_unknown_host_fails_precheck(self, workflow_manager):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 9}])
        for _ in range(3):
            await workflow_manager.next(workflow.id)

        await workflow_manager.run_precheck(workflow.id)

        assert workflow.precheck_results[9].status == HostCheckStatus.FAILED

    @pytest.mark.asyncio
    async def test_precheck_outside_step(self, workflow_manager):
        workflow = workflow_manager.create(name="demo")

        with pytest.raises(InvalidTransitionError):
            await workflow_manager.run_precheck(workflow.id)

    @pytest.mark.asyncio
    async def test_host_change_clears_results(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        for _ in range(3):
            await workflow_manager.next(workflow.id)
        await workflow_manager.run_precheck(workflow.id)

        workflow_manager.update_draft(workflow.id, hosts=[{"host_id": 2}])

        assert workflow.precheck_results == {}


class TestEditsAfterPrecheck:

    @pytest.mark.asyncio
    async def test_host_change_at_plugins_returns_to_hosts(self, workflow_manager, dispatcher, installer, hosts, add_host):
        add_host(3, name="node-c")
        dispatcher.set_reply(CommandType.CHECK_PORT, CommandReply(False, "in use"), agent_id="agent-3")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(workflow_manager, workflow.id)

        workflow_manager.update_draft(workflow.id, hosts=[{"host_id": 3}])

        assert workflow.step == WorkflowStep.HOSTS
        assert workflow.precheck_results == {}

        await workflow_manager.next(workflow.id)  # -> config
        await workflow_manager.next(workflow.id)  # -> precheck
        await workflow_manager.run_precheck(workflow.id)
        with pytest.raises(StepGuardError):
            await workflow_manager.next(workflow.id)

        assert workflow.step == WorkflowStep.PRECHECK
        assert workflow.cluster_id is None
        assert installer.requests == []

    @pytest.mark.asyncio
    async def test_mode_change_at_plugins_needs_new_selection(self, workflow_manager, registry, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])
        await advance_to_plugins(workflow_manager, workflow.id)

        workflow_manager.update_draft(workflow.id, deployment_mode="separated")

        assert workflow.step == WorkflowStep.HOSTS
        with pytest.raises(StepGuardError) as exc_info:
            await workflow_manager.next(workflow.id)
        assert "select at least one host" in str(exc_info.value)
        assert registry.list_clusters()[1] == 0

    @pytest.mark.asyncio
    async def test_other_edits_keep_plugins_step(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(workflow_manager, workflow.id)

        workflow_manager.update_draft(workflow.id, plugins=["jdbc"], description="nightly")

        assert workflow.step == WorkflowStep.PLUGINS
        assert 1 in workflow.precheck_results

    @pytest.mark.asyncio
    async def test_deploy_entry_rechecks_prechecks(self, workflow_manager, registry, installer, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(workflow_manager, workflow.id)
        workflow.precheck_results = {}

        with pytest.raises(StepGuardError) as exc_info:
            await workflow_manager.next(workflow.id, wait=True)

        assert "prechecked" in str(exc_info.value)
        assert workflow.step == WorkflowStep.PLUGINS
        assert workflow.deploy_state == DeployState.IDLE
        assert registry.list_clusters()[1] == 0
        assert installer.requests == []


class TestDeploy:

    @pytest.mark.asyncio
    async def test_successful_deploy(self, workflow_manager, registry, installer, hosts):
        installer.script(1, "running", "running", "success")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])
        await advance_to_plugins(workflow_manager, workflow.id)

        await workflow_manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.SUCCESS
        assert workflow.step == WorkflowStep.COMPLETE

        cluster = registry.get_cluster(workflow.cluster_id, with_nodes=True)
        assert cluster.name == "demo"
        assert cluster.status == ClusterStatus.CREATED
        assert [n.host_id for n in cluster.nodes] == [1, 2]

        host_id, request = installer.requests[0]
        assert host_id == 1
        assert request.cluster_id == cluster.id
        assert request.master_addresses == ["10.0.0.11", "10.0.0.12"]
        assert request.worker_addresses == []
        assert request.worker_port is None

        install_entries = [e for e in workflow.progress if e.step == "install"]
        assert {e.host_name for e in install_entries} == {"node-a", "node-b"}
        assert all(e.status == StepStatus.SUCCESS for e in install_entries)

    @pytest.mark.asyncio
    async def test_separated_install_requests(self, workflow_manager, registry, installer, hosts):
        workflow = workflow_manager.create(
            name="split",
            deployment_mode="separated",
            hosts=[{"host_id": 1, "role": "master"}, {"host_id": 2, "role": "worker"}],
        )
        await advance_to_plugins(workflow_manager, workflow.id)

        await workflow_manager.next(workflow.id, wait=True)

        nodes = registry.list_nodes(workflow.cluster_id)
        assert [(n.role, n.membership_port, n.api_port) for n in nodes] == [
            (NodeRole.MASTER, 5801, 8080),
            (NodeRole.WORKER, 5802, None),
        ]
        _, request = installer.requests[1]
        assert request.master_addresses == ["10.0.0.11"]
        assert request.worker_addresses == ["10.0.0.12"]
        assert request.worker_port == 5802

    @pytest.mark.asyncio
    async def test_failed_install_then_retry(self, workflow_manager, registry, installer, hosts):
        installer.script(2, "running", "failed", error="disk full")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])
        await advance_to_plugins(workflow_manager, workflow.id)

        await workflow_manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.FAILED
        assert workflow.step == WorkflowStep.DEPLOY
        assert "disk full" in workflow.error
        first_cluster_id = workflow.cluster_id

        workflow_manager.retry(workflow.id)
        assert workflow.step == WorkflowStep.PLUGINS

        installer.script(2, "success")
        await workflow_manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.SUCCESS
        assert workflow.cluster_id == first_cluster_id
        clusters, total = registry.list_clusters()
        assert total == 1
        assert len(registry.list_nodes(first_cluster_id)) == 2

    @pytest.mark.asyncio
    async def test_install_timeout(self, cluster_service, config, installer, hosts):
        deploy_config = DeployConfig(poll_interval_seconds=0.01, install_timeout_seconds=0.05)
        manager = WorkflowManager(cluster_service, installer, defaults=config.defaults, deploy_config=deploy_config)
        installer.script(1, "running")
        workflow = manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])
        await advance_to_plugins(manager, workflow.id)

        await manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.FAILED
        assert workflow.step == WorkflowStep.DEPLOY
        assert "timed out after 0.05s" in workflow.error
        assert [host_id for host_id, _ in installer.requests] == [1]
        install = next(e for e in workflow.progress if e.step == "install" and e.host_name == "node-a")
        assert install.status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_duplicate_cluster_name_fails_deploy(self, workflow_manager, cluster_service, hosts):
        cluster_service.create_cluster("demo", "hybrid")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(workflow_manager, workflow.id)

        await workflow_manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.FAILED
        assert workflow.cluster_id is None
        assert "already exists" in workflow.error

    @pytest.mark.asyncio
    async def test_no_installer(self, cluster_service, config, registry, hosts):
        manager = WorkflowManager(cluster_service, None, defaults=config.defaults, deploy_config=config.deploy)
        workflow = manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(manager, workflow.id)

        await manager.next(workflow.id, wait=True)

        assert workflow.deploy_state == DeployState.FAILED
        assert workflow.error == "Installer not configured"
        assert registry.list_clusters()[1] == 0

    @pytest.mark.asyncio
    async def test_draft_locked_during_deploy(self, workflow_manager, hosts):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}])
        await advance_to_plugins(workflow_manager, workflow.id)
        await workflow_manager.next(workflow.id, wait=True)

        with pytest.raises(InvalidTransitionError):
            workflow_manager.update_draft(workflow.id, description="late edit")
        with pytest.raises(InvalidTransitionError):
            workflow_manager.retry(workflow.id)


class TestCancel:

    def test_cancel_before_deploy(self, workflow_manager):
        workflow = workflow_manager.create(name="demo")

        workflow_manager.cancel(workflow.id)

        assert workflow.closed is True
        with pytest.raises(InvalidTransitionError):
            workflow_manager.update_draft(workflow.id, name="other")

    @pytest.mark.asyncio
    async def test_cancel_during_deploy_needs_confirmation(self, workflow_manager, installer, hosts):
        installer.script(1, "running")
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1}, {"host_id": 2}])
        await advance_to_plugins(workflow_manager, workflow.id)

        await workflow_manager.next(workflow.id)
        while not installer.requests:
            await asyncio.sleep(0)

        with pytest.raises(ConfirmationRequiredError):
            workflow_manager.cancel(workflow.id)

        workflow_manager.cancel(workflow.id, confirm=True)
        await workflow_manager.wait(workflow.id)

        assert workflow.deploy_state == DeployState.CANCELLED
        assert workflow.closed is True
        # The created cluster stays; nothing is rolled back
        assert workflow.cluster_id is not None
        assert [host_id for host_id, _ in installer.requests] == [1]

    def test_workflow_to_dict(self, workflow_manager):
        workflow = workflow_manager.create(name="demo", hosts=[{"host_id": 1, "name": "a", "ip_address": "10.0.0.1"}])

        data = workflow.to_dict()

        assert data["step"] == "basic"
        assert data["deploy_state"] == "idle"
        assert data["draft"]["hosts"][0]["role"] == "master/worker"
        assert data["draft"]["deployment_mode"] == "hybrid"
