import pytest

from deployment.azure.state.rollback_manager import RollbackManager
from deployment.azure.state.state_manager import DeploymentPhase, DeploymentStateManager


@pytest.fixture
def recorded_state(tmp_path):
    manager = DeploymentStateManager(str(tmp_path / "state.json"))
    manager.start_deployment(
        "sentinel-cli-1", "cli", subscription_id="sub", resource_group="rg", workspace="ws",
        phases=[DeploymentPhase.RESOURCE_GROUP, DeploymentPhase.WORKSPACE, DeploymentPhase.LOCK],
    )
    manager.complete_phase(DeploymentPhase.RESOURCE_GROUP,
                           rollback_commands=[["group", "delete", "--name", "rg", "--yes", "--no-wait"]])
    manager.complete_phase(DeploymentPhase.WORKSPACE,
                           rollback_commands=[["monitor", "log-analytics", "workspace", "delete",
                                               "--resource-group", "rg", "--workspace-name", "ws"]])
    manager.complete_phase(DeploymentPhase.LOCK,
                           rollback_commands=[["lock", "delete", "--name", "rg-lock", "--resource-group", "rg"]])
    return manager


def test_rollback_manager_loads_state_from_file(recorded_state, az_client):
    manager = RollbackManager(DeploymentStateManager(str(recorded_state.state_file)), az=az_client)
    assert manager.can_rollback()
    assert [step["phase"] for step in manager.create_rollback_plan()] == [
        "lock", "workspace", "resource_group"
    ]


def test_dry_run_executes_nothing(recorded_state, az_client, fake_az):
    results = RollbackManager(recorded_state, az=az_client).execute_rollback()

    assert results["dry_run"] is True
    assert [entry["status"] for entry in results["success"]] == ["would_run"] * 3
    assert results["success"][0]["command"].startswith("az lock delete")
    assert fake_az.calls == []
    assert recorded_state.state.status == "in_progress"


def test_execute_runs_commands_newest_first(recorded_state, az_client, fake_az):
    results = RollbackManager(recorded_state, az=az_client).execute_rollback(dry_run=False)

    assert results["failed"] == []
    assert [call[0] for call in fake_az.calls] == ["lock", "monitor", "group"]
    assert recorded_state.state.status == "rolled_back"


def test_already_deleted_resources_count_as_success(recorded_state, az_client, fake_az):
    fake_az.fail("monitor log-analytics workspace delete", "ERROR: (ResourceNotFound) gone")
    results = RollbackManager(recorded_state, az=az_client).execute_rollback(dry_run=False)

    statuses = {entry["phase"]: entry["status"] for entry in results["success"]}
    assert statuses["workspace"] == "already_gone"
    assert results["failed"] == []


def test_failures_keep_state_for_retry(recorded_state, az_client, fake_az):
    fake_az.fail("group delete", "ERROR: (ScopeLocked) locked")
    results = RollbackManager(recorded_state, az=az_client).execute_rollback(dry_run=False)

    assert [entry["phase"] for entry in results["failed"]] == ["resource_group"]
    assert recorded_state.state.status != "rolled_back"


def test_nothing_to_roll_back(tmp_path, az_client, fake_az):
    manager = RollbackManager(DeploymentStateManager(str(tmp_path / "missing.json")), az=az_client)
    assert manager.can_rollback() is False
    assert manager.execute_rollback(dry_run=False) == {"dry_run": False, "success": [], "failed": []}
