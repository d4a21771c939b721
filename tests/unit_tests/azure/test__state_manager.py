import json
import re

import pytest

from deployment.azure.state.state_manager import (
    DeploymentPhase,
    DeploymentStateManager,
    DeploymentStatus,
    create_deployment_id,
)


@pytest.fixture
def state_manager(tmp_path):
    return DeploymentStateManager(str(tmp_path / "state.json"))


def start(manager, phases=None):
    return manager.start_deployment(
        "sentinel-cli-20240101-000000", "cli",
        subscription_id="sub", resource_group="rg", workspace="ws",
        phases=phases,
    )


def test_start_tracks_requested_phases_only(state_manager):
    state = start(state_manager, [DeploymentPhase.PROVIDERS, DeploymentPhase.TEMPLATE_DEPLOYMENT])
    assert list(state.phases) == ["providers", "template_deployment"]
    assert all(p.status == DeploymentStatus.PENDING.value for p in state.phases.values())
    assert state_manager.state_file.exists()


def test_phase_without_deployment_raises(state_manager):
    with pytest.raises(ValueError, match="No active deployment"):
        state_manager.start_phase(DeploymentPhase.PROVIDERS)


def test_complete_phase_records_resources_and_rollback(state_manager):
    start(state_manager)
    state_manager.start_phase(DeploymentPhase.RESOURCE_GROUP)
    state_manager.complete_phase(
        DeploymentPhase.RESOURCE_GROUP,
        resources={"id": "/subscriptions/sub/resourceGroups/rg"},
        rollback_commands=[["group", "delete", "--name", "rg"]],
    )

    phase = state_manager.state.phases["resource_group"]
    assert phase.status == "completed"
    assert phase.duration_seconds is not None
    assert phase.rollback_commands == [["group", "delete", "--name", "rg"]]


def test_fail_phase_marks_deployment_failed(state_manager):
    start(state_manager)
    state_manager.start_phase(DeploymentPhase.SENTINEL)
    state_manager.fail_phase(DeploymentPhase.SENTINEL, "boom")

    assert state_manager.state.status == "failed"
    assert state_manager.state.error == "boom"
    assert state_manager.state.phases["sentinel"].error_message == "boom"


def test_state_round_trips_through_file(state_manager):
    start(state_manager)
    state_manager.complete_phase(DeploymentPhase.WORKSPACE, rollback_commands=[["x"]])
    state_manager.complete_deployment({"workspaceId": "abc"})

    reloaded = DeploymentStateManager(str(state_manager.state_file)).load_state()
    assert reloaded.status == "completed"
    assert reloaded.outputs == {"workspaceId": "abc"}
    assert reloaded.phases["workspace"].rollback_commands == [["x"]]


def test_load_missing_or_corrupt_state(state_manager):
    assert state_manager.load_state() is None
    state_manager.state_file.write_text("{not json")
    assert state_manager.load_state() is None


def test_rollback_plan_is_lifo_over_completed_phases(state_manager):
    start(state_manager)
    state_manager.complete_phase(DeploymentPhase.RESOURCE_GROUP, rollback_commands=[["rg"]])
    state_manager.complete_phase(DeploymentPhase.WORKSPACE, rollback_commands=[["ws"]])
    state_manager.complete_phase(DeploymentPhase.PROVIDERS)
    state_manager.complete_phase(DeploymentPhase.LOCK, rollback_commands=[["unlock"]])
    state_manager.fail_phase(DeploymentPhase.SENTINEL, "boom")

    plan = state_manager.get_rollback_plan()
    assert [step["phase"] for step in plan] == ["lock", "workspace", "resource_group"]


def test_mark_rolled_back(state_manager):
    start(state_manager)
    state_manager.complete_phase(DeploymentPhase.WORKSPACE, rollback_commands=[["ws"]])
    state_manager.mark_rolled_back()

    assert state_manager.state.status == "rolled_back"
    assert state_manager.state.phases["workspace"].status == "rolled_back"
    assert state_manager.get_rollback_plan() == []


def test_status_summary_ignores_skipped_phases(state_manager):
    start(state_manager, [DeploymentPhase.PROVIDERS, DeploymentPhase.SENTINEL, DeploymentPhase.LOCK])
    state_manager.complete_phase(DeploymentPhase.PROVIDERS)
    state_manager.skip_phase(DeploymentPhase.SENTINEL)

    summary = state_manager.get_status_summary()
    assert summary["progress"] == "1/2"
    assert summary["resource_group"] == "rg"
    json.dumps(summary)


def test_status_summary_without_deployment(state_manager):
    assert state_manager.get_status_summary() == {"status": "no_deployment"}


def test_cleanup_state_file(state_manager):
    start(state_manager)
    state_manager.cleanup_state_file()
    assert not state_manager.state_file.exists()


def test_create_deployment_id():
    assert re.fullmatch(r"sentinel-template-\d{8}-\d{6}", create_deployment_id("sentinel-template"))


def test_failed_phase_with_leftovers_is_rolled_back(state_manager):
    start(state_manager, [DeploymentPhase.PROVIDERS, DeploymentPhase.TEMPLATE_DEPLOYMENT])
    state_manager.complete_phase(DeploymentPhase.PROVIDERS)
    state_manager.fail_phase(DeploymentPhase.TEMPLATE_DEPLOYMENT, "Conflict",
                             rollback_commands=[["group", "delete", "--name", "rg"]])

    plan = state_manager.get_rollback_plan()
    assert plan == [{
        "phase": "template_deployment",
        "commands": [["group", "delete", "--name", "rg"]],
        "resources": {},
    }]

    state_manager.mark_rolled_back()
    assert state_manager.state.phases["template_deployment"].status == "rolled_back"
    assert state_manager.state.phases["providers"].status == "rolled_back"
    assert state_manager.get_rollback_plan() == []
