import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from sentinel_deploy.cli import cli
from tests.fixtures.az_fixtures import (
    TEST_RESOURCE_GROUP,
    TEST_SUBSCRIPTION,
    TEST_WORKSPACE,
    TEST_WORKSPACE_ID,
)

DEPLOY_ARGS = [
    "deploy", "--non-interactive",
    "-g", TEST_RESOURCE_GROUP,
    "-w", TEST_WORKSPACE,
    "-l", "eastus",
]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def deployed_resources(healthy_azure):
    healthy_azure.add("group show", {
        "name": TEST_RESOURCE_GROUP, "location": "eastus", "id": "/rg", "provisioningState": "Succeeded"
    })
    healthy_azure.add("monitor log-analytics workspace show", {
        "id": TEST_WORKSPACE_ID, "customerId": "cid", "provisioningState": "Succeeded"
    })
    healthy_azure.add("rest --method get", {"name": "default"})
    healthy_azure.add("lock list", [{"name": f"{TEST_RESOURCE_GROUP}-lock", "level": "CanNotDelete"}])
    return healthy_azure


def test_show_config(runner):
    result = runner.invoke(cli, ["show-config"])
    assert result.exit_code == 0
    assert "Log Analytics SKU: PerGB2018" in result.output
    assert "Cloud Shell: no" in result.output


def test_deploy_missing_parameters_exits_non_zero(runner, az_client, fake_az):
    result = runner.invoke(cli, ["deploy", "--non-interactive", "-g", TEST_RESOURCE_GROUP])

    assert result.exit_code == 1
    assert "Missing required parameters: --workspace, --location" in result.output
    assert fake_az.calls == []


def test_deploy_uses_default_location_from_environment(runner, az_client, healthy_azure, monkeypatch):
    from sentinel_deploy.settings import get_settings

    monkeypatch.setenv("AZURE_DEFAULTS_LOCATION", "westeurope")
    get_settings.cache_clear()

    result = runner.invoke(cli, ["deploy", "--non-interactive", "-g", TEST_RESOURCE_GROUP, "-w", TEST_WORKSPACE])

    assert result.exit_code == 0, result.output
    assert "--location westeurope" in healthy_azure.commands("deployment sub create")[0]


def test_deploy_rejects_invalid_resource_group_name(runner, az_client, fake_az):
    result = runner.invoke(cli, ["deploy", "--non-interactive", "-g", "bad name.", "-w", "ws", "-l", "eastus"])

    assert result.exit_code == 1
    assert "invalid characters" in result.output
    assert fake_az.calls == []


def test_deploy_requires_login(runner, az_client, fake_az):
    fake_az.fail("account show", "ERROR: Please run 'az login' to setup account.")

    result = runner.invoke(cli, DEPLOY_ARGS)

    assert result.exit_code == 1
    assert "az login" in result.output


def test_deploy_with_template(runner, az_client, healthy_azure):
    result = runner.invoke(cli, DEPLOY_ARGS)

    assert result.exit_code == 0, result.output
    assert "Deployment completed successfully!" in result.output
    assert "#view/Microsoft_Azure_Security_Insights" in result.output
    assert f"/subscriptions/{TEST_SUBSCRIPTION['id']}/resourceGroups/{TEST_RESOURCE_GROUP}" in result.output
    assert len(healthy_azure.commands("deployment sub create")) == 1


def test_deploy_with_cli_steps(runner, az_client, healthy_azure):
    result = runner.invoke(cli, DEPLOY_ARGS + ["--method", "cli", "--no-alert-rule", "--no-lock"])

    assert result.exit_code == 0, result.output
    assert len(healthy_azure.commands("rest --method put")) == 3
    assert healthy_azure.commands("lock create") == []
    assert healthy_azure.commands("deployment sub create") == []


def test_deploy_existing_resource_group_warns_and_proceeds(runner, az_client, healthy_azure):
    healthy_azure.add("group exists", "true")

    result = runner.invoke(cli, DEPLOY_ARGS)

    assert result.exit_code == 0, result.output
    assert f"Warning: resource group '{TEST_RESOURCE_GROUP}' already exists" in result.output
    assert "Deployment completed successfully!" in result.output


def test_interactive_deploy_can_decline_existing_resource_group(runner, az_client, healthy_azure):
    healthy_azure.add("group exists", "true")

    result = runner.invoke(
        cli,
        ["deploy", "-g", TEST_RESOURCE_GROUP, "-w", TEST_WORKSPACE, "-l", "eastus",
         "-i", TEST_SUBSCRIPTION["id"]],
        input="n\n",
    )

    assert result.exit_code == 0
    assert "Deployment cancelled." in result.output
    assert healthy_azure.commands("deployment sub create") == []


def test_interactive_deploy_prompts_for_missing_values(runner, az_client, healthy_azure):
    result = runner.invoke(
        cli,
        ["deploy", "-l", "eastus"],
        input=f"{TEST_RESOURCE_GROUP}\n{TEST_WORKSPACE}\n1\ny\n",
    )

    assert result.exit_code == 0, result.output
    assert "Available subscriptions:" in result.output
    assert f"--subscription {TEST_SUBSCRIPTION['id']}" in healthy_azure.commands("account set")[0]
    assert "Deployment completed successfully!" in result.output


def test_deploy_failure_exits_non_zero(runner, az_client, healthy_azure):
    healthy_azure.fail("deployment sub create", "ERROR: Deployment failed.")
    healthy_azure.add("deployment sub show", {"code": "Conflict", "message": "nope"})

    result = runner.invoke(cli, DEPLOY_ARGS)

    assert result.exit_code == 1
    assert "Deployment failed" in result.output
    assert '"code": "Conflict"' in result.output
    assert healthy_azure.commands("group delete") == []


def test_quickstart(runner, az_client, healthy_azure):
    result = runner.invoke(cli, ["quickstart"], input="bad name\nrg-quick\n\n\ny\n")

    assert result.exit_code == 0, result.output
    assert "invalid characters" in result.output
    assert "1) East US (eastus)" in result.output
    create = healthy_azure.commands("deployment sub create")[0]
    assert "--name sentinel-cloudshell-" in create
    assert "--location eastus" in create


def test_quickstart_rejects_out_of_range_region(runner, az_client, healthy_azure):
    result = runner.invoke(cli, ["quickstart"], input="rg-quick\n42\n2\nws\ny\n")

    assert result.exit_code == 0, result.output
    assert "between 1-10" in result.output
    assert "--location eastus2" in healthy_azure.commands("deployment sub create")[0]


def test_quickstart_can_be_cancelled(runner, az_client, healthy_azure):
    result = runner.invoke(cli, ["quickstart"], input="rg-quick\n\n\nn\n")

    assert result.exit_code == 0
    assert "Deployment cancelled." in result.output
    assert healthy_azure.commands("deployment sub create") == []


def test_subscriptions(runner, az_client, logged_in):
    result = runner.invoke(cli, ["subscriptions"])
    assert result.exit_code == 0
    assert f"1) {TEST_SUBSCRIPTION['name']} [{TEST_SUBSCRIPTION['id']}] (current)" in result.output


def test_register_providers(runner, az_client, logged_in):
    logged_in.add("provider show", "Registered")
    result = runner.invoke(cli, ["register-providers"])
    assert result.exit_code == 0
    assert "Microsoft.SecurityInsights: Registered" in result.output


def test_register_providers_timeout(runner, az_client, logged_in):
    logged_in.add("provider show", "Registering")
    result = runner.invoke(cli, ["register-providers"])
    assert result.exit_code == 1
    assert "Resource providers not registered" in result.output


def test_template_command_writes_files(runner):
    result = runner.invoke(cli, [
        "template", "-o", "out/template.json", "-p", "out/parameters.json",
        "-g", TEST_RESOURCE_GROUP, "-w", TEST_WORKSPACE, "-l", "eastus",
    ])

    assert result.exit_code == 0, result.output
    template = json.loads(Path("out/template.json").read_text())
    parameters = json.loads(Path("out/parameters.json").read_text())
    assert template["resources"][0]["type"] == "Microsoft.Resources/resourceGroups"
    assert parameters["parameters"]["resourceGroupName"]["value"] == TEST_RESOURCE_GROUP


def test_template_parameters_need_names(runner):
    result = runner.invoke(cli, ["template", "-p", "parameters.json"])
    assert result.exit_code == 1
    assert "Missing required parameters" in result.output


def test_status_without_deployment(runner):
    result = runner.invoke(cli, ["status"])
    assert result.exit_code == 1
    assert "No recorded deployment" in result.output


def test_status_after_deployment(runner, az_client, deployed_resources):
    assert runner.invoke(cli, DEPLOY_ARGS + ["--method", "cli"]).exit_code == 0

    result = runner.invoke(cli, ["status", "--json"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["health"]["overall_status"] == "healthy"
    assert report["deployment"]["status"] == "completed"
    assert report["deployment"]["method"] == "cli"


def test_status_unhealthy_exits_non_zero(runner, az_client, logged_in):
    logged_in.add("provider show", "Registered")
    result = runner.invoke(cli, ["status", "-g", TEST_RESOURCE_GROUP, "-w", TEST_WORKSPACE])
    assert result.exit_code == 1
    assert "Overall status: unhealthy" in result.output


def test_rollback_without_state(runner, az_client):
    result = runner.invoke(cli, ["rollback"])
    assert result.exit_code == 0
    assert "Nothing to roll back." in result.output


def test_rollback_plan_then_execute(runner, az_client, healthy_azure):
    assert runner.invoke(cli, DEPLOY_ARGS + ["--method", "cli"]).exit_code == 0

    plan = runner.invoke(cli, ["rollback"])
    assert plan.exit_code == 0
    assert "Dry run only" in plan.output
    assert plan.output.index("lock:") < plan.output.index("resource_group:")
    assert healthy_azure.commands("group delete") == []

    executed = runner.invoke(cli, ["rollback", "--execute", "--yes"])
    assert executed.exit_code == 0, executed.output
    assert "Rollback completed." in executed.output
    assert len(healthy_azure.commands("group delete")) == 1

    again = runner.invoke(cli, ["rollback"])
    assert "Nothing to roll back." in again.output


def test_rollback_requires_confirmation(runner, az_client, healthy_azure):
    assert runner.invoke(cli, DEPLOY_ARGS + ["--method", "cli"]).exit_code == 0

    result = runner.invoke(cli, ["rollback", "--execute"], input="n\n")

    assert "Rollback cancelled." in result.output
    assert healthy_azure.commands("group delete") == []


def test_quickstart_cancels_when_confirmation_is_left_empty(runner, az_client, healthy_azure):
    result = runner.invoke(cli, ["quickstart"], input="rg-quick\n\n\n\n")

    assert result.exit_code == 0
    assert "Deployment cancelled." in result.output
    assert healthy_azure.commands("deployment sub create") == []


def test_failed_template_deploy_can_be_rolled_back(runner, az_client, healthy_azure):
    healthy_azure.fail("deployment sub create", "ERROR: Deployment failed.")
    assert runner.invoke(cli, DEPLOY_ARGS).exit_code == 1

    plan = runner.invoke(cli, ["rollback"])

    assert plan.exit_code == 0
    assert "template_deployment:" in plan.output
    assert f"az group delete --name {TEST_RESOURCE_GROUP}" in plan.output


def test_deploy_prints_resource_group_details(runner, az_client, healthy_azure):
    healthy_azure.add("group show", {
        "name": TEST_RESOURCE_GROUP, "location": "eastus", "id": "/subscriptions/x/resourceGroups/rg",
        "tags": {"Owner": "tester"}, "provisioningState": "Succeeded",
    })

    result = runner.invoke(cli, DEPLOY_ARGS)

    assert result.exit_code == 0, result.output
    assert "Resource group details:" in result.output
    assert "Resource ID: /subscriptions/x/resourceGroups/rg" in result.output
    assert 'Tags:        {"Owner": "tester"}' in result.output
