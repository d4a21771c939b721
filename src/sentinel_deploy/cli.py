# cli.py
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

import click

from deployment.azure.infrastructure.providers import ProviderRegistrar, ProviderRegistrationError
from deployment.azure.infrastructure.resource_group import ResourceGroupManager
from deployment.azure.infrastructure.subscription import SubscriptionManager, choose_subscription
from deployment.azure.infrastructure.templates import (
    build_subscription_template,
    build_template_parameters,
    write_template,
)
from deployment.azure.monitoring.status_monitor import StatusMonitor
from deployment.azure.orchestration.deploy_sentinel import (
    DEPLOYMENT_METHODS,
    DeploymentError,
    DeploymentRequest,
    SentinelDeploymentBuilder,
)
from deployment.azure.state.rollback_manager import RollbackManager
from deployment.azure.state.state_manager import DeploymentStateManager
from deployment.azure.utils.az_cli import AzCliError, get_az_client
from deployment.azure.utils.validation import (
    QUICKSTART_REGIONS,
    ValidationError,
    missing_parameters,
    region_for_choice,
    validate_resource_group_name,
)
from sentinel_deploy.settings import VALID_LOCK_TYPES, VALID_SKUS, get_settings

# Configure logging
logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, get_settings().log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def fail(message: str, code: int = 1) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def require_login(subscriptions: SubscriptionManager) -> Dict[str, Any]:
    try:
        return subscriptions.ensure_logged_in()
    except AzCliError as e:
        fail(str(e))


def prompt_resource_group(default: Optional[str] = None) -> str:
    """Prompt until a valid resource group name is entered."""
    while True:
        name = click.prompt("Resource group name", default=default, show_default=bool(default))
        try:
            return validate_resource_group_name(name.strip())
        except ValidationError as e:
            click.echo(f"Error: {e}", err=True)
            default = None


def prompt_region() -> str:
    click.echo("Select a region:")
    for number, (name, label) in enumerate(QUICKSTART_REGIONS, start=1):
        click.echo(f"  {number}) {label} ({name})")
    while True:
        choice = click.prompt("Region", default="1")
        try:
            return region_for_choice(choice)
        except ValidationError as e:
            click.echo(f"Error: {e}", err=True)


def pick_subscription(subscriptions: SubscriptionManager) -> Optional[str]:
    """Offer the enabled subscriptions; an empty answer keeps the current one."""
    enabled = subscriptions.list_enabled()
    if not enabled:
        return None
    click.echo("Available subscriptions:")
    for number, subscription in enumerate(enabled, start=1):
        marker = " (current)" if subscription.get("isDefault") else ""
        click.echo(f"  {number}) {subscription.get('name')} [{subscription.get('id')}]{marker}")
    selection = click.prompt("Select subscription (Enter to keep current)",
                             default="", show_default=False)
    try:
        chosen = choose_subscription(enabled, selection)
    except ValueError as e:
        fail(str(e))
    return chosen["id"] if chosen else None


def echo_summary(request: DeploymentRequest, method: str, subscription: Dict[str, Any]) -> None:
    click.echo("")
    click.echo("Deployment summary:")
    click.echo(f"  Subscription:    {subscription.get('name')} ({subscription.get('id')})")
    click.echo(f"  Resource group:  {request.resource_group}")
    click.echo(f"  Workspace:       {request.workspace}")
    click.echo(f"  Location:        {request.location}")
    click.echo(f"  SKU / retention: {request.sku} / {request.retention_days} days")
    click.echo(f"  Sentinel:        {'enabled' if request.enable_sentinel else 'disabled'}")
    click.echo(f"  Lock:            {request.lock_type if request.enable_lock else 'none'}")
    click.echo(f"  Method:          {method}")
    click.echo(f"  Deployment name: {request.deployment_name}")
    click.echo("")


def echo_result(result: Dict[str, Any], group: Optional[Dict[str, Any]] = None) -> None:
    outputs = result.get("outputs", {})
    click.echo("")
    click.echo("Deployment completed successfully!")
    click.echo(f"  Resource group: {result['resource_group']}")
    click.echo(f"  Workspace:      {result['workspace']}")
    if outputs.get("workspaceId"):
        click.echo(f"  Workspace ID:   {outputs['workspaceId']}")
    click.echo(f"  Subscription:   {result['subscription_id']}")
    click.echo("")
    click.echo("Portal links:")
    click.echo(f"  Microsoft Sentinel: {result['links']['sentinel']}")
    click.echo(f"  Resource group:     {result['links']['resource_group']}")
    if group:
        click.echo("")
        click.echo("Resource group details:")
        click.echo(f"  Name:        {group.get('name')}")
        click.echo(f"  Location:    {group.get('location')}")
        click.echo(f"  Resource ID: {group.get('id')}")
        click.echo(f"  Tags:        {json.dumps(group.get('tags') or {}, sort_keys=True)}")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Review the data connectors in Microsoft Sentinel")
    click.echo("  2. Tune the example analytics rule before relying on it")
    click.echo("  3. Check health with: sentinel-deploy status")


def run_deployment(request: DeploymentRequest, method: str, interactive: bool,
                   assume_yes: bool) -> Dict[str, Any]:
    """Resolve the subscription, confirm and deploy; exits non-zero on failure."""
    az = get_az_client()
    builder = SentinelDeploymentBuilder(request, method=method, az=az)
    try:
        builder.authenticate().select_subscription()
    except (AzCliError, ValueError) as e:
        fail(str(e))

    try:
        exists = ResourceGroupManager(az=az).exists(request.resource_group)
    except AzCliError as e:
        fail(str(e))
    if exists:
        click.echo(f"Warning: resource group '{request.resource_group}' already exists")
        if interactive and not assume_yes:
            if not click.confirm("Continue and deploy into the existing resource group?",
                                 default=False):
                click.echo("Deployment cancelled.")
                sys.exit(0)

    echo_summary(request, method, builder.subscription)
    if interactive and not assume_yes:
        if not click.confirm("Proceed with deployment?", default=False):
            click.echo("Deployment cancelled.")
            sys.exit(0)

    try:
        result = builder.deploy()
    except DeploymentError as e:
        click.echo(f"Deployment failed: {e}", err=True)
        if e.details:
            click.echo(json.dumps(e.details, indent=2), err=True)
        click.echo("Created resources were left in place. "
                   "Review them with 'sentinel-deploy rollback'.", err=True)
        sys.exit(1)
    except AzCliError as e:
        fail(str(e))

    try:
        group = ResourceGroupManager(az=az).show(request.resource_group)
    except AzCliError as e:
        logger.warning(f"Could not read resource group details: {e}")
        group = None
    echo_result(result, group)
    return result


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose):
    """Deploy Log Analytics and Microsoft Sentinel with the Azure CLI"""
    configure_logging(verbose)


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    click.echo("Current Configuration:")
    click.echo(f"  Azure CLI: {settings.az_cli_path}")
    click.echo(f"  Default Location: {settings.default_location or 'not set'}")
    click.echo(f"  Log Analytics SKU: {settings.log_analytics_sku}")
    click.echo(f"  Data Retention Days: {settings.data_retention_days}")
    click.echo(f"  Resource Group Lock: "
               f"{settings.resource_group_lock_type if settings.enable_resource_group_lock else 'disabled'}")
    click.echo(f"  Required Providers: {', '.join(settings.required_providers)}")
    click.echo(f"  Provider Polling: {settings.provider_poll_attempts} x {settings.provider_poll_interval}s")
    click.echo(f"  Billing Scope: {settings.billing_scope or 'not set'}")
    click.echo(f"  State File: {settings.state_file}")
    click.echo(f"  Cloud Shell: {'yes' if settings.in_cloud_shell else 'no'}")


@cli.command()
def subscriptions():
    """List enabled subscriptions"""
    manager = SubscriptionManager(az=get_az_client())
    require_login(manager)
    try:
        enabled = manager.list_enabled()
    except AzCliError as e:
        fail(str(e))

    if not enabled:
        click.echo("No enabled subscriptions found.")
        return
    for number, subscription in enumerate(enabled, start=1):
        marker = " (current)" if subscription.get("isDefault") else ""
        click.echo(f"{number}) {subscription.get('name')} [{subscription.get('id')}]{marker}")


@cli.command()
@click.option("-s", "--subscription-name", help="Subscription name (looked up, or created with a billing scope)")
@click.option("-i", "--subscription-id", help="Subscription ID to deploy into")
@click.option("-g", "--resource-group", help="Resource group name")
@click.option("-w", "--workspace", help="Log Analytics workspace name")
@click.option("-l", "--location", help="Azure region")
@click.option("-d", "--description", help="Resource group description")
@click.option("--sku", type=click.Choice(VALID_SKUS, case_sensitive=False), help="Log Analytics pricing tier")
@click.option("--retention", type=click.IntRange(30, 730), help="Data retention in days")
@click.option("--no-lock", is_flag=True, help="Do not lock the resource group")
@click.option("--lock-type", type=click.Choice(VALID_LOCK_TYPES, case_sensitive=False), help="Resource group lock level")
@click.option("--template-file", type=click.Path(exists=True, dir_okay=False), help="Deploy this ARM template instead of the built-in one")
@click.option("--method", type=click.Choice(DEPLOYMENT_METHODS), default="template", show_default=True,
              help="Deploy as one ARM template or as individual CLI steps")
@click.option("--no-sentinel", is_flag=True, help="Create the workspace without enabling Sentinel")
@click.option("--connectors/--no-connectors", default=True, help="Attach the default data connectors")
@click.option("--alert-rule/--no-alert-rule", default=True, help="Create the example analytics rule")
@click.option("--non-interactive", is_flag=True, help="Never prompt; fail when parameters are missing")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompts")
def deploy(subscription_name, subscription_id, resource_group, workspace, location, description,
           sku, retention, no_lock, lock_type, template_file, method, no_sentinel, connectors,
           alert_rule, non_interactive, yes):
    """Deploy a resource group, Log Analytics workspace and Microsoft Sentinel"""
    settings = get_settings()
    interactive = not non_interactive
    location = location or settings.default_location

    if template_file and method != "template":
        fail("--template-file requires --method template")

    missing = missing_parameters(resource_group=resource_group, workspace=workspace, location=location)
    if missing and not interactive:
        fail(f"Missing required parameters: {', '.join('--' + m.replace('_', '-') for m in missing)}")

    if interactive:
        resource_group = resource_group or prompt_resource_group()
        workspace = workspace or click.prompt("Log Analytics workspace name")
        location = location or click.prompt("Azure region", default="eastus")

    try:
        validate_resource_group_name(resource_group)
    except ValidationError as e:
        fail(str(e))

    subscriptions_manager = SubscriptionManager(az=get_az_client())
    require_login(subscriptions_manager)
    if interactive and not subscription_id and not subscription_name:
        try:
            subscription_id = pick_subscription(subscriptions_manager)
        except AzCliError as e:
            fail(str(e))

    request = DeploymentRequest(
        resource_group=resource_group,
        workspace=workspace,
        location=location,
        subscription_id=subscription_id,
        subscription_name=subscription_name,
        resource_group_description=description or settings.resource_group_description,
        sku=sku or settings.log_analytics_sku,
        retention_days=retention or settings.data_retention_days,
        enable_lock=settings.enable_resource_group_lock and not no_lock,
        lock_type=lock_type or settings.resource_group_lock_type,
        enable_sentinel=not no_sentinel,
        enable_connectors=connectors,
        enable_alert_rule=alert_rule,
        tags=settings.default_tags(),
        template_file=template_file,
    )
    run_deployment(request, method, interactive, yes)


@cli.command()
@click.option("--method", type=click.Choice(DEPLOYMENT_METHODS), default="template", show_default=True)
def quickstart(method):
    """Guided Cloud Shell deployment with sensible defaults"""
    settings = get_settings()
    subscriptions_manager = SubscriptionManager(az=get_az_client())

    click.echo("Microsoft Sentinel quick start")
    if settings.in_cloud_shell:
        click.echo("Running in Azure Cloud Shell")
    current = require_login(subscriptions_manager)
    click.echo(f"Current subscription: {current.get('name')} ({current.get('id')})")
    click.echo("")

    resource_group = prompt_resource_group()
    location = prompt_region()
    default_workspace = f"sentinel-ws-{datetime.now().strftime('%Y%m%d%H%M')}"
    workspace = click.prompt("Log Analytics workspace name", default=default_workspace)

    request = DeploymentRequest(
        resource_group=resource_group,
        workspace=workspace,
        location=location,
        subscription_id=current.get("id"),
        resource_group_description=settings.resource_group_description,
        sku=settings.log_analytics_sku,
        retention_days=settings.data_retention_days,
        enable_lock=settings.enable_resource_group_lock,
        lock_type=settings.resource_group_lock_type,
        tags=settings.default_tags(),
        quickstart=True,
    )
    run_deployment(request, method, interactive=True, assume_yes=False)


@cli.command()
@click.option("--no-wait", is_flag=True, help="Send registration requests without polling")
def register_providers(no_wait):
    """Register the resource providers Sentinel needs"""
    az = get_az_client()
    require_login(SubscriptionManager(az=az))
    registrar = ProviderRegistrar(az=az)
    try:
        states = registrar.register_all(wait=not no_wait)
    except ProviderRegistrationError as e:
        fail(str(e))

    for namespace, state in states.items():
        click.echo(f"  {namespace}: {state}")


@cli.command()
@click.option("-o", "--output", "output_path", default="sentinel-template.json", show_default=True,
              type=click.Path(dir_okay=False), help="Where to write the template")
@click.option("-p", "--parameters-file", type=click.Path(dir_okay=False),
              help="Also write a parameters file here")
@click.option("-g", "--resource-group", help="Resource group name (parameters file)")
@click.option("-w", "--workspace", help="Workspace name (parameters file)")
@click.option("-l", "--location", help="Azure region (parameters file)")
@click.option("--no-sentinel", is_flag=True)
def template(output_path, parameters_file, resource_group, workspace, location, no_sentinel):
    """Write the subscription-scope ARM template"""
    settings = get_settings()
    path = write_template(build_subscription_template(), output_path)
    click.echo(f"Template written to {path}")

    if not parameters_file:
        return

    location = location or settings.default_location
    missing = missing_parameters(resource_group=resource_group, workspace=workspace, location=location)
    if missing:
        fail(f"Missing required parameters: {', '.join('--' + m.replace('_', '-') for m in missing)}")
    try:
        request = DeploymentRequest(
            resource_group=resource_group,
            workspace=workspace,
            location=location,
            resource_group_description=settings.resource_group_description,
            sku=settings.log_analytics_sku,
            retention_days=settings.data_retention_days,
            enable_lock=settings.enable_resource_group_lock,
            lock_type=settings.resource_group_lock_type,
            enable_sentinel=not no_sentinel,
            tags=settings.default_tags(),
        )
    except ValidationError as e:
        fail(str(e))
    path = write_template(build_template_parameters(request.template_parameters()), parameters_file)
    click.echo(f"Parameters written to {path}")


@cli.command()
@click.option("-g", "--resource-group", help="Resource group (defaults to the last deployment)")
@click.option("-w", "--workspace", help="Workspace (defaults to the last deployment)")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def status(resource_group, workspace, as_json):
    """Check the health of a deployment"""
    state_manager = DeploymentStateManager(get_settings().state_file)
    state_manager.load_state()
    summary = state_manager.get_status_summary()

    resource_group = resource_group or summary.get("resource_group")
    workspace = workspace or summary.get("workspace")
    if not resource_group or not workspace:
        fail("No recorded deployment; pass --resource-group and --workspace")

    require_login(SubscriptionManager(az=get_az_client()))
    report = StatusMonitor(az=get_az_client()).check_deployment_health(resource_group, workspace)

    if as_json:
        click.echo(json.dumps({"health": report, "deployment": summary}, indent=2, default=str))
    else:
        click.echo(f"Overall status: {report['overall_status']}")
        for name, component in report["components"].items():
            click.echo(f"  {name}: {component.get('status')}")
        for warning in report["warnings"]:
            click.echo(f"Warning: {warning}")
        for error in report["errors"]:
            click.echo(f"Error: {error}")
        if summary.get("status") != "no_deployment":
            click.echo("")
            click.echo(f"Last deployment: {summary['deployment_id']} ({summary['method']})")
            click.echo(f"  Status: {summary['status']}  Progress: {summary['progress']}")
            if summary.get("error"):
                click.echo(f"  Error: {summary['error']}")

    if report["overall_status"] == "unhealthy":
        sys.exit(1)


@cli.command()
@click.option("--execute", is_flag=True, help="Run the rollback instead of printing the plan")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt")
def rollback(execute, yes):
    """Undo the recorded deployment, newest step first"""
    state_manager = DeploymentStateManager(get_settings().state_file)
    manager = RollbackManager(state_manager=state_manager, az=get_az_client())

    if not manager.can_rollback():
        click.echo("Nothing to roll back.")
        return

    plan = manager.create_rollback_plan()
    click.echo("Rollback plan:")
    for step in plan:
        click.echo(f"  {step['phase']}:")
        for args in step["commands"]:
            click.echo(f"    az {' '.join(args)}")

    if not execute:
        click.echo("")
        click.echo("Dry run only. Re-run with --execute to apply.")
        return

    if not yes and not click.confirm("Delete these resources?", default=False):
        click.echo("Rollback cancelled.")
        return

    results = manager.execute_rollback(dry_run=False)
    for entry in results["success"]:
        click.echo(f"  {entry['status']}: {entry['command']}")
    for entry in results["failed"]:
        click.echo(f"  failed: {entry['command']} - {entry['error']}", err=True)
    if results["failed"]:
        sys.exit(1)
    click.echo("Rollback completed.")


if __name__ == "__main__":
    cli()
