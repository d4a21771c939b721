"""Azure deployment of a Log Analytics workspace with Microsoft Sentinel."""
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from deployment.azure.infrastructure.providers import ProviderRegistrar, ProviderRegistrationError
from deployment.azure.infrastructure.resource_group import ResourceGroupManager
from deployment.azure.infrastructure.sentinel import SentinelManager
from deployment.azure.infrastructure.subscription import SubscriptionManager
from deployment.azure.infrastructure.templates import (
    build_subscription_template,
    build_template_parameters,
    write_template,
)
from deployment.azure.infrastructure.workspace import WorkspaceManager
from deployment.azure.state.state_manager import (
    DeploymentPhase,
    DeploymentStateManager,
    create_deployment_id,
)
from deployment.azure.utils.az_cli import AzCmd, AzCliError, AzureCliClient, get_az_client
from deployment.azure.utils.validation import validate_resource_group_name
from sentinel_deploy.settings import get_settings
from sentinel_deploy.utils.decorators import log_operation

logger = logging.getLogger(__name__)

SUCCEEDED = "Succeeded"
DEPLOYMENT_METHODS = ["template", "cli"]


class DeploymentError(RuntimeError):
    """A deployment step failed; details holds the provider's error payload if any."""

    def __init__(self, message: str, details: Any = None,
                 rollback_commands: Optional[List[List[str]]] = None):
        super().__init__(message)
        self.details = details
        self.rollback_commands = rollback_commands


@dataclass
class DeploymentRequest:
    """Everything needed to deploy the stack into one resource group."""
    resource_group: str
    workspace: str
    location: str
    subscription_id: Optional[str] = None
    subscription_name: Optional[str] = None
    resource_group_description: str = ""
    sku: str = "PerGB2018"
    retention_days: int = 90
    enable_lock: bool = True
    lock_type: str = "CanNotDelete"
    enable_sentinel: bool = True
    enable_connectors: bool = True
    enable_alert_rule: bool = True
    tags: Dict[str, str] = field(default_factory=dict)
    template_file: Optional[str] = None
    quickstart: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        validate_resource_group_name(self.resource_group)

    @property
    def deployment_name(self) -> str:
        if self.quickstart:
            return f"sentinel-cloudshell-{self.created_at.strftime('%Y%m%d%H%M%S')}"
        return f"create-rg-security-setup-{self.created_at.strftime('%Y%m%d-%H%M%S')}"

    def resource_group_tags(self) -> Dict[str, str]:
        tags = dict(self.tags)
        if self.resource_group_description:
            tags["Description"] = self.resource_group_description
        return tags

    def template_parameters(self) -> Dict[str, Any]:
        """Parameter values for the subscription-scope template."""
        return {
            "subscriptionName": self.subscription_name or "",
            "resourceGroupName": self.resource_group,
            "resourceGroupDescription": self.resource_group_description,
            "logAnalyticsWorkspaceName": self.workspace,
            "location": self.location,
            "logAnalyticsSku": self.sku,
            "dataRetentionDays": self.retention_days,
            "enableResourceGroupLock": self.enable_lock,
            "resourceGroupLockType": self.lock_type,
            "enableSentinel": self.enable_sentinel,
            "enableDataConnectors": self.enable_sentinel and self.enable_connectors,
            "enableExampleAlertRule": self.enable_sentinel and self.enable_alert_rule,
            "tags": self.tags,
        }


def portal_links(subscription_id: str, resource_group: str,
                 portal_url: Optional[str] = None) -> Dict[str, str]:
    """Portal URLs printed after a deployment."""
    portal = (portal_url or get_settings().portal_url).rstrip("/")
    return {
        "sentinel": f"{portal}/#view/Microsoft_Azure_Security_Insights",
        "resource_group": f"{portal}/#@/resource/subscriptions/{subscription_id}/resourceGroups/{resource_group}",
    }


class SentinelDeploymentStrategy:
    """Base class for Sentinel deployment strategies."""

    method = ""

    def __init__(self, az: Optional[AzureCliClient] = None,
                 state_manager: Optional[DeploymentStateManager] = None,
                 registrar: Optional[ProviderRegistrar] = None):
        self.settings = get_settings()
        self.az = az or get_az_client()
        self.state_manager = state_manager or DeploymentStateManager(self.settings.state_file)
        self.registrar = registrar or ProviderRegistrar(az=self.az)
        self.resource_groups = ResourceGroupManager(az=self.az)

    def phases(self, request: DeploymentRequest) -> List[DeploymentPhase]:
        raise NotImplementedError

    def deploy(self, request: DeploymentRequest, subscription: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _start(self, request: DeploymentRequest, subscription: Dict[str, Any]) -> str:
        deployment_id = create_deployment_id(f"sentinel-{self.method}")
        self.state_manager.start_deployment(
            deployment_id,
            self.method,
            subscription_id=subscription.get("id"),
            resource_group=request.resource_group,
            workspace=request.workspace,
            phases=self.phases(request),
        )
        return deployment_id

    def _run_phase(self, phase: DeploymentPhase, step: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        """Run one phase, recording its resources and rollback commands.

        The step returns a dict with optional "resources" and "rollback" keys.
        """
        self.state_manager.start_phase(phase)
        try:
            outcome = step() or {}
        except (AzCliError, ProviderRegistrationError) as e:
            logger.error(f"❌ {phase.value}: {e}")
            self.state_manager.fail_phase(phase, str(e))
            raise DeploymentError(f"Phase '{phase.value}' failed: {e}") from e
        except DeploymentError as e:
            self.state_manager.fail_phase(phase, str(e), rollback_commands=e.rollback_commands)
            raise

        self.state_manager.complete_phase(
            phase,
            resources=outcome.get("resources"),
            rollback_commands=outcome.get("rollback"),
        )
        return outcome.get("resources") or {}

    def _register_providers(self) -> Dict[str, Any]:
        states = self.registrar.register_all(wait=True)
        return {"resources": {"providers": states}}

    def _result(self, deployment_id: str, request: DeploymentRequest,
                subscription: Dict[str, Any], outputs: Dict[str, Any],
                resource_group_existed: bool) -> Dict[str, Any]:
        self.state_manager.complete_deployment(outputs)
        logger.info(f"✅ Sentinel deployment {deployment_id} completed ({self.method})")
        return {
            "status": "success",
            "method": self.method,
            "deployment_id": deployment_id,
            "deployment_name": request.deployment_name,
            "subscription_id": subscription.get("id"),
            "subscription_name": subscription.get("name"),
            "resource_group": request.resource_group,
            "resource_group_existed": resource_group_existed,
            "workspace": request.workspace,
            "location": request.location,
            "outputs": outputs,
            "links": portal_links(subscription.get("id", ""), request.resource_group,
                                  self.settings.portal_url),
        }


class TemplateDeploymentStrategy(SentinelDeploymentStrategy):
    """Deploy everything as one subscription-scope ARM deployment."""

    method = "template"

    def phases(self, request: DeploymentRequest) -> List[DeploymentPhase]:
        return [DeploymentPhase.PROVIDERS, DeploymentPhase.TEMPLATE_DEPLOYMENT]

    def deploy(self, request: DeploymentRequest, subscription: Dict[str, Any]) -> Dict[str, Any]:
        deployment_id = self._start(request, subscription)

        logger.info("Phase 1: Resource providers")
        self._run_phase(DeploymentPhase.PROVIDERS, self._register_providers)

        resource_group_existed = self.resource_groups.exists(request.resource_group)
        if resource_group_existed:
            logger.warning(
                f"Resource group '{request.resource_group}' already exists; "
                "the deployment will update it in place"
            )

        logger.info("Phase 2: Template deployment")
        outputs = self._run_phase(
            DeploymentPhase.TEMPLATE_DEPLOYMENT,
            lambda: self._deploy_template(request, resource_group_existed),
        )
        return self._result(deployment_id, request, subscription, outputs, resource_group_existed)

    def _deploy_template(self, request: DeploymentRequest,
                         resource_group_existed: bool) -> Dict[str, Any]:
        locks_before = set()
        if request.template_file and resource_group_existed:
            locks_before = self._lock_names(request.resource_group)

        with tempfile.TemporaryDirectory(prefix="sentinel-deploy-") as tmp:
            if request.template_file:
                template_path = Path(request.template_file)
                if not template_path.is_file():
                    raise DeploymentError(f"Template file not found: {template_path}")
            else:
                template_path = write_template(build_subscription_template(),
                                               Path(tmp) / "template.json")

            parameters = build_template_parameters(
                request.template_parameters(),
                extended=request.template_file is None,
            )
            parameters_path = write_template(parameters, Path(tmp) / "parameters.json")

            cmd = (
                AzCmd("deployment", "sub create")
                .param("--name", request.deployment_name)
                .param("--location", request.location)
                .param("--template-file", str(template_path))
                .param("--parameters", f"@{parameters_path}")
                .query("{provisioningState:properties.provisioningState, outputs:properties.outputs}")
            )
            logger.info(f"Deploying template as '{request.deployment_name}'")
            try:
                result = self.az.execute_json(cmd) or {}
            except AzCliError as e:
                details = self.deployment_error(request.deployment_name)
                raise DeploymentError(
                    f"Deployment '{request.deployment_name}' failed: {e}",
                    details=details,
                    rollback_commands=self._rollback_commands(request, resource_group_existed, locks_before),
                ) from e

        state = result.get("provisioningState")
        if state != SUCCEEDED:
            details = self.deployment_error(request.deployment_name)
            raise DeploymentError(
                f"Deployment '{request.deployment_name}' finished with state {state}",
                details=details,
                rollback_commands=self._rollback_commands(request, resource_group_existed, locks_before),
            )

        logger.info(f"✅ Template deployment {request.deployment_name} succeeded")
        outputs = {name: value.get("value") for name, value in (result.get("outputs") or {}).items()}
        outputs["deploymentName"] = request.deployment_name
        return {
            "resources": outputs,
            "rollback": self._rollback_commands(request, resource_group_existed, locks_before),
        }

    def deployment_error(self, deployment_name: str) -> Any:
        """Error payload recorded on a failed subscription deployment, if readable."""
        try:
            return self.az.execute_json(
                AzCmd("deployment", "sub show")
                .param("--name", deployment_name)
                .query("properties.error")
            )
        except AzCliError as e:
            logger.warning(f"Could not read error details for {deployment_name}: {e}")
            return None

    def _lock_names(self, resource_group: str) -> Set[str]:
        try:
            return {lock["name"] for lock in self.resource_groups.list_locks(resource_group)}
        except AzCliError as e:
            logger.warning(f"Could not list locks on {resource_group}: {e}")
            return set()

    def _rollback_commands(self, request: DeploymentRequest, resource_group_existed: bool,
                           locks_before: Set[str]) -> List[List[str]]:
        """Commands undoing what this deployment may have created, unlocking first.

        The built-in template names its lock "<group>-lock"; for an external
        template the locks it added are read back from the group.
        """
        if request.template_file:
            lock_names = sorted(self._lock_names(request.resource_group) - locks_before)
        elif request.enable_lock:
            lock_names = [f"{request.resource_group}-lock"]
        else:
            lock_names = []

        commands = [self.resource_groups.unlock_command(request.resource_group, name)
                    for name in lock_names]
        if resource_group_existed:
            commands.append(WorkspaceManager(az=self.az).delete_command(
                request.resource_group, request.workspace))
        else:
            commands.append(self.resource_groups.delete_command(request.resource_group))
        return commands


class CliDeploymentStrategy(SentinelDeploymentStrategy):
    """Deploy step by step with individual Azure CLI calls."""

    method = "cli"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.workspaces = WorkspaceManager(az=self.az)
        self.sentinel = SentinelManager(az=self.az)

    def phases(self, request: DeploymentRequest) -> List[DeploymentPhase]:
        return [
            DeploymentPhase.PROVIDERS,
            DeploymentPhase.RESOURCE_GROUP,
            DeploymentPhase.WORKSPACE,
            DeploymentPhase.SENTINEL,
            DeploymentPhase.DATA_CONNECTORS,
            DeploymentPhase.ALERT_RULES,
            DeploymentPhase.LOCK,
        ]

    def deploy(self, request: DeploymentRequest, subscription: Dict[str, Any]) -> Dict[str, Any]:
        deployment_id = self._start(request, subscription)
        outputs: Dict[str, Any] = {}

        logger.info("Phase 1: Resource providers")
        self._run_phase(DeploymentPhase.PROVIDERS, self._register_providers)

        logger.info("Phase 2: Resource group")
        group = self._run_phase(DeploymentPhase.RESOURCE_GROUP,
                                lambda: self._create_resource_group(request))
        resource_group_existed = group["existed"]
        outputs["resourceGroupName"] = request.resource_group

        logger.info("Phase 3: Log Analytics workspace")
        workspace = self._run_phase(DeploymentPhase.WORKSPACE,
                                    lambda: self._create_workspace(request))
        workspace_id = workspace["id"]
        outputs.update({
            "workspaceName": request.workspace,
            "workspaceId": workspace.get("customerId"),
            "workspaceResourceId": workspace_id,
        })

        logger.info("Phase 4: Microsoft Sentinel")
        if request.enable_sentinel:
            self._run_phase(DeploymentPhase.SENTINEL, lambda: self._onboard(workspace_id))
            outputs["sentinelEnabled"] = True
        else:
            logger.info("Sentinel enablement skipped")
            self.state_manager.skip_phase(DeploymentPhase.SENTINEL)
            outputs["sentinelEnabled"] = False

        if request.enable_sentinel and request.enable_connectors:
            logger.info("Phase 5: Data connectors")
            connectors = self._run_phase(
                DeploymentPhase.DATA_CONNECTORS,
                lambda: self._create_connectors(workspace_id, subscription),
            )
            outputs["dataConnectors"] = connectors["names"]
        else:
            self.state_manager.skip_phase(DeploymentPhase.DATA_CONNECTORS)

        if request.enable_sentinel and request.enable_alert_rule:
            logger.info("Phase 6: Example analytics rule")
            rule = self._run_phase(DeploymentPhase.ALERT_RULES,
                                   lambda: self._create_alert_rule(workspace_id))
            outputs["alertRules"] = [rule["name"]]
        else:
            self.state_manager.skip_phase(DeploymentPhase.ALERT_RULES)

        if request.enable_lock:
            logger.info("Phase 7: Resource group lock")
            self._run_phase(DeploymentPhase.LOCK, lambda: self._lock(request))
        else:
            self.state_manager.skip_phase(DeploymentPhase.LOCK)

        outputs["subscriptionId"] = subscription.get("id")
        return self._result(deployment_id, request, subscription, outputs, resource_group_existed)

    def _create_resource_group(self, request: DeploymentRequest) -> Dict[str, Any]:
        existed = self.resource_groups.exists(request.resource_group)
        if existed:
            logger.warning(f"Resource group '{request.resource_group}' already exists; continuing")
        group = self.resource_groups.create(request.resource_group, request.location,
                                            request.resource_group_tags())
        rollback = [] if existed else [self.resource_groups.delete_command(request.resource_group)]
        return {
            "resources": {"existed": existed, "id": (group or {}).get("id")},
            "rollback": rollback,
        }

    def _create_workspace(self, request: DeploymentRequest) -> Dict[str, Any]:
        workspace = self.workspaces.create(
            request.resource_group,
            request.workspace,
            request.location,
            sku=request.sku,
            retention_days=request.retention_days,
            tags=request.tags,
        )
        if not workspace or not workspace.get("id"):
            raise DeploymentError(f"Workspace '{request.workspace}' was not returned by the CLI")
        return {
            "resources": workspace,
            "rollback": [self.workspaces.delete_command(request.resource_group, request.workspace)],
        }

    def _onboard(self, workspace_id: str) -> Dict[str, Any]:
        self.sentinel.onboard(workspace_id)
        return {
            "resources": {"onboardingState": "default"},
            "rollback": [self.sentinel.delete_command(workspace_id, "onboardingStates", "default")],
        }

    def _create_connectors(self, workspace_id: str, subscription: Dict[str, Any]) -> Dict[str, Any]:
        names = self.sentinel.create_data_connectors(
            workspace_id, subscription.get("id", ""), subscription.get("tenantId", "")
        )
        return {
            "resources": {"names": names},
            "rollback": [self.sentinel.delete_command(workspace_id, "dataConnectors", name)
                         for name in names],
        }

    def _create_alert_rule(self, workspace_id: str) -> Dict[str, Any]:
        name = self.sentinel.create_example_alert_rule(workspace_id)
        return {
            "resources": {"name": name},
            "rollback": [self.sentinel.delete_command(workspace_id, "alertRules", name)],
        }

    def _lock(self, request: DeploymentRequest) -> Dict[str, Any]:
        lock_name = f"{request.resource_group}-lock"
        self.resource_groups.lock(request.resource_group, request.lock_type, lock_name)
        return {
            "resources": {"name": lock_name, "level": request.lock_type},
            "rollback": [self.resource_groups.unlock_command(request.resource_group, lock_name)],
        }


class SentinelDeploymentBuilder:
    """Builder for Sentinel deployments with different strategies."""

    def __init__(self, request: DeploymentRequest, method: str = "template",
                 az: Optional[AzureCliClient] = None,
                 state_manager: Optional[DeploymentStateManager] = None,
                 registrar: Optional[ProviderRegistrar] = None):
        self.request = request
        self.method = method
        self.az = az or get_az_client()
        self.state_manager = state_manager
        self.registrar = registrar
        self.subscriptions = SubscriptionManager(az=self.az)
        self.subscription: Optional[Dict[str, Any]] = None
        self.strategy = self._create_strategy()

    def _create_strategy(self) -> SentinelDeploymentStrategy:
        """Create deployment strategy based on method."""
        kwargs = {"az": self.az, "state_manager": self.state_manager, "registrar": self.registrar}
        if self.method == "template":
            return TemplateDeploymentStrategy(**kwargs)
        elif self.method == "cli":
            return CliDeploymentStrategy(**kwargs)
        else:
            raise ValueError(f"Unsupported deployment method: {self.method}")

    def authenticate(self) -> 'SentinelDeploymentBuilder':
        """Fail fast when the CLI is not logged in."""
        self.subscriptions.ensure_logged_in()
        return self

    def select_subscription(self, create_if_missing: bool = True) -> 'SentinelDeploymentBuilder':
        self.subscription = self.subscriptions.resolve(
            subscription_id=self.request.subscription_id,
            subscription_name=self.request.subscription_name,
            create_if_missing=create_if_missing,
        )
        logger.info(
            f"Using subscription: {self.subscription.get('name')} ({self.subscription.get('id')})"
        )
        return self

    @log_operation("Microsoft Sentinel deployment")
    def deploy(self) -> Dict[str, Any]:
        """Execute the deployment strategy."""
        if self.subscription is None:
            self.subscription = self.subscriptions.current()
        return self.strategy.deploy(self.request, self.subscription)

