"""
Deployment status checking and health monitoring.

Reports on the resources of a deployed security monitoring stack: provider
registration, resource group, workspace, Sentinel onboarding and the
resource group lock.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from deployment.azure.infrastructure.providers import REGISTERED, ProviderRegistrar
from deployment.azure.infrastructure.resource_group import ResourceGroupManager
from deployment.azure.infrastructure.sentinel import SentinelManager
from deployment.azure.infrastructure.workspace import WorkspaceManager
from deployment.azure.utils.az_cli import AzCliError, AzureCliClient, get_az_client

logger = logging.getLogger(__name__)

SUCCEEDED = "Succeeded"


class StatusMonitor:
    """Monitor deployment health and status of Azure resources."""

    def __init__(self, az: Optional[AzureCliClient] = None):
        self.az = az or get_az_client()
        self.providers = ProviderRegistrar(az=self.az)
        self.resource_groups = ResourceGroupManager(az=self.az)
        self.workspaces = WorkspaceManager(az=self.az)
        self.sentinel = SentinelManager(az=self.az)

    def check_deployment_health(self, resource_group: str, workspace: str) -> Dict[str, Any]:
        """
        Check overall deployment health across all components.

        Returns:
            Dict containing health status of all components
        """
        health_report = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'overall_status': 'healthy',
            'components': {},
            'warnings': [],
            'errors': []
        }

        checks = [
            ('providers', self._check_providers, ()),
            ('resource_group', self._check_resource_group, (resource_group,)),
            ('workspace', self._check_workspace, (resource_group, workspace)),
        ]

        workspace_id = None
        for name, check, args in checks:
            try:
                status = check(*args)
            except AzCliError as e:
                status = {'status': 'error', 'error': str(e)}
                health_report['errors'].append(f"{name} check failed: {e}")
            health_report['components'][name] = status
            if name == 'workspace':
                workspace_id = status.get('id')

        if workspace_id:
            try:
                health_report['components']['sentinel'] = self._check_sentinel(workspace_id)
            except AzCliError as e:
                health_report['components']['sentinel'] = {'status': 'error', 'error': str(e)}
                health_report['errors'].append(f"sentinel check failed: {e}")
        else:
            health_report['components']['sentinel'] = {
                'status': 'error',
                'error': 'Workspace not available'
            }

        try:
            health_report['components']['lock'] = self._check_lock(resource_group)
        except AzCliError as e:
            health_report['components']['lock'] = {'status': 'error', 'error': str(e)}

        for name, status in health_report['components'].items():
            if status.get('errors'):
                health_report['errors'].extend(status['errors'])
            if status.get('warnings'):
                health_report['warnings'].extend(status['warnings'])

        health_report['overall_status'] = self._overall_status(health_report['components'])
        logger.info(f"Deployment health for {resource_group}: {health_report['overall_status']}")
        return health_report

    @staticmethod
    def _overall_status(components: Dict[str, Dict[str, Any]]) -> str:
        statuses = {c.get('status') for c in components.values()}
        core = [components.get(k, {}).get('status') for k in ('resource_group', 'workspace')]
        if 'error' in core:
            return 'unhealthy'
        if statuses - {'healthy'}:
            return 'degraded'
        return 'healthy'

    def _check_providers(self) -> Dict[str, Any]:
        states = self.providers.get_states()
        unregistered = {ns: state for ns, state in states.items() if state != REGISTERED}
        return {
            'status': 'healthy' if not unregistered else 'degraded',
            'providers': states,
            'errors': [f"Provider {ns} is {state}" for ns, state in unregistered.items()],
        }

    def _check_resource_group(self, name: str) -> Dict[str, Any]:
        group = self.resource_groups.show(name)
        if not group:
            return {'status': 'error', 'error': f"Resource group '{name}' not found"}

        healthy = group.get('provisioningState') == SUCCEEDED
        return {
            'status': 'healthy' if healthy else 'degraded',
            'name': group.get('name'),
            'location': group.get('location'),
            'id': group.get('id'),
            'provisioning_state': group.get('provisioningState'),
        }

    def _check_workspace(self, resource_group: str, name: str) -> Dict[str, Any]:
        workspace = self.workspaces.show(resource_group, name)
        if not workspace:
            return {'status': 'error', 'error': f"Workspace '{name}' not found"}

        healthy = workspace.get('provisioningState') == SUCCEEDED
        return {
            'status': 'healthy' if healthy else 'degraded',
            'id': workspace.get('id'),
            'customer_id': workspace.get('customerId'),
            'sku': workspace.get('sku'),
            'retention_days': workspace.get('retentionInDays'),
            'provisioning_state': workspace.get('provisioningState'),
        }

    def _check_sentinel(self, workspace_id: str) -> Dict[str, Any]:
        onboarding = self.sentinel.get_onboarding_state(workspace_id)
        if not onboarding:
            return {
                'status': 'warning',
                'enabled': False,
                'warnings': ["Microsoft Sentinel is not enabled on the workspace"],
            }
        return {'status': 'healthy', 'enabled': True}

    def _check_lock(self, resource_group: str) -> Dict[str, Any]:
        locks = self.resource_groups.list_locks(resource_group)
        if not locks:
            return {
                'status': 'warning',
                'locks': [],
                'warnings': [f"Resource group '{resource_group}' has no management lock"],
            }
        return {'status': 'healthy', 'locks': locks}
