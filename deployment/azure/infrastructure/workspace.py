"""Log Analytics workspace management."""
import logging
from typing import Any, Dict, List, Optional

from deployment.azure.infrastructure.resource_group import format_tags
from deployment.azure.utils.az_cli import (
    AzCmd,
    AzureCliClient,
    ResourceNotFoundError,
    get_az_client,
)

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates and inspects the Log Analytics workspace backing Sentinel."""

    def __init__(self, az: Optional[AzureCliClient] = None):
        self.az = az or get_az_client()

    def create(self, resource_group: str, name: str, location: str,
               sku: str = "PerGB2018", retention_days: int = 90,
               tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create the workspace and return its id, customerId and state."""
        cmd = (
            AzCmd("monitor", "log-analytics workspace create")
            .param("--resource-group", resource_group)
            .param("--workspace-name", name)
            .param("--location", location)
            .param("--sku", sku)
            .param("--retention-time", retention_days)
            .query("{id:id, customerId:customerId, provisioningState:provisioningState}")
        )
        if tags:
            cmd.param_list("--tags", format_tags(tags))

        workspace = self.az.execute_json(cmd)
        logger.info(
            f"Log Analytics workspace {name} created "
            f"(SKU {sku}, retention {retention_days} days)"
        )
        return workspace

    def show(self, resource_group: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.az.execute_json(
                AzCmd("monitor", "log-analytics workspace show")
                .param("--resource-group", resource_group)
                .param("--workspace-name", name)
                .query("{id:id, customerId:customerId, provisioningState:provisioningState, "
                       "sku:sku.name, retentionInDays:retentionInDays, location:location}")
            )
        except ResourceNotFoundError:
            return None

    def delete_command(self, resource_group: str, name: str) -> List[str]:
        return (
            AzCmd("monitor", "log-analytics workspace delete")
            .param("--resource-group", resource_group)
            .param("--workspace-name", name)
            .param("--force", "true")
            .flag("--yes")
            .cmd
        )
