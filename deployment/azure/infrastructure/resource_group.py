"""Resource group creation, inspection, locking and deletion."""
import logging
from typing import Any, Dict, List, Optional

from deployment.azure.utils.az_cli import (
    AzCmd,
    AzureCliClient,
    ResourceNotFoundError,
    get_az_client,
)

logger = logging.getLogger(__name__)


def format_tags(tags: Dict[str, str]) -> List[str]:
    """Render a tag dict as the key=value list the CLI expects."""
    return [f"{key}={value}" for key, value in tags.items()]


class ResourceGroupManager:
    """Manages a single resource group through the Azure CLI."""

    def __init__(self, az: Optional[AzureCliClient] = None):
        self.az = az or get_az_client()

    def exists(self, name: str) -> bool:
        output = self.az.execute_tsv(AzCmd("group", "exists").param("--name", name))
        return output.lower() == "true"

    def show(self, name: str) -> Optional[Dict[str, Any]]:
        """Name, location, id, tags and provisioning state; None when absent."""
        try:
            return self.az.execute_json(
                AzCmd("group", "show")
                .param("--name", name)
                .query("{name:name, location:location, id:id, tags:tags, "
                       "provisioningState:properties.provisioningState}")
            )
        except ResourceNotFoundError:
            return None

    def create(self, name: str, location: str,
               tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create or update the resource group (the CLI call is idempotent)."""
        cmd = (
            AzCmd("group", "create")
            .param("--name", name)
            .param("--location", location)
        )
        if tags:
            cmd.param_list("--tags", format_tags(tags))
        group = self.az.execute_json(cmd)
        logger.info(f"Resource group ready: {name} ({location})")
        return group

    def lock(self, name: str, lock_type: str = "CanNotDelete",
             lock_name: Optional[str] = None) -> Dict[str, Any]:
        lock_name = lock_name or f"{name}-lock"
        result = self.az.execute_json(
            AzCmd("lock", "create")
            .param("--name", lock_name)
            .param("--lock-type", lock_type)
            .param("--resource-group", name)
            .param("--notes", "Protects security monitoring resources")
        )
        logger.info(f"Applied {lock_type} lock '{lock_name}' to {name}")
        return result

    def list_locks(self, name: str) -> List[Dict[str, Any]]:
        try:
            return self.az.execute_json(
                AzCmd("lock", "list")
                .param("--resource-group", name)
                .query("[].{name:name, level:level}")
            ) or []
        except ResourceNotFoundError:
            return []

    def delete_command(self, name: str) -> List[str]:
        return AzCmd("group", "delete").param("--name", name).flag("--yes").flag("--no-wait").cmd

    def unlock_command(self, name: str, lock_name: str) -> List[str]:
        return (
            AzCmd("lock", "delete")
            .param("--name", lock_name)
            .param("--resource-group", name)
            .cmd
        )
