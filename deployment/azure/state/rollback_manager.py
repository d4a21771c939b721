"""
Azure deployment rollback management.

Replays the rollback commands recorded in deployment state, newest phase
first. Rollback is always requested explicitly; a failed deployment is left
in place until then.
"""

import logging
from typing import Any, Dict, List, Optional

from deployment.azure.state.state_manager import DeploymentStateManager
from deployment.azure.utils.az_cli import (
    AzCmd,
    AzCliError,
    AzureCliClient,
    ResourceNotFoundError,
    get_az_client,
)

logger = logging.getLogger(__name__)


def _command_from_args(args: List[str]) -> AzCmd:
    cmd = AzCmd(args[0], "")
    cmd.cmd.extend(args[1:])
    return cmd


class RollbackManager:
    """Manages rollback operations for Azure deployments."""

    def __init__(self, state_manager: Optional[DeploymentStateManager] = None,
                 az: Optional[AzureCliClient] = None):
        self.state_manager = state_manager or DeploymentStateManager()
        self.az = az or get_az_client()
        if self.state_manager.state is None:
            self.state_manager.load_state()

    def can_rollback(self) -> bool:
        """Check if rollback is possible."""
        state = self.state_manager.state
        return bool(
            state
            and state.status in ("failed", "completed", "in_progress")
            and self.state_manager.get_rollback_plan()
        )

    def create_rollback_plan(self) -> List[Dict[str, Any]]:
        return self.state_manager.get_rollback_plan()

    def execute_rollback(self, dry_run: bool = True) -> Dict[str, Any]:
        """Execute the rollback plan; dry runs only report what would run."""
        results = {
            "dry_run": dry_run,
            "success": [],
            "failed": [],
        }

        if not self.can_rollback():
            logger.info("No rollback actions needed")
            return results

        plan = self.create_rollback_plan()
        logger.info(f"Executing rollback plan ({len(plan)} phases)")
        if dry_run:
            logger.info("DRY RUN - No actual changes will be made")

        for step in plan:
            logger.info(f"Rolling back phase: {step['phase']}")
            for args in step["commands"]:
                az_cmd = _command_from_args(args)
                entry = {"phase": step["phase"], "command": str(az_cmd)}

                if dry_run:
                    results["success"].append({**entry, "status": "would_run"})
                    continue

                try:
                    self.az.execute(az_cmd)
                    results["success"].append({**entry, "status": "done"})
                    logger.info(f"Rollback command succeeded: {az_cmd}")
                except ResourceNotFoundError:
                    results["success"].append({**entry, "status": "already_gone"})
                    logger.info(f"Already removed: {az_cmd}")
                except AzCliError as e:
                    results["failed"].append({**entry, "error": str(e)})
                    logger.error(f"Rollback command failed: {az_cmd} - {e}")

        if not dry_run:
            if results["failed"]:
                logger.error("Rollback completed with errors")
            else:
                self.state_manager.mark_rolled_back()
                logger.info("Rollback completed successfully")

        return results
