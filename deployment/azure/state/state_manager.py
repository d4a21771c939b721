"""
Deployment state management and tracking.

Tracks deployment phases, the resources each phase created and the Azure CLI
commands that undo them, so a failed or unwanted deployment can be rolled
back in LIFO order.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DeploymentPhase(Enum):
    """Deployment phases in order."""
    PROVIDERS = "providers"
    RESOURCE_GROUP = "resource_group"
    WORKSPACE = "workspace"
    SENTINEL = "sentinel"
    DATA_CONNECTORS = "data_connectors"
    ALERT_RULES = "alert_rules"
    LOCK = "lock"
    TEMPLATE_DEPLOYMENT = "template_deployment"


class DeploymentStatus(Enum):
    """Deployment status for each phase."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


ROLLBACK_ELIGIBLE = (DeploymentStatus.COMPLETED.value, DeploymentStatus.FAILED.value)


@dataclass
class PhaseState:
    """State of a single deployment phase."""
    phase: str
    status: str
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    resources: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    rollback_commands: List[List[str]] = field(default_factory=list)


@dataclass
class DeploymentState:
    """Complete deployment state tracking."""
    deployment_id: str
    method: str
    started_at: float
    phases: Dict[str, PhaseState] = field(default_factory=dict)
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    workspace: Optional[str] = None
    current_phase: Optional[str] = None
    status: str = "in_progress"
    completed_at: Optional[float] = None
    total_duration: Optional[float] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class DeploymentStateManager:
    """Manages deployment state tracking for rollback and status reporting."""

    def __init__(self, state_file: str = ".deployment_state.json"):
        self.state_file = Path(state_file)
        self.state: Optional[DeploymentState] = None

    def start_deployment(self, deployment_id: str, method: str,
                         subscription_id: Optional[str] = None,
                         resource_group: Optional[str] = None,
                         workspace: Optional[str] = None,
                         phases: Optional[List[DeploymentPhase]] = None) -> DeploymentState:
        """Start tracking a new deployment over the given phases (default: all)."""
        self.state = DeploymentState(
            deployment_id=deployment_id,
            method=method,
            started_at=time.time(),
            subscription_id=subscription_id,
            resource_group=resource_group,
            workspace=workspace,
        )

        for phase in phases or list(DeploymentPhase):
            self.state.phases[phase.value] = PhaseState(
                phase=phase.value,
                status=DeploymentStatus.PENDING.value
            )

        self._save_state()
        logger.info(f"Started deployment tracking: {deployment_id} ({method})")
        return self.state

    def _require_state(self) -> DeploymentState:
        if not self.state:
            raise ValueError("No active deployment")
        return self.state

    def start_phase(self, phase: DeploymentPhase) -> None:
        """Mark a phase as started."""
        state = self._require_state()

        phase_state = state.phases[phase.value]
        phase_state.status = DeploymentStatus.IN_PROGRESS.value
        phase_state.started_at = time.time()

        state.current_phase = phase.value
        self._save_state()

        logger.info(f"Phase started: {phase.value}")

    def complete_phase(self, phase: DeploymentPhase, resources: Optional[Dict[str, Any]] = None,
                       rollback_commands: Optional[List[List[str]]] = None) -> None:
        """Mark a phase as completed with resource tracking."""
        state = self._require_state()

        phase_state = state.phases[phase.value]
        phase_state.status = DeploymentStatus.COMPLETED.value
        phase_state.completed_at = time.time()

        if phase_state.started_at:
            phase_state.duration_seconds = phase_state.completed_at - phase_state.started_at

        if resources:
            phase_state.resources.update(resources)

        if rollback_commands:
            phase_state.rollback_commands.extend(rollback_commands)

        self._save_state()

        duration_str = f" in {phase_state.duration_seconds:.1f}s" if phase_state.duration_seconds else ""
        logger.info(f"Phase completed: {phase.value}{duration_str}")

    def skip_phase(self, phase: DeploymentPhase) -> None:
        state = self._require_state()
        state.phases[phase.value].status = DeploymentStatus.SKIPPED.value
        self._save_state()

    def fail_phase(self, phase: DeploymentPhase, error_message: str,
                   rollback_commands: Optional[List[List[str]]] = None) -> None:
        """Mark a phase as failed.

        rollback_commands covers resources the failed step may still have left behind.
        """
        state = self._require_state()

        phase_state = state.phases[phase.value]
        phase_state.status = DeploymentStatus.FAILED.value
        phase_state.error_message = error_message
        if rollback_commands:
            phase_state.rollback_commands = rollback_commands
        phase_state.completed_at = time.time()

        if phase_state.started_at:
            phase_state.duration_seconds = phase_state.completed_at - phase_state.started_at

        state.status = "failed"
        state.error = error_message
        state.completed_at = time.time()
        state.total_duration = state.completed_at - state.started_at

        self._save_state()

        logger.error(f"Phase failed: {phase.value} - {error_message}")

    def complete_deployment(self, outputs: Optional[Dict[str, Any]] = None) -> None:
        """Mark the entire deployment as completed."""
        state = self._require_state()

        state.status = "completed"
        state.completed_at = time.time()
        state.total_duration = state.completed_at - state.started_at
        state.current_phase = None
        if outputs:
            state.outputs.update(outputs)

        self._save_state()

        logger.info(f"Deployment completed: {state.deployment_id} in {state.total_duration:.1f}s")

    def load_state(self) -> Optional[DeploymentState]:
        """Load deployment state from file."""
        if not self.state_file.exists():
            return None

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            data['phases'] = {
                name: PhaseState(**phase_data)
                for name, phase_data in data.get('phases', {}).items()
            }
            self.state = DeploymentState(**data)

            logger.debug(f"Loaded deployment state: {self.state.deployment_id}")
            return self.state

        except (json.JSONDecodeError, TypeError, KeyError, OSError) as e:
            logger.warning(f"Failed to load deployment state from {self.state_file}: {e}")

        return None

    def _save_state(self) -> None:
        """Save deployment state to file."""
        if not self.state:
            return

        try:
            with open(self.state_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save deployment state: {e}")

    def get_rollback_plan(self) -> List[Dict[str, Any]]:
        """Generate LIFO rollback plan over completed phases and failed phases that left resources."""
        if not self.state:
            return []

        rollback_plan = []

        phase_order = list(DeploymentPhase)
        phase_order.reverse()

        for phase in phase_order:
            phase_state = self.state.phases.get(phase.value)
            if (phase_state and
                    phase_state.status in ROLLBACK_ELIGIBLE and
                    phase_state.rollback_commands):

                rollback_plan.append({
                    "phase": phase.value,
                    "commands": phase_state.rollback_commands,
                    "resources": phase_state.resources
                })

        return rollback_plan

    def mark_rolled_back(self) -> None:
        """Mark rolled back phases in state."""
        if not self.state:
            return

        for phase_state in self.state.phases.values():
            if (phase_state.status == DeploymentStatus.COMPLETED.value or
                    (phase_state.status == DeploymentStatus.FAILED.value and phase_state.rollback_commands)):
                phase_state.status = DeploymentStatus.ROLLED_BACK.value

        self.state.status = "rolled_back"
        self._save_state()

    def cleanup_state_file(self) -> None:
        """Remove deployment state file."""
        if self.state_file.exists():
            self.state_file.unlink()
            logger.info(f"Cleaned up state file: {self.state_file}")

    def get_status_summary(self) -> Dict[str, Any]:
        """Get deployment status summary."""
        if not self.state:
            return {"status": "no_deployment"}

        tracked = [p for p in self.state.phases.values()
                   if p.status != DeploymentStatus.SKIPPED.value]
        completed_phases = sum(1 for phase in tracked
                               if phase.status == DeploymentStatus.COMPLETED.value)

        return {
            "deployment_id": self.state.deployment_id,
            "method": self.state.method,
            "status": self.state.status,
            "subscription_id": self.state.subscription_id,
            "resource_group": self.state.resource_group,
            "workspace": self.state.workspace,
            "current_phase": self.state.current_phase,
            "progress": f"{completed_phases}/{len(tracked)}",
            "duration": self.state.total_duration,
            "started_at": datetime.fromtimestamp(self.state.started_at).isoformat(),
            "error": self.state.error,
            "phases": {
                name: {
                    "status": phase.status,
                    "duration": phase.duration_seconds,
                    "error": phase.error_message
                } for name, phase in self.state.phases.items()
            }
        }


def create_deployment_id(prefix: str) -> str:
    """Create unique deployment ID."""
    return f"{prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
