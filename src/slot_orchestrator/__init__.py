"""Slot orchestrator: isolated development slots with supervised stacks and agent sessions."""

__version__ = "0.1.0"

from .errors import OrchestratorError
from .models import AgentStatus, OrchestratorConfig, ProjectConfig, Slot, SlotStatus
from .slot_manager import SlotManager

__all__ = [
    "AgentStatus",
    "OrchestratorConfig",
    "OrchestratorError",
    "ProjectConfig",
    "Slot",
    "SlotManager",
    "SlotStatus",
    "__version__",
]
