"""Waystone: workflow orchestration with checkpoints, triggers and a dead-letter queue."""

from .background import BackgroundRunner
from .checkpoints import CheckpointManager
from .config import WaystoneConfig, load_config
from .connectors import ConnectorInvoker, ConnectorRegistry, ConnectorResult
from .contracts import Branch, Condition, PlanGraph, Step, Trigger, Workflow, WorkflowExecution
from .dead_letter import DeadLetterQueue
from .engine import CheckpointResolution, WorkflowEngine
from .history import ChangeHistory
from .persistence import get_repository
from .triggers import TriggerEvent, TriggerManager

__version__ = "0.1.0"
__all__ = [
    "BackgroundRunner",
    "Branch",
    "ChangeHistory",
    "CheckpointManager",
    "CheckpointResolution",
    "Condition",
    "ConnectorInvoker",
    "ConnectorRegistry",
    "ConnectorResult",
    "DeadLetterQueue",
    "PlanGraph",
    "Step",
    "Trigger",
    "TriggerEvent",
    "TriggerManager",
    "WaystoneConfig",
    "Workflow",
    "WorkflowEngine",
    "WorkflowExecution",
    "get_repository",
    "load_config",
]
