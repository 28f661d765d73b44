"""Exception taxonomy for waystone."""

from __future__ import annotations

from typing import List, Optional


class WaystoneError(Exception):
    """Base class for all waystone errors."""


class WorkflowValidationError(WaystoneError):
    """A workflow definition failed authoring-time validation."""


class PlanGraphCycleError(WorkflowValidationError):
    """The plan graph contains a cycle."""

    def __init__(self, cycle_path: List[str]) -> None:
        self.cycle_path = list(cycle_path)
        super().__init__(f"Plan graph contains a cycle: {' -> '.join(cycle_path)}")


class NotFoundError(WaystoneError):
    """A requested entity does not exist."""


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found.")


class StepNotFoundError(NotFoundError):
    def __init__(self, step_id: str, workflow_id: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step {step_id} not found in workflow {workflow_id}.")


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found.")


class CheckpointNotFoundError(NotFoundError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Checkpoint request {request_id} not found.")


class ApprovalNotFoundError(NotFoundError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Approval request {request_id} not found.")


class DeadLetterNotFoundError(NotFoundError):
    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Dead-letter entry {entry_id} not found.")


class WorkflowConflictError(WaystoneError):
    """The requested transition conflicts with the current state."""


class CheckpointConflictError(WorkflowConflictError):
    """A checkpoint request was already resolved."""

    def __init__(self, request_id: str, status: Optional[str] = None) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Checkpoint request {request_id} is already resolved (status={status})."
        )


class BackgroundRunError(WaystoneError):
    """A background run ended without a usable execution."""
