"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import (
    ApprovalRequest,
    Artifact,
    CheckpointRequest,
    DeadLetterEntry,
    Notification,
    Workflow,
    WorkflowChangeEntry,
    WorkflowExecution,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every entity is scoped by ``user_id``. Returned models are copies; callers
    persist changes through the ``save_*``/``update_*`` methods.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, user_id: str, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        """Return the user's workflows, most recently updated first."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Insert or replace an execution record."""

    async def get_execution(self, user_id: str, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    async def create_checkpoint(self, request: CheckpointRequest) -> None:
        """Persist a new checkpoint request."""

    async def get_checkpoint(self, user_id: str, request_id: str) -> CheckpointRequest | None:
        """Retrieve a checkpoint request by id."""

    async def list_checkpoints(
        self, user_id: str, status: Optional[str] = None
    ) -> list[CheckpointRequest]:
        """Return checkpoint requests, newest first."""

    async def update_checkpoint(
        self, request: CheckpointRequest, expected_status: Optional[str] = None
    ) -> bool:
        """Replace a checkpoint request.

        When ``expected_status`` is given the write only happens if the stored
        status still matches; returns whether the write happened.
        """

    async def append_change_entry(self, entry: WorkflowChangeEntry) -> None:
        """Append a change-history entry."""

    async def list_change_entries(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowChangeEntry]:
        """Return change entries, newest first."""

    async def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        """Insert or replace a dead-letter entry."""

    async def get_dead_letter(self, user_id: str, entry_id: str) -> DeadLetterEntry | None:
        """Retrieve a dead-letter entry by id."""

    async def list_dead_letters(
        self, user_id: str, status: Optional[str] = None
    ) -> list[DeadLetterEntry]:
        """Return dead-letter entries, newest first."""

    async def delete_dead_letter(self, user_id: str, entry_id: str) -> None:
        """Drop a dead-letter entry (used for retention trimming)."""

    async def save_approval(self, approval: ApprovalRequest) -> None:
        """Insert or replace an approval request."""

    async def get_approval(self, user_id: str, request_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def list_approvals(
        self, user_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        """Return approval requests, newest first."""

    async def append_artifact(self, artifact: Artifact) -> None:
        """Persist a published artifact."""

    async def list_artifacts(self, user_id: str) -> list[Artifact]:
        """Return artifacts, newest first."""

    async def append_notification(self, notification: Notification) -> None:
        """Persist a notification."""

    async def list_notifications(self, user_id: str) -> list[Notification]:
        """Return notifications, newest first."""

    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        """Flag a notification as read; returns whether it existed."""
