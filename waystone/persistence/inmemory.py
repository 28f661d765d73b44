"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Optional, TypeVar

from pydantic import BaseModel

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
from .repository import WorkflowRepository

ModelT = TypeVar("ModelT", bound=BaseModel)


def _newest_first(items: list[ModelT], key: Callable[[ModelT], datetime]) -> list[ModelT]:
    # reversed() first so that equal timestamps list the latest insert first
    return sorted(reversed(items), key=key, reverse=True)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Models are deep-copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[tuple[str, str], BaseModel]] = defaultdict(dict)

    # ------------------------------------------------------------------
    def _put(self, table: str, user_id: str, model: BaseModel) -> None:
        self._tables[table][(user_id, model.id)] = model.model_copy(deep=True)

    def _get(self, table: str, user_id: str, item_id: str):
        model = self._tables[table].get((user_id, item_id))
        return model.model_copy(deep=True) if model is not None else None

    def _all(self, table: str, user_id: str) -> list:
        return [
            model.model_copy(deep=True)
            for (owner, _), model in self._tables[table].items()
            if owner == user_id
        ]

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._put("workflows", workflow.user_id, workflow)

    async def get_workflow(self, user_id: str, workflow_id: str) -> Workflow | None:
        return self._get("workflows", user_id, workflow_id)

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        return _newest_first(self._all("workflows", user_id), lambda wf: wf.updated_at)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._put("executions", execution.user_id, execution)

    async def get_execution(self, user_id: str, execution_id: str) -> WorkflowExecution | None:
        return self._get("executions", user_id, execution_id)

    async def list_executions(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        executions = [
            execution
            for execution in self._all("executions", user_id)
            if workflow_id is None or execution.workflow_id == workflow_id
        ]
        return _newest_first(executions, lambda execution: execution.started_at)

    async def create_checkpoint(self, request: CheckpointRequest) -> None:
        self._put("checkpoints", request.user_id, request)

    async def get_checkpoint(self, user_id: str, request_id: str) -> CheckpointRequest | None:
        return self._get("checkpoints", user_id, request_id)

    async def list_checkpoints(
        self, user_id: str, status: Optional[str] = None
    ) -> list[CheckpointRequest]:
        requests = [
            request
            for request in self._all("checkpoints", user_id)
            if status is None or request.status == status
        ]
        return _newest_first(requests, lambda request: request.created_at)

    async def update_checkpoint(
        self, request: CheckpointRequest, expected_status: Optional[str] = None
    ) -> bool:
        stored = self._tables["checkpoints"].get((request.user_id, request.id))
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._put("checkpoints", request.user_id, request)
        return True

    async def append_change_entry(self, entry: WorkflowChangeEntry) -> None:
        self._put("changes", entry.user_id, entry)

    async def list_change_entries(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowChangeEntry]:
        entries = [
            entry
            for entry in self._all("changes", user_id)
            if workflow_id is None or entry.workflow_id == workflow_id
        ]
        return _newest_first(entries, lambda entry: entry.created_at)

    async def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        self._put("dead_letters", entry.user_id, entry)

    async def get_dead_letter(self, user_id: str, entry_id: str) -> DeadLetterEntry | None:
        return self._get("dead_letters", user_id, entry_id)

    async def list_dead_letters(
        self, user_id: str, status: Optional[str] = None
    ) -> list[DeadLetterEntry]:
        entries = [
            entry
            for entry in self._all("dead_letters", user_id)
            if status is None or entry.status == status
        ]
        return _newest_first(entries, lambda entry: entry.created_at)

    async def delete_dead_letter(self, user_id: str, entry_id: str) -> None:
        self._tables["dead_letters"].pop((user_id, entry_id), None)

    async def save_approval(self, approval: ApprovalRequest) -> None:
        self._put("approvals", approval.user_id, approval)

    async def get_approval(self, user_id: str, request_id: str) -> ApprovalRequest | None:
        return self._get("approvals", user_id, request_id)

    async def list_approvals(
        self, user_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        approvals = [
            approval
            for approval in self._all("approvals", user_id)
            if status is None or approval.status == status
        ]
        return _newest_first(approvals, lambda approval: approval.created_at)

    async def append_artifact(self, artifact: Artifact) -> None:
        self._put("artifacts", artifact.user_id, artifact)

    async def list_artifacts(self, user_id: str) -> list[Artifact]:
        return _newest_first(self._all("artifacts", user_id), lambda item: item.created_at)

    async def append_notification(self, notification: Notification) -> None:
        self._put("notifications", notification.user_id, notification)

    async def list_notifications(self, user_id: str) -> list[Notification]:
        return _newest_first(self._all("notifications", user_id), lambda item: item.created_at)

    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        stored = self._tables["notifications"].get((user_id, notification_id))
        if stored is None:
            return False
        stored.read = True
        return True
