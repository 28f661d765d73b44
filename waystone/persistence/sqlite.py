"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

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

_TABLES = (
    "workflows",
    "executions",
    "checkpoints",
    "change_entries",
    "dead_letters",
    "approvals",
    "artifacts",
    "notifications",
)


def _sort_key(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Each entity lives in its own table as a JSON document, next to the
    columns used for lookups and ordering.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for table in _TABLES:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    workflow_id TEXT,
                    status TEXT,
                    sort_at TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (user_id, id)
                )
                """
            )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _upsert(
        self,
        table: str,
        model: BaseModel,
        sort_at: datetime,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO {table} (id, user_id, workflow_id, status, sort_at, body)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, id) DO UPDATE SET
                workflow_id = excluded.workflow_id,
                status = excluded.status,
                sort_at = excluded.sort_at,
                body = excluded.body
            """,
            model.id,
            model.user_id,
            workflow_id,
            status,
            _sort_key(sort_at),
            model.model_dump_json(),
        )

    async def _get(
        self, table: str, model_type: Type[ModelT], user_id: str, item_id: str
    ) -> ModelT | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT body FROM {table} WHERE user_id = ? AND id = ?",
            user_id,
            item_id,
        )
        if not row:
            return None
        return model_type.model_validate_json(row["body"])

    async def _list(
        self,
        table: str,
        model_type: Type[ModelT],
        user_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[ModelT]:
        query = f"SELECT body FROM {table} WHERE user_id = ?"
        params: list[Any] = [user_id]
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY sort_at DESC, rowid DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [model_type.model_validate_json(row["body"]) for row in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._upsert(
            "workflows", workflow, workflow.updated_at, workflow.id, workflow.status
        )

    async def get_workflow(self, user_id: str, workflow_id: str) -> Workflow | None:
        return await self._get("workflows", Workflow, user_id, workflow_id)

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        return await self._list("workflows", Workflow, user_id)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await self._upsert(
            "executions",
            execution,
            execution.started_at,
            execution.workflow_id,
            execution.status,
        )

    async def get_execution(self, user_id: str, execution_id: str) -> WorkflowExecution | None:
        return await self._get("executions", WorkflowExecution, user_id, execution_id)

    async def list_executions(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        return await self._list("executions", WorkflowExecution, user_id, workflow_id=workflow_id)

    async def create_checkpoint(self, request: CheckpointRequest) -> None:
        await self._upsert(
            "checkpoints", request, request.created_at, request.workflow_id, request.status
        )

    async def get_checkpoint(self, user_id: str, request_id: str) -> CheckpointRequest | None:
        return await self._get("checkpoints", CheckpointRequest, user_id, request_id)

    async def list_checkpoints(
        self, user_id: str, status: Optional[str] = None
    ) -> list[CheckpointRequest]:
        return await self._list("checkpoints", CheckpointRequest, user_id, status=status)

    async def update_checkpoint(
        self, request: CheckpointRequest, expected_status: Optional[str] = None
    ) -> bool:
        query = "UPDATE checkpoints SET status = ?, body = ? WHERE user_id = ? AND id = ?"
        params: list[Any] = [
            request.status,
            request.model_dump_json(),
            request.user_id,
            request.id,
        ]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        updated = await asyncio.to_thread(self._execute, query, *params)
        return updated == 1

    async def append_change_entry(self, entry: WorkflowChangeEntry) -> None:
        await self._upsert("change_entries", entry, entry.created_at, entry.workflow_id)

    async def list_change_entries(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> list[WorkflowChangeEntry]:
        return await self._list(
            "change_entries", WorkflowChangeEntry, user_id, workflow_id=workflow_id
        )

    async def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        await self._upsert(
            "dead_letters", entry, entry.created_at, entry.workflow_id, entry.status
        )

    async def get_dead_letter(self, user_id: str, entry_id: str) -> DeadLetterEntry | None:
        return await self._get("dead_letters", DeadLetterEntry, user_id, entry_id)

    async def list_dead_letters(
        self, user_id: str, status: Optional[str] = None
    ) -> list[DeadLetterEntry]:
        return await self._list("dead_letters", DeadLetterEntry, user_id, status=status)

    async def delete_dead_letter(self, user_id: str, entry_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM dead_letters WHERE user_id = ? AND id = ?",
            user_id,
            entry_id,
        )

    async def save_approval(self, approval: ApprovalRequest) -> None:
        await self._upsert(
            "approvals", approval, approval.created_at, approval.workflow_id, approval.status
        )

    async def get_approval(self, user_id: str, request_id: str) -> ApprovalRequest | None:
        return await self._get("approvals", ApprovalRequest, user_id, request_id)

    async def list_approvals(
        self, user_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        return await self._list("approvals", ApprovalRequest, user_id, status=status)

    async def append_artifact(self, artifact: Artifact) -> None:
        await self._upsert("artifacts", artifact, artifact.created_at, artifact.workflow_id)

    async def list_artifacts(self, user_id: str) -> list[Artifact]:
        return await self._list("artifacts", Artifact, user_id)

    async def append_notification(self, notification: Notification) -> None:
        await self._upsert(
            "notifications",
            notification,
            notification.created_at,
            notification.workflow_id,
            "read" if notification.read else "unread",
        )

    async def list_notifications(self, user_id: str) -> list[Notification]:
        return await self._list("notifications", Notification, user_id)

    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        notification = await self._get("notifications", Notification, user_id, notification_id)
        if notification is None:
            return False
        notification.read = True
        await asyncio.to_thread(
            self._execute,
            "UPDATE notifications SET status = 'read', body = ? WHERE user_id = ? AND id = ?",
            notification.model_dump_json(),
            user_id,
            notification_id,
        )
        return True
