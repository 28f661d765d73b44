"""Append-only change history of workflow definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from .constants import DEFAULT_HISTORY_LIMIT
from .contracts import (
    BranchSnapshot,
    ChangeType,
    DefinitionSnapshot,
    StepSnapshot,
    Workflow,
    WorkflowChangeDiff,
    WorkflowChangeEntry,
    utcnow,
)
from .errors import WorkflowValidationError
from .persistence import WorkflowRepository
from .plan_graph import ensure_plan_graph

logger = logging.getLogger(__name__)


def snapshot_workflow(workflow: Workflow, captured_at: Optional[datetime] = None) -> DefinitionSnapshot:
    """Capture the diffable content of ``workflow``."""
    graph = ensure_plan_graph(workflow)
    return DefinitionSnapshot(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        entry_step_id=graph.entry_step_id,
        step_snapshots=[
            StepSnapshot(
                id=step.id,
                title=step.title,
                description=step.description,
                kind=step.kind,
                action_id=step.action_id,
                input_template=step.input_template,
            )
            for step in workflow.steps
        ],
        branch_snapshots=[
            BranchSnapshot(
                id=branch.id,
                from_step_id=branch.from_step_id,
                to_step_id=branch.to_step_id,
                label=branch.label,
                priority=branch.priority,
                operator=branch.condition.operator,
                source_path=branch.condition.source_path,
                value=branch.condition.value,
                number_comparator=branch.condition.number_comparator,
                case_sensitive=branch.condition.case_sensitive,
                regex_flags=branch.condition.regex_flags,
            )
            for branch in graph.branches
        ],
        captured_at=captured_at or utcnow(),
    )


def _diff_by_id(
    before: List[BaseModel], after: List[BaseModel]
) -> tuple[List[str], List[str], List[str]]:
    before_by_id: Dict[str, Dict[str, Any]] = {item.id: item.model_dump() for item in before}
    after_by_id: Dict[str, Dict[str, Any]] = {item.id: item.model_dump() for item in after}

    added = sorted(set(after_by_id) - set(before_by_id))
    removed = sorted(set(before_by_id) - set(after_by_id))
    changed = sorted(
        item_id
        for item_id in set(before_by_id) & set(after_by_id)
        if before_by_id[item_id] != after_by_id[item_id]
    )
    return added, removed, changed


def diff_snapshots(
    before: Optional[DefinitionSnapshot], after: Optional[DefinitionSnapshot]
) -> WorkflowChangeDiff:
    """Compare two snapshots by id and content.

    Position is not part of a step's content, so reordering steps without
    editing them yields an empty diff.
    """
    added_steps, removed_steps, changed_steps = _diff_by_id(
        before.step_snapshots if before else [], after.step_snapshots if after else []
    )
    added_branches, removed_branches, changed_branches = _diff_by_id(
        before.branch_snapshots if before else [], after.branch_snapshots if after else []
    )
    return WorkflowChangeDiff(
        added_step_ids=added_steps,
        removed_step_ids=removed_steps,
        changed_step_ids=changed_steps,
        added_branch_ids=added_branches,
        removed_branch_ids=removed_branches,
        changed_branch_ids=changed_branches,
    )


def _entry_snapshot(entry: WorkflowChangeEntry) -> DefinitionSnapshot:
    snapshot = entry.after_snapshot or entry.before_snapshot
    if snapshot is None:
        raise WorkflowValidationError(f"Change entry {entry.id} has no definition snapshot.")
    return snapshot


class ChangeHistory:
    """Records every definition edit and diffs any two recorded versions."""

    def __init__(
        self, repository: WorkflowRepository, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def append(
        self,
        *,
        user_id: str,
        workflow_id: str,
        change_type: ChangeType,
        summary: str,
        before_snapshot: Optional[DefinitionSnapshot] = None,
        after_snapshot: Optional[DefinitionSnapshot] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowChangeEntry:
        entry = WorkflowChangeEntry(
            user_id=user_id,
            workflow_id=workflow_id,
            change_type=change_type,
            summary=summary,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            metadata=metadata or {},
            created_at=self._clock(),
        )
        await self._repository.append_change_entry(entry)
        logger.debug(f"Recorded {change_type} for workflow {workflow_id}: {summary}")
        return entry

    async def record_save(
        self, *, before: Optional[Workflow], after: Workflow, summary: Optional[str] = None
    ) -> WorkflowChangeEntry:
        now = self._clock()
        change_type: ChangeType = "plan_modified" if before else "workflow_created"
        if summary is None:
            summary = (
                f"Workflow {after.name} plan updated." if before else f"Workflow {after.name} created."
            )
        return await self.append(
            user_id=after.user_id,
            workflow_id=after.id,
            change_type=change_type,
            summary=summary,
            before_snapshot=snapshot_workflow(before, now) if before else None,
            after_snapshot=snapshot_workflow(after, now),
        )

    async def list(
        self, user_id: str, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[WorkflowChangeEntry]:
        """Entries newest first, at most ``limit`` of them."""
        entries = await self._repository.list_change_entries(user_id, workflow_id)
        return entries[: max(0, limit)]

    def diff(self, left: WorkflowChangeEntry, right: WorkflowChangeEntry) -> WorkflowChangeDiff:
        """Diff the definitions recorded by two entries of the same workflow."""
        if left.workflow_id != right.workflow_id:
            raise WorkflowValidationError(
                f"Cannot diff change entries of different workflows "
                f"({left.workflow_id} vs {right.workflow_id})."
            )
        return diff_snapshots(_entry_snapshot(left), _entry_snapshot(right))
