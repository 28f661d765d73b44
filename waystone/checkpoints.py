"""Human review checkpoints that suspend a run until a reviewer decides."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .connectors import parse_connector_action_id
from .constants import WORKFLOW_COMPLETE_ACTION
from .contracts import (
    CheckpointDecision,
    CheckpointRequest,
    CheckpointStatus,
    ProposedAction,
    RiskLevel,
    Step,
    StepResult,
    Workflow,
    WorkflowExecution,
    utcnow,
)
from .errors import CheckpointConflictError, CheckpointNotFoundError, StepNotFoundError
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

_DECISION_STATUS: dict[str, CheckpointStatus] = {
    "approve": "approved",
    "reject": "rejected",
    "edit": "edited",
}


def assess_risk(previous: Sequence[StepResult], remaining_step_ids: Sequence[str]) -> RiskLevel:
    if any(result.status == "failed" for result in previous):
        return "high"
    connector_calls = 0
    for result in previous:
        try:
            parse_connector_action_id(str(result.output_payload.get("action_id", "")))
        except ValueError:
            continue
        connector_calls += 1
    if connector_calls >= 2 or len(remaining_step_ids) >= 3:
        return "medium"
    return "low"


def describe_risk(risk_level: RiskLevel, step: Step) -> str:
    if risk_level == "high":
        return f"Checkpoint {step.title} flagged high risk based on earlier step outcomes."
    if risk_level == "medium":
        return f"Checkpoint {step.title} requires review before continuing through remaining steps."
    return f"Checkpoint {step.title} is a low-risk human confirmation gate."


def proposed_action_for(next_step: Optional[Step]) -> ProposedAction:
    if next_step is None:
        return ProposedAction(
            title="Complete workflow",
            description="No remaining steps after this checkpoint.",
            action_id=WORKFLOW_COMPLETE_ACTION,
        )
    return ProposedAction(
        title=next_step.title,
        description=next_step.description,
        action_id=next_step.action_id,
        input_template=next_step.input_template,
    )


def merge_edited_action(base: ProposedAction, edited: Optional[ProposedAction]) -> ProposedAction:
    """Overlay a reviewer's edit on the proposed action; blank fields keep the base."""
    if edited is None:
        return base
    return ProposedAction(
        title=edited.title.strip() or base.title,
        description=edited.description.strip() or base.description,
        action_id=edited.action_id.strip() or base.action_id,
        input_template=(
            edited.input_template if edited.input_template is not None else base.input_template
        ),
    )


class CheckpointManager:
    """Owns the pending -> approved/rejected/edited lifecycle of checkpoints.

    The manager is passive: the engine creates requests when a run reaches a
    checkpoint step and resolves them on behalf of a reviewer.
    """

    def __init__(
        self, repository: WorkflowRepository, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def create(
        self,
        *,
        workflow: Workflow,
        execution: WorkflowExecution,
        checkpoint_step_id: str,
        next_step_id: Optional[str],
        remaining_step_ids: Sequence[str],
    ) -> CheckpointRequest:
        step = workflow.get_step(checkpoint_step_id)
        if step is None:
            raise StepNotFoundError(checkpoint_step_id, workflow.id)

        previous = [result.model_copy(deep=True) for result in execution.step_results]
        risk_level = assess_risk(previous, remaining_step_ids)
        request = CheckpointRequest(
            user_id=execution.user_id,
            workflow_id=workflow.id,
            execution_id=execution.id,
            checkpoint_step_id=checkpoint_step_id,
            risk_level=risk_level,
            risk_summary=describe_risk(risk_level, step),
            proposed_action=proposed_action_for(
                workflow.get_step(next_step_id) if next_step_id else None
            ),
            previous_step_results=previous,
            next_step_id=next_step_id,
            created_at=self._clock(),
        )
        await self._repository.create_checkpoint(request)
        logger.info(
            f"Checkpoint {request.id} created for execution={execution.id} "
            f"step={checkpoint_step_id} risk={risk_level}"
        )
        return request

    async def get(self, user_id: str, request_id: str) -> CheckpointRequest:
        request = await self._repository.get_checkpoint(user_id, request_id)
        if request is None:
            raise CheckpointNotFoundError(request_id)
        return request

    async def list(
        self, user_id: str, status: Optional[CheckpointStatus] = None
    ) -> List[CheckpointRequest]:
        return await self._repository.list_checkpoints(user_id, status)

    async def resolve(
        self,
        *,
        user_id: str,
        request_id: str,
        decision: CheckpointDecision,
        reviewer_user_id: str,
        rejection_reason: Optional[str] = None,
        edited_action: Optional[ProposedAction] = None,
    ) -> CheckpointRequest:
        """Record a single decision on a pending checkpoint.

        Raises:
            CheckpointNotFoundError: If the request does not exist.
            CheckpointConflictError: If the request was already resolved,
                including by a concurrent caller.
        """
        request = await self.get(user_id, request_id)
        if request.status != "pending":
            raise CheckpointConflictError(request_id, request.status)

        resolved = request.model_copy(
            update={
                "status": _DECISION_STATUS[decision],
                "decision": decision,
                "decided_at": self._clock(),
                "decision_by_user_id": reviewer_user_id,
                "rejection_reason": (
                    (rejection_reason or "").strip() or "Rejected by reviewer."
                    if decision == "reject"
                    else None
                ),
                "edited_action": (
                    merge_edited_action(request.proposed_action, edited_action)
                    if decision == "edit"
                    else None
                ),
            }
        )
        if not await self._repository.update_checkpoint(resolved, expected_status="pending"):
            current = await self._repository.get_checkpoint(user_id, request_id)
            raise CheckpointConflictError(request_id, current.status if current else None)

        logger.info(f"Checkpoint {request_id} resolved with decision={decision} by {reviewer_user_id}")
        return resolved
