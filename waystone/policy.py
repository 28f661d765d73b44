"""Per-workflow policy: connector allow/block lists and execution budgets."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel

from .connectors import parse_connector_action_id
from .constants import CONNECTOR_MUTATION_HINTS, DEFAULT_EXECUTION_TIMEOUT
from .contracts import PolicyBudget, Step, Workflow, WorkflowPolicy

ActionType = Literal[
    "connector_read", "connector_mutation", "transform", "artifact", "checkpoint"
]
ALL_ACTION_TYPES = ["connector_read", "connector_mutation", "transform", "artifact", "checkpoint"]


class PolicyUsage(BaseModel):
    total_steps: int = 0
    connector_calls: int = 0
    mutation_calls: int = 0
    transform_calls: int = 0
    artifact_writes: int = 0


class PolicyDecision(BaseModel):
    allowed: bool
    code: Literal[
        "allowed",
        "action_type_blocked",
        "connector_blocked",
        "connector_not_allowed",
        "budget_exceeded",
    ]
    message: str
    action_type: ActionType
    connector_id: Optional[str] = None
    projected_usage: PolicyUsage


def connector_id_for(step: Step) -> Optional[str]:
    if step.kind != "connector":
        return None
    try:
        return parse_connector_action_id(step.action_id)[0]
    except ValueError:
        return None


def infer_action_type(step: Step) -> ActionType:
    if step.kind != "connector":
        return step.kind
    try:
        action = parse_connector_action_id(step.action_id)[1].lower()
    except ValueError:
        action = ""
    if any(hint in action for hint in CONNECTOR_MUTATION_HINTS):
        return "connector_mutation"
    return "connector_read"


def accumulate_usage(usage: PolicyUsage, step: Step) -> PolicyUsage:
    action_type = infer_action_type(step)
    is_connector = action_type in ("connector_read", "connector_mutation")
    return PolicyUsage(
        total_steps=usage.total_steps + 1,
        connector_calls=usage.connector_calls + int(is_connector),
        mutation_calls=usage.mutation_calls + int(action_type == "connector_mutation"),
        transform_calls=usage.transform_calls + int(action_type == "transform"),
        artifact_writes=usage.artifact_writes + int(action_type == "artifact"),
    )


def _budget_violation(usage: PolicyUsage, budget: PolicyBudget) -> Optional[str]:
    limits = (
        ("max_total_steps", budget.max_total_steps, usage.total_steps),
        ("max_connector_calls", budget.max_connector_calls, usage.connector_calls),
        ("max_mutation_calls", budget.max_mutation_calls, usage.mutation_calls),
        ("max_transform_calls", budget.max_transform_calls, usage.transform_calls),
        ("max_artifact_writes", budget.max_artifact_writes, usage.artifact_writes),
    )
    for name, limit, used in limits:
        if limit is not None and used > max(limit, 0):
            return f"{name}={limit}"
    return None


def evaluate_step_policy(policy: WorkflowPolicy, usage: PolicyUsage, step: Step) -> PolicyDecision:
    """Check ``step`` against ``policy`` given the usage so far."""
    action_type = infer_action_type(step)
    connector_id = connector_id_for(step)
    projected = accumulate_usage(usage, step)

    def decide(code, message: str, allowed: bool = False) -> PolicyDecision:
        return PolicyDecision(
            allowed=allowed,
            code=code,
            message=message,
            action_type=action_type,
            connector_id=connector_id,
            projected_usage=projected,
        )

    if policy.allowed_action_types and action_type not in policy.allowed_action_types:
        return decide("action_type_blocked", f'Workflow policy blocks action type "{action_type}".')

    if connector_id:
        if connector_id in policy.blocked_connector_ids:
            return decide("connector_blocked", f'Workflow policy blocks connector "{connector_id}".')
        if policy.allowed_connector_ids is not None and connector_id not in policy.allowed_connector_ids:
            return decide(
                "connector_not_allowed",
                f'Workflow policy allows only specific connectors; "{connector_id}" is not allowed.',
            )

    violation = _budget_violation(projected, policy.budget)
    if violation:
        return decide("budget_exceeded", f"Workflow policy budget exceeded ({violation}).")

    return decide("allowed", "Workflow policy allows this step.", allowed=True)


def build_default_policy(workflow: Workflow) -> WorkflowPolicy:
    """Derive a permissive policy sized to the workflow's steps."""
    step_count = max(len(workflow.steps), 1)
    connector_ids = sorted({cid for cid in map(connector_id_for, workflow.steps) if cid})
    return WorkflowPolicy(
        allowed_connector_ids=connector_ids,
        blocked_connector_ids=[],
        allowed_action_types=list(ALL_ACTION_TYPES),
        budget=PolicyBudget(
            max_total_steps=max(6, step_count * 3),
            max_connector_calls=max(4, len(connector_ids) * 2, step_count),
            max_mutation_calls=max(3, step_count),
            max_transform_calls=max(4, step_count * 2),
            max_artifact_writes=max(2, step_count),
            max_runtime_seconds=DEFAULT_EXECUTION_TIMEOUT,
        ),
    )


def ensure_policy(workflow: Workflow) -> WorkflowPolicy:
    return workflow.policy or build_default_policy(workflow)
