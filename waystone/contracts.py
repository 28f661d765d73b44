"""Core data contracts for waystone workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

WorkflowStatus = Literal["draft", "ready", "paused", "archived"]
StepKind = Literal["transform", "checkpoint", "artifact", "connector"]
StepStatus = Literal[
    "idle",
    "running",
    "completed",
    "failed",
    "approval_required",
    "checkpoint_required",
    "skipped",
]
ExecutionStatus = Literal[
    "running",
    "completed",
    "failed",
    "approval_required",
    "checkpoint_required",
    "cancelled",
]
TriggerType = Literal["manual", "schedule", "event"]
EventType = Literal["new_message", "keyword_match"]
ConditionOperator = Literal[
    "string_equals",
    "string_contains",
    "number_compare",
    "regex_match",
    "exists",
    "not_exists",
]
NumberComparator = Literal["gt", "gte", "lt", "lte", "eq"]
RiskLevel = Literal["low", "medium", "high"]
CheckpointStatus = Literal["pending", "approved", "rejected", "edited"]
CheckpointDecision = Literal["approve", "reject", "edit"]
ChangeType = Literal[
    "workflow_created",
    "plan_modified",
    "status_changed",
    "checkpoint_decision",
    "checkpoint_resumed",
]

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed", "cancelled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


class ScheduleSpec(BaseModel):
    """Interval schedule with the next due timestamp."""

    interval_minutes: int = 60
    next_run_at: datetime
    cron_like: str = ""


class EventSpec(BaseModel):
    event_type: EventType = "new_message"
    keyword: Optional[str] = None


class Trigger(BaseModel):
    """Activation settings for a workflow."""

    id: str = Field(default_factory=lambda: make_id("trigger"))
    type: TriggerType = "manual"
    enabled: bool = True
    schedule: Optional[ScheduleSpec] = None
    event: Optional[EventSpec] = None


class Step(BaseModel):
    """Defines one unit of work in a workflow."""

    id: str = Field(default_factory=lambda: make_id("step"))
    title: str
    description: str = ""
    kind: StepKind
    action_id: str
    input_template: Optional[str] = None
    status: StepStatus = "idle"


class Condition(BaseModel):
    """Predicate evaluated against the accumulated run context."""

    id: str = Field(default_factory=lambda: make_id("condition"))
    source_path: str
    operator: ConditionOperator
    value: Optional[Union[bool, int, float, str]] = None
    number_comparator: Optional[NumberComparator] = None
    case_sensitive: bool = False
    regex_flags: Optional[str] = None


class Branch(BaseModel):
    """Conditional edge between two steps."""

    id: str = Field(default_factory=lambda: make_id("branch"))
    from_step_id: str
    to_step_id: str
    label: str = ""
    priority: int = 0
    condition: Condition


class PlanGraph(BaseModel):
    entry_step_id: str = ""
    branches: List[Branch] = Field(default_factory=list)


class PolicyBudget(BaseModel):
    max_total_steps: Optional[int] = None
    max_connector_calls: Optional[int] = None
    max_mutation_calls: Optional[int] = None
    max_transform_calls: Optional[int] = None
    max_artifact_writes: Optional[int] = None
    max_runtime_seconds: Optional[float] = None


class WorkflowPolicy(BaseModel):
    """Per-workflow guard rails checked before each step runs."""

    allowed_connector_ids: Optional[List[str]] = None
    blocked_connector_ids: List[str] = Field(default_factory=list)
    allowed_action_types: Optional[List[str]] = None
    budget: PolicyBudget = Field(default_factory=PolicyBudget)


class Workflow(BaseModel):
    """A persisted, versioned automation definition."""

    id: str = Field(default_factory=lambda: make_id("workflow"))
    user_id: str
    name: str
    description: str = ""
    natural_language_prompt: Optional[str] = None
    trigger: Trigger = Field(default_factory=Trigger)
    steps: List[Step] = Field(default_factory=list)
    plan_graph: Optional[PlanGraph] = None
    policy: Optional[WorkflowPolicy] = None
    status: WorkflowStatus = "draft"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_execution_id: Optional[str] = None

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((step for step in self.steps if step.id == step_id), None)


class StepResult(BaseModel):
    """Outcome of one executed step."""

    id: str = Field(default_factory=lambda: make_id("step-result"))
    workflow_id: str
    step_id: str
    status: StepStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0
    output_summary: str = ""
    output_payload: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    approval_request_id: Optional[str] = None


class WorkflowSnapshot(BaseModel):
    """Steps and plan graph captured when an execution starts."""

    name: str
    steps: List[Step] = Field(default_factory=list)
    plan_graph: Optional[PlanGraph] = None
    policy: Optional[WorkflowPolicy] = None


class WorkflowExecution(BaseModel):
    """One run attempt of a workflow."""

    id: str = Field(default_factory=lambda: make_id("execution"))
    workflow_id: str
    user_id: str
    status: ExecutionStatus = "running"
    trigger_type: TriggerType = "manual"
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    heartbeat_at: Optional[datetime] = None
    attempt: int = 1
    step_results: List[StepResult] = Field(default_factory=list)
    workflow_snapshot: Optional[WorkflowSnapshot] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class ProposedAction(BaseModel):
    title: str
    description: str = ""
    action_id: str
    input_template: Optional[str] = None


class CheckpointRequest(BaseModel):
    """Pending human review created when a run reaches a checkpoint step."""

    id: str = Field(default_factory=lambda: make_id("checkpoint"))
    user_id: str
    workflow_id: str
    execution_id: str
    checkpoint_step_id: str
    status: CheckpointStatus = "pending"
    risk_level: RiskLevel = "low"
    risk_summary: str = ""
    proposed_action: ProposedAction
    previous_step_results: List[StepResult] = Field(default_factory=list)
    next_step_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    decision: Optional[CheckpointDecision] = None
    decision_by_user_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    edited_action: Optional[ProposedAction] = None


class ApprovalRequest(BaseModel):
    """Policy gate reported by the connector invoker."""

    id: str = Field(default_factory=lambda: make_id("approval"))
    user_id: str
    workflow_id: str
    execution_id: str
    step_id: str
    action_id: str
    reason: str = ""
    status: Literal["pending", "approved", "rejected"] = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    decision_by_user_id: Optional[str] = None


class DeadLetterEntry(BaseModel):
    """Execution that failed beyond automatic recovery."""

    id: str = Field(default_factory=lambda: make_id("dlq"))
    user_id: str
    workflow_id: str
    execution_id: Optional[str] = None
    trigger_type: TriggerType = "manual"
    status: Literal["pending", "retrying", "resolved"] = "pending"
    reason: str
    retry_count: int = 0
    step_results: List[StepResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class StepSnapshot(BaseModel):
    id: str
    title: str
    description: str
    kind: str
    action_id: str
    input_template: Optional[str] = None


class BranchSnapshot(BaseModel):
    id: str
    from_step_id: str
    to_step_id: str
    label: str
    priority: int
    operator: str
    source_path: str
    value: Optional[Union[bool, int, float, str]] = None
    number_comparator: Optional[str] = None
    case_sensitive: bool = False
    regex_flags: Optional[str] = None


class DefinitionSnapshot(BaseModel):
    """Content of a workflow definition at one point in its history."""

    id: str
    name: str
    description: str
    entry_step_id: str = ""
    step_snapshots: List[StepSnapshot] = Field(default_factory=list)
    branch_snapshots: List[BranchSnapshot] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=utcnow)


class WorkflowChangeEntry(BaseModel):
    id: str = Field(default_factory=lambda: make_id("workflow-change"))
    user_id: str
    workflow_id: str
    change_type: ChangeType
    summary: str
    before_snapshot: Optional[DefinitionSnapshot] = None
    after_snapshot: Optional[DefinitionSnapshot] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowChangeDiff(BaseModel):
    added_step_ids: List[str] = Field(default_factory=list)
    removed_step_ids: List[str] = Field(default_factory=list)
    changed_step_ids: List[str] = Field(default_factory=list)
    added_branch_ids: List[str] = Field(default_factory=list)
    removed_branch_ids: List[str] = Field(default_factory=list)
    changed_branch_ids: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(
            (
                self.added_step_ids,
                self.removed_step_ids,
                self.changed_step_ids,
                self.added_branch_ids,
                self.removed_branch_ids,
                self.changed_branch_ids,
            )
        )


class Artifact(BaseModel):
    id: str = Field(default_factory=lambda: make_id("artifact"))
    user_id: str
    workflow_id: str
    execution_id: str
    step_id: Optional[str] = None
    title: str
    body: str
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: make_id("wf-notification"))
    user_id: str
    workflow_id: str
    execution_id: Optional[str] = None
    level: Literal["info", "warning", "error"] = "info"
    message: str
    status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = False
