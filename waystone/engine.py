"""Workflow engine: definitions, runs, checkpoints and read models."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .checkpoints import CheckpointManager
from .config import WaystoneConfig, load_config
from .connectors import ConnectorInvoker
from .contracts import (
    ApprovalRequest,
    Artifact,
    CheckpointDecision,
    CheckpointRequest,
    ExecutionStatus,
    Notification,
    ProposedAction,
    Step,
    StepResult,
    TriggerType,
    Workflow,
    WorkflowChangeDiff,
    WorkflowChangeEntry,
    WorkflowExecution,
    WorkflowSnapshot,
    WorkflowStatus,
    utcnow,
)
from .dead_letter import DeadLetterQueue
from .errors import (
    ApprovalNotFoundError,
    ExecutionNotFoundError,
    StepNotFoundError,
    WorkflowConflictError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .executor import StepExecutor, build_context
from .history import ChangeHistory, snapshot_workflow
from .persistence import WorkflowRepository, get_repository
from .plan_graph import ensure_plan_graph, resolve_next_step_id, traverse, validate_workflow
from .planner import KeywordWorkflowCompiler, WorkflowCompiler
from .policy import PolicyUsage, accumulate_usage, ensure_policy, evaluate_step_policy
from .triggers import TriggerManager, next_occurrence

logger = logging.getLogger(__name__)

_NOTIFICATION_LEVELS = {
    "completed": "info",
    "checkpoint_required": "warning",
    "approval_required": "warning",
    "cancelled": "warning",
    "failed": "error",
}


@dataclass
class CheckpointResolution:
    checkpoint: CheckpointRequest
    execution: Optional[WorkflowExecution] = None


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def _execution_status(result: StepResult) -> ExecutionStatus:
    if result.status in ("failed", "approval_required", "checkpoint_required"):
        return result.status
    return "completed"


def workflow_from_snapshot(workflow: Workflow, snapshot: Optional[WorkflowSnapshot]) -> Workflow:
    """Definition an execution runs against: the snapshot taken when it started."""
    if snapshot is None:
        return workflow
    return workflow.model_copy(
        update={
            "name": snapshot.name,
            "steps": [step.model_copy(deep=True) for step in snapshot.steps],
            "plan_graph": snapshot.plan_graph.model_copy(deep=True) if snapshot.plan_graph else None,
            "policy": snapshot.policy.model_copy(deep=True) if snapshot.policy else None,
        }
    )


def apply_edited_action(workflow: Workflow, step_id: Optional[str], action: ProposedAction) -> Workflow:
    """Substitute a reviewer's edited action into ``step_id`` for one run."""
    if step_id is None:
        return workflow
    steps = [
        step.model_copy(
            update={
                "title": action.title,
                "description": action.description,
                "action_id": action.action_id,
                "input_template": action.input_template,
            }
        )
        if step.id == step_id
        else step
        for step in workflow.steps
    ]
    return workflow.model_copy(update={"steps": steps})


class WorkflowEngine:
    """Coordinates workflow definitions and their executions for many users.

    Runs of the same workflow are serialized by a per-workflow lock, as are
    saves. Step failures never raise; they are recorded on the execution.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        *,
        invoker: Optional[ConnectorInvoker] = None,
        executor: Optional[StepExecutor] = None,
        compiler: Optional[WorkflowCompiler] = None,
        triggers: Optional[TriggerManager] = None,
        config: Optional[WaystoneConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository()
        self.clock = clock
        self.executor = executor or StepExecutor(invoker, clock=clock)
        self.compiler = compiler or KeywordWorkflowCompiler(clock=clock)
        self.checkpoints = CheckpointManager(self.repository, clock)
        self.history = ChangeHistory(self.repository, clock)
        self.dead_letters = DeadLetterQueue(self.repository, clock)
        self.triggers = triggers
        self._run_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._save_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._running_executions: set[str] = set()
        self._cancelled_executions: set[str] = set()

    # ------------------------------------------------------------------
    # Definitions
    async def create_from_prompt(self, user_id: str, prompt: str) -> Workflow:
        draft = await self.compiler.compile(user_id, prompt)
        return await self.save_workflow(draft)

    async def save_workflow(self, workflow: Workflow, summary: Optional[str] = None) -> Workflow:
        """Validate and persist ``workflow``, recording the edit in its history.

        Raises:
            WorkflowValidationError: If the plan graph is invalid; nothing is
                persisted in that case.
            WorkflowConflictError: If the stored workflow is archived and the
                save would bring it back.
        """
        graph = validate_workflow(workflow)
        async with self._save_locks[workflow.id]:
            before = await self.repository.get_workflow(workflow.user_id, workflow.id)
            if before is not None and before.status == "archived" and workflow.status != "archived":
                raise WorkflowConflictError(
                    f"Workflow {workflow.id} was cancelled and cannot be reactivated."
                )
            now = self.clock()
            saved = workflow.model_copy(
                update={
                    "plan_graph": graph,
                    "created_at": before.created_at if before else workflow.created_at,
                    "updated_at": now,
                },
                deep=True,
            )
            await self.repository.save_workflow(saved)
            await self.history.record_save(before=before, after=saved, summary=summary)
        self._refresh_trigger(saved)
        logger.info(f"Saved workflow {saved.id} for user {saved.user_id}")
        return saved

    async def get_workflow(self, user_id: str, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow(user_id, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(self, user_id: str) -> List[Workflow]:
        return await self.repository.list_workflows(user_id)

    async def _set_status(
        self,
        user_id: str,
        workflow_id: str,
        status: WorkflowStatus,
        trigger_enabled: Optional[bool] = None,
    ) -> Workflow:
        async with self._save_locks[workflow_id]:
            workflow = await self.get_workflow(user_id, workflow_id)
            previous = workflow.status
            workflow.status = status
            if trigger_enabled is not None:
                workflow.trigger.enabled = trigger_enabled
            workflow.updated_at = self.clock()
            await self.repository.save_workflow(workflow)
            snapshot = snapshot_workflow(workflow, workflow.updated_at)
            await self.history.append(
                user_id=user_id,
                workflow_id=workflow_id,
                change_type="status_changed",
                summary=f"Workflow {workflow.name} status changed from {previous} to {status}.",
                before_snapshot=snapshot,
                after_snapshot=snapshot,
                metadata={"from": previous, "to": status},
            )
        self._refresh_trigger(workflow)
        logger.info(f"Workflow {workflow_id} status {previous} -> {status}")
        return workflow

    async def pause_workflow(self, user_id: str, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(user_id, workflow_id)
        if workflow.status == "archived":
            raise WorkflowConflictError(f"Workflow {workflow_id} is archived.")
        return await self._set_status(user_id, workflow_id, "paused")

    async def resume_workflow(self, user_id: str, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(user_id, workflow_id)
        if workflow.status == "archived":
            raise WorkflowConflictError(
                f"Workflow {workflow_id} was cancelled and cannot be resumed."
            )
        return await self._set_status(user_id, workflow_id, "ready")

    async def cancel_workflow(self, user_id: str, workflow_id: str) -> Workflow:
        """Archive the workflow and disable its trigger for good.

        Runs already in flight are left to finish; see :meth:`cancel_execution`.
        """
        workflow = await self._set_status(user_id, workflow_id, "archived", trigger_enabled=False)
        await self._notify(
            workflow,
            None,
            "warning",
            f"Workflow {workflow.name} was cancelled; future triggers are disabled.",
            status="archived",
        )
        return workflow

    # ------------------------------------------------------------------
    # Triggers
    def _refresh_trigger(self, workflow: Workflow) -> None:
        if self.triggers is not None:
            self.triggers.update(workflow)

    async def _on_trigger(
        self, workflow: Workflow, trigger_type: TriggerType, variables: Dict[str, Any]
    ) -> WorkflowExecution:
        return await self.run_workflow_by_id(
            workflow.user_id, workflow.id, trigger_type=trigger_type, variables=variables
        )

    async def register_triggers(self, user_id: str) -> List[str]:
        """Register every schedule or event workflow of ``user_id`` with the trigger manager."""
        if self.triggers is None:
            self.triggers = TriggerManager(
                clock=self.clock, tick_interval=self.config.scheduler.tick_interval
            )
        registered: List[str] = []
        for workflow in await self.list_workflows(user_id):
            if workflow.trigger.type == "manual":
                continue
            self.triggers.register(workflow, self._on_trigger)
            registered.append(workflow.id)
        return registered

    async def _advance_schedule(self, user_id: str, workflow_id: str) -> None:
        async with self._save_locks[workflow_id]:
            workflow = await self.repository.get_workflow(user_id, workflow_id)
            if workflow is None or workflow.trigger.schedule is None:
                return
            schedule = workflow.trigger.schedule
            now = self.clock()
            upcoming = next_occurrence(schedule.next_run_at, schedule.interval_minutes, now)
            if upcoming == schedule.next_run_at:
                return
            schedule.next_run_at = upcoming
            await self.repository.save_workflow(workflow)
        self._refresh_trigger(workflow)

    # ------------------------------------------------------------------
    # Runs
    async def run_workflow_by_id(
        self,
        user_id: str,
        workflow_id: str,
        trigger_type: TriggerType = "manual",
        variables: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Walk the plan graph from its entry step until it ends or suspends.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowConflictError: If the workflow is paused or archived.
        """
        workflow = await self.get_workflow(user_id, workflow_id)
        if workflow.status in ("paused", "archived"):
            raise WorkflowConflictError(f"Workflow {workflow_id} is {workflow.status}.")

        async with self._run_locks[workflow_id]:
            started_at = self.clock()
            graph = ensure_plan_graph(workflow)
            execution = WorkflowExecution(
                workflow_id=workflow.id,
                user_id=user_id,
                trigger_type=trigger_type,
                started_at=started_at,
                heartbeat_at=started_at,
                workflow_snapshot=WorkflowSnapshot(
                    name=workflow.name,
                    steps=[step.model_copy(deep=True) for step in workflow.steps],
                    plan_graph=graph,
                    policy=ensure_policy(workflow),
                ),
                context=dict(variables or {}),
            )
            await self.repository.save_execution(execution)
            logger.info(
                f"Execution {execution.id} started for workflow {workflow_id} ({trigger_type})"
            )

            run_workflow = workflow_from_snapshot(workflow, execution.workflow_snapshot)
            execution = await self._walk(
                run_workflow, execution, graph.entry_step_id or None, PolicyUsage()
            )

        await self._record_last_execution(user_id, workflow_id, execution.id)
        if trigger_type == "schedule":
            await self._advance_schedule(user_id, workflow_id)
        await self._notify_run(workflow, execution)
        return execution

    async def run_step_by_id(
        self,
        user_id: str,
        workflow_id: str,
        step_id: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Execute one step in isolation and record it as its own execution."""
        workflow = await self.get_workflow(user_id, workflow_id)
        if workflow.status in ("paused", "archived"):
            raise WorkflowConflictError(f"Workflow {workflow_id} is {workflow.status}.")
        step = workflow.get_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id, workflow_id)

        async with self._run_locks[workflow_id]:
            started_at = self.clock()
            policy = ensure_policy(workflow)
            execution = WorkflowExecution(
                workflow_id=workflow.id,
                user_id=user_id,
                started_at=started_at,
                heartbeat_at=started_at,
                workflow_snapshot=WorkflowSnapshot(
                    name=workflow.name,
                    steps=[step.model_copy(deep=True)],
                    plan_graph=ensure_plan_graph(workflow),
                    policy=policy,
                ),
                context=dict(variables or {}),
            )
            decision = evaluate_step_policy(policy, PolicyUsage(), step)
            if decision.allowed:
                result = await self.executor.execute(
                    user_id=user_id,
                    workflow=workflow,
                    step=step,
                    previous_results=[],
                    context=build_context(execution.context, []),
                )
            else:
                result = self._policy_violation(workflow, step, decision.message)
            await self._after_step(workflow, execution, step, result, open_checkpoints=False)
            execution.step_results.append(result)
            # an isolated checkpoint step has nothing to resume into
            execution.status = (
                "completed"
                if result.status == "checkpoint_required"
                else _execution_status(result)
            )
            await self._finalize(execution)

        await self._record_last_execution(user_id, workflow_id, execution.id)
        await self._notify_run(workflow, execution)
        return execution

    def cancel_execution(self, execution_id: str) -> bool:
        """Stop a running execution before its next step starts.

        Returns False, and records nothing, when ``execution_id`` is not
        currently walking its steps in this engine.
        """
        if execution_id not in self._running_executions:
            logger.info(f"Ignoring cancellation of execution {execution_id}: not running")
            return False
        self._cancelled_executions.add(execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    async def get_execution(self, user_id: str, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(user_id, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self, user_id: str, workflow_id: Optional[str] = None
    ) -> List[WorkflowExecution]:
        return await self.repository.list_executions(user_id, workflow_id)

    def _policy_violation(self, workflow: Workflow, step: Step, message: str) -> StepResult:
        now = self.clock()
        return StepResult(
            workflow_id=workflow.id,
            step_id=step.id,
            status="failed",
            started_at=now,
            finished_at=now,
            output_summary=f"Workflow policy violation: {message}",
            output_payload={"policy_violation": True},
            error_message=message,
        )

    async def _walk(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        start_step_id: Optional[str],
        usage: PolicyUsage,
    ) -> WorkflowExecution:
        self._running_executions.add(execution.id)
        try:
            return await self._walk_steps(workflow, execution, start_step_id, usage)
        finally:
            self._running_executions.discard(execution.id)
            self._cancelled_executions.discard(execution.id)

    async def _walk_steps(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        start_step_id: Optional[str],
        usage: PolicyUsage,
    ) -> WorkflowExecution:
        """Run steps from ``start_step_id`` by branch-following."""
        policy = ensure_policy(workflow)
        visited = {result.step_id for result in execution.step_results}
        step_id = start_step_id
        execution.status = "running"

        while step_id is not None:
            if execution.id in self._cancelled_executions:
                self._cancelled_executions.discard(execution.id)
                execution.status = "cancelled"
                logger.info(f"Execution {execution.id} cancelled before step {step_id}")
                break

            step = workflow.get_step(step_id)
            if step is None or step_id in visited:
                execution.status = "failed"
                logger.error(f"Execution {execution.id} cannot continue at step {step_id}")
                break
            visited.add(step_id)

            decision = evaluate_step_policy(policy, usage, step)
            if not decision.allowed:
                result = self._policy_violation(workflow, step, decision.message)
                logger.warning(f"Execution {execution.id}: {result.output_summary}")
            else:
                usage = decision.projected_usage
                result = await self.executor.execute(
                    user_id=execution.user_id,
                    workflow=workflow,
                    step=step,
                    previous_results=list(execution.step_results),
                    context=build_context(execution.context, execution.step_results),
                )
            await self._after_step(workflow, execution, step, result)
            execution.step_results.append(result)
            execution.heartbeat_at = self.clock()

            if result.status != "completed":
                execution.status = _execution_status(result)
                break

            await self.repository.save_execution(execution)
            step_id, branch = resolve_next_step_id(
                workflow, step.id, build_context(execution.context, execution.step_results)
            )
            if branch is not None:
                logger.debug(f"Execution {execution.id} took branch {branch.id} to {step_id}")
        else:
            execution.status = "completed"

        await self._finalize(execution)
        logger.info(
            f"Execution {execution.id} of workflow {workflow.id} ended with status {execution.status}"
        )
        return execution

    async def _after_step(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        step: Step,
        result: StepResult,
        open_checkpoints: bool = True,
    ) -> None:
        """Persist what a step produced besides its result."""
        if result.status == "approval_required":
            approval = ApprovalRequest(
                user_id=execution.user_id,
                workflow_id=workflow.id,
                execution_id=execution.id,
                step_id=step.id,
                action_id=step.action_id,
                reason=str(result.output_payload.get("policy_reason", "")),
                created_at=self.clock(),
            )
            await self.repository.save_approval(approval)
            result.approval_request_id = approval.id

        elif result.status == "checkpoint_required" and open_checkpoints:
            context = build_context(execution.context, [*execution.step_results, result])
            next_step_id, _ = resolve_next_step_id(workflow, step.id, context)
            remaining = traverse(workflow, context, next_step_id) if next_step_id else []
            checkpoint = await self.checkpoints.create(
                workflow=workflow,
                execution=execution,
                checkpoint_step_id=step.id,
                next_step_id=next_step_id,
                remaining_step_ids=remaining,
            )
            result.output_payload.update(
                {
                    "checkpoint_request_id": checkpoint.id,
                    "risk_level": checkpoint.risk_level,
                    "risk_summary": checkpoint.risk_summary,
                    "proposed_action": checkpoint.proposed_action.model_dump(),
                }
            )

        elif result.status == "completed" and step.kind == "artifact":
            payload = result.output_payload
            artifact = Artifact(
                user_id=execution.user_id,
                workflow_id=workflow.id,
                execution_id=execution.id,
                step_id=step.id,
                title=str(payload.get("artifact_title") or f"{workflow.name} Output"),
                body=str(payload.get("artifact_body") or ""),
                created_at=self.clock(),
            )
            await self.repository.append_artifact(artifact)
            payload["artifact_id"] = artifact.id

    async def _finalize(self, execution: WorkflowExecution) -> None:
        if execution.is_terminal:
            execution.finished_at = max(self.clock(), execution.started_at)
            execution.duration_ms = _elapsed_ms(execution.started_at, execution.finished_at)
        execution.heartbeat_at = self.clock()
        await self.repository.save_execution(execution)

    async def _record_last_execution(self, user_id: str, workflow_id: str, execution_id: str) -> None:
        async with self._save_locks[workflow_id]:
            workflow = await self.repository.get_workflow(user_id, workflow_id)
            if workflow is None:
                return
            workflow.last_execution_id = execution_id
            await self.repository.save_workflow(workflow)

    async def record_failed_run(
        self,
        user_id: str,
        workflow_id: str,
        trigger_type: TriggerType,
        started_at: datetime,
        message: str,
        attempt: int = 1,
    ) -> WorkflowExecution:
        """Mark an interrupted run as failed.

        The execution left ``running`` by the interrupted attempt is failed in
        place; when the attempt never got as far as creating one, a failed
        execution is recorded for it.
        """
        workflow = await self.get_workflow(user_id, workflow_id)
        interrupted = [
            execution
            for execution in await self.list_executions(user_id, workflow_id)
            if execution.status == "running" and execution.started_at >= started_at
        ]
        if interrupted:
            execution = interrupted[0]
            execution.status = "failed"
            execution.attempt = attempt
            execution.context = {**execution.context, "error": message}
            await self._finalize(execution)
        else:
            finished_at = max(self.clock(), started_at)
            execution = WorkflowExecution(
                workflow_id=workflow_id,
                user_id=user_id,
                status="failed",
                trigger_type=trigger_type,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=_elapsed_ms(started_at, finished_at),
                heartbeat_at=finished_at,
                attempt=attempt,
                context={"error": message},
            )
            await self.repository.save_execution(execution)
        await self._notify_run(workflow, execution, detail=message)
        return execution

    # ------------------------------------------------------------------
    # Checkpoints and approvals
    async def list_pending_checkpoints(self, user_id: str) -> List[CheckpointRequest]:
        return await self.checkpoints.list(user_id, status="pending")

    async def resolve_checkpoint(
        self,
        user_id: str,
        request_id: str,
        decision: CheckpointDecision,
        *,
        reviewer_user_id: Optional[str] = None,
        edited_action: Optional[ProposedAction] = None,
        rejection_reason: Optional[str] = None,
    ) -> CheckpointResolution:
        """Apply a reviewer decision and continue or end the suspended run.

        Approve and edit resume from the step after the checkpoint with the
        context captured when the run suspended; edit runs the reviewer's
        action in place of that step. Reject fails the execution.

        Raises:
            CheckpointConflictError: If the checkpoint was already resolved.
            WorkflowConflictError: If the run or workflow can no longer resume.
        """
        if decision == "edit" and edited_action is None:
            raise WorkflowValidationError("An edit decision requires an edited action.")

        request = await self.checkpoints.get(user_id, request_id)
        execution = await self.get_execution(user_id, request.execution_id)
        workflow = await self.get_workflow(user_id, request.workflow_id)
        if request.status == "pending":
            if execution.status != "checkpoint_required":
                raise WorkflowConflictError(
                    f"Execution {execution.id} is {execution.status} and cannot resume."
                )
            if decision != "reject" and workflow.status == "archived":
                raise WorkflowConflictError(
                    f"Workflow {workflow.id} was cancelled and cannot resume."
                )

        resolved = await self.checkpoints.resolve(
            user_id=user_id,
            request_id=request_id,
            decision=decision,
            reviewer_user_id=reviewer_user_id or user_id,
            rejection_reason=rejection_reason,
            edited_action=edited_action,
        )
        snapshot = snapshot_workflow(workflow_from_snapshot(workflow, execution.workflow_snapshot))
        await self.history.append(
            user_id=user_id,
            workflow_id=workflow.id,
            change_type="checkpoint_decision",
            summary=f"Checkpoint {request_id} resolved with decision {decision}.",
            before_snapshot=snapshot,
            after_snapshot=snapshot,
            metadata={"checkpoint_request_id": request_id, "decision": decision},
        )

        if decision == "reject":
            async with self._run_locks[workflow.id]:
                execution.status = "failed"
                await self._finalize(execution)
            await self._notify_run(workflow, execution, detail=resolved.rejection_reason)
            return CheckpointResolution(checkpoint=resolved, execution=execution)

        async with self._run_locks[workflow.id]:
            run_workflow = workflow_from_snapshot(workflow, execution.workflow_snapshot)
            if decision == "edit" and resolved.edited_action is not None:
                run_workflow = apply_edited_action(
                    run_workflow, resolved.next_step_id, resolved.edited_action
                )

            checkpoint_result = next(
                (
                    result
                    for result in reversed(execution.step_results)
                    if result.step_id == resolved.checkpoint_step_id
                ),
                None,
            )
            execution.step_results = [
                result.model_copy(deep=True) for result in resolved.previous_step_results
            ]
            if checkpoint_result is not None:
                execution.step_results.append(checkpoint_result)

            usage = PolicyUsage()
            for result in execution.step_results:
                step = run_workflow.get_step(result.step_id)
                if step is not None:
                    usage = accumulate_usage(usage, step)

            logger.info(
                f"Resuming execution {execution.id} after checkpoint {request_id} "
                f"at step {resolved.next_step_id}"
            )
            execution = await self._walk(run_workflow, execution, resolved.next_step_id, usage)

        await self.history.append(
            user_id=user_id,
            workflow_id=workflow.id,
            change_type="checkpoint_resumed",
            summary=f"Execution {execution.id} resumed after checkpoint {request_id}.",
            before_snapshot=snapshot,
            after_snapshot=snapshot,
            metadata={"checkpoint_request_id": request_id, "execution_id": execution.id},
        )
        await self._notify_run(workflow, execution)
        return CheckpointResolution(checkpoint=resolved, execution=execution)

    async def list_pending_approvals(self, user_id: str) -> List[ApprovalRequest]:
        return await self.repository.list_approvals(user_id, status="pending")

    async def resolve_approval(
        self,
        user_id: str,
        request_id: str,
        approved: bool,
        reviewer_user_id: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record a decision on an approval gate. Nothing is re-run."""
        approval = await self.repository.get_approval(user_id, request_id)
        if approval is None:
            raise ApprovalNotFoundError(request_id)
        if approval.status != "pending":
            raise WorkflowConflictError(
                f"Approval request {request_id} is already {approval.status}."
            )
        approval.status = "approved" if approved else "rejected"
        approval.decided_at = self.clock()
        approval.decision_by_user_id = reviewer_user_id or user_id
        await self.repository.save_approval(approval)
        logger.info(f"Approval {request_id} {approval.status}")
        return approval

    # ------------------------------------------------------------------
    # Artifacts and notifications
    async def list_artifacts(self, user_id: str) -> List[Artifact]:
        return await self.repository.list_artifacts(user_id)

    async def list_notifications(self, user_id: str) -> List[Notification]:
        return await self.repository.list_notifications(user_id)

    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        return await self.repository.mark_notification_read(user_id, notification_id)

    async def _notify(
        self,
        workflow: Workflow,
        execution_id: Optional[str],
        level: str,
        message: str,
        status: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=workflow.user_id,
            workflow_id=workflow.id,
            execution_id=execution_id,
            level=level,
            message=message,
            status=status,
            created_at=self.clock(),
        )
        await self.repository.append_notification(notification)
        return notification

    async def _notify_run(
        self, workflow: Workflow, execution: WorkflowExecution, detail: Optional[str] = None
    ) -> None:
        if execution.status == "running":
            return
        message = f"Workflow {workflow.name} {execution.status.replace('_', ' ')}."
        if detail:
            message = f"{message} {detail}"
        elif execution.status == "failed" and execution.step_results:
            error = execution.step_results[-1].error_message
            if error:
                message = f"{message} {error}"
        await self._notify(
            workflow,
            execution.id,
            _NOTIFICATION_LEVELS.get(execution.status, "info"),
            message,
            status=execution.status,
        )

    # ------------------------------------------------------------------
    # Change history
    async def list_change_history(
        self, user_id: str, workflow_id: str, limit: Optional[int] = None
    ) -> List[WorkflowChangeEntry]:
        if limit is None:
            return await self.history.list(user_id, workflow_id)
        return await self.history.list(user_id, workflow_id, limit=limit)

    async def diff_change_entries(
        self, user_id: str, left_entry_id: str, right_entry_id: str
    ) -> WorkflowChangeDiff:
        entries = {entry.id: entry for entry in await self.repository.list_change_entries(user_id)}
        missing = [entry_id for entry_id in (left_entry_id, right_entry_id) if entry_id not in entries]
        if missing:
            raise WorkflowValidationError(f"Unknown change entry id(s): {', '.join(missing)}.")
        return self.history.diff(entries[left_entry_id], entries[right_entry_id])
