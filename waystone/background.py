"""Off-request-path execution with heartbeats, bounded retries and DLQ handoff."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .config import RunnerConfig
from .contracts import TriggerType, WorkflowExecution
from .engine import WorkflowEngine
from .errors import BackgroundRunError
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

HeartbeatCallback = Callable[[datetime], Union[None, Awaitable[None]]]


class BackgroundRunner:
    """Runs workflows through the engine without blocking the caller's path.

    A run that ends ``failed`` is retried as a whole, with exponential
    backoff, up to ``max_attempts`` times. The last failure is pushed to the
    dead-letter queue. Checkpoint and approval pauses are not failures.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        config: Optional[RunnerConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config.runner
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    def _timeout_for(self, policy_timeout: Optional[float]) -> float:
        if policy_timeout is not None and policy_timeout > 0:
            return float(policy_timeout)
        return self.config.execution_timeout

    async def _heartbeat(self, on_heartbeat: HeartbeatCallback) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                outcome = on_heartbeat(self.engine.clock())
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Heartbeat callback failed")

    async def run_in_background(
        self,
        user_id: str,
        workflow_id: str,
        trigger_type: TriggerType = "manual",
        on_heartbeat: Optional[HeartbeatCallback] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Run a workflow to completion, retrying failed runs.

        Returns the final execution, which is ``failed`` when every attempt
        failed.

        Raises:
            BackgroundRunError: If an attempt exceeds the run timeout. The
                run is recorded as failed and dead-lettered first.
        """
        workflow = await self.engine.get_workflow(user_id, workflow_id)
        policy_timeout = workflow.policy.budget.max_runtime_seconds if workflow.policy else None
        timeout = self._timeout_for(policy_timeout)
        max_attempts = max(1, self.config.max_attempts)

        heartbeat = asyncio.create_task(self._heartbeat(on_heartbeat)) if on_heartbeat else None
        try:
            execution: Optional[WorkflowExecution] = None
            for attempt in range(1, max_attempts + 1):
                started_at = self.engine.clock()
                try:
                    execution = await asyncio.wait_for(
                        self.engine.run_workflow_by_id(
                            user_id, workflow_id, trigger_type=trigger_type, variables=variables
                        ),
                        timeout,
                    )
                except asyncio.TimeoutError:
                    message = f"Background execution exceeded workflow timeout ({timeout}s)."
                    failed = await self.engine.record_failed_run(
                        user_id, workflow_id, trigger_type, started_at, message, attempt
                    )
                    await self.engine.dead_letters.append(
                        user_id=user_id,
                        workflow_id=workflow_id,
                        execution_id=failed.id,
                        trigger_type=trigger_type,
                        reason=message,
                        step_results=failed.step_results,
                        retry_count=attempt - 1,
                    )
                    raise BackgroundRunError(
                        f"Background run failed: {message} (execution={failed.id})"
                    ) from None

                if execution.attempt != attempt:
                    execution.attempt = attempt
                    await self.engine.repository.save_execution(execution)

                if execution.status != "failed":
                    return execution

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} of workflow {workflow_id} failed "
                    f"(execution={execution.id})"
                )
                if attempt < max_attempts:
                    delay = compute_backoff(
                        attempt, self.config.backoff_base, self.config.backoff_jitter
                    )
                    await self._sleep(delay)

            reason = self._failure_reason(execution)
            await self.engine.dead_letters.append(
                user_id=user_id,
                workflow_id=workflow_id,
                execution_id=execution.id,
                trigger_type=trigger_type,
                reason=reason,
                step_results=execution.step_results,
                retry_count=max_attempts - 1,
            )
            return execution
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

    def submit(
        self,
        user_id: str,
        workflow_id: str,
        trigger_type: TriggerType = "manual",
        on_heartbeat: Optional[HeartbeatCallback] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        """Schedule :meth:`run_in_background` as a task and return it."""
        task = asyncio.create_task(
            self.run_in_background(user_id, workflow_id, trigger_type, on_heartbeat, variables)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _failure_reason(execution: WorkflowExecution) -> str:
        for result in reversed(execution.step_results):
            if result.status == "failed":
                return result.error_message or result.output_summary or "Step failed."
        return "Workflow execution failed."
