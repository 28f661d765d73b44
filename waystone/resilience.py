"""Helpers for picking up interrupted runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .contracts import StepResult, Workflow
from .plan_graph import ensure_plan_graph, next_declared_step_id


@dataclass
class ResumePlan:
    completed_step_ids: List[str] = field(default_factory=list)
    pending_step_ids: List[str] = field(default_factory=list)
    resume_from_step_id: Optional[str] = None


def build_resume_plan(workflow: Workflow, step_results: Sequence[StepResult]) -> ResumePlan:
    """Split ``workflow`` into completed and pending steps.

    The run resumes at the first step, in declaration order, that has no
    completed result. A failed or suspended step is retried from itself.
    """
    completed = {result.step_id for result in step_results if result.status == "completed"}
    completed_ids = [step.id for step in workflow.steps if step.id in completed]
    pending_ids = [step.id for step in workflow.steps if step.id not in completed]

    resume_from: Optional[str] = None
    if pending_ids:
        if not step_results:
            resume_from = ensure_plan_graph(workflow).entry_step_id or pending_ids[0]
        else:
            last = step_results[-1]
            if last.status == "completed":
                resume_from = next_declared_step_id(workflow, last.step_id)
                if resume_from in completed:
                    resume_from = pending_ids[0]
            else:
                resume_from = last.step_id
            resume_from = resume_from or pending_ids[0]
    return ResumePlan(
        completed_step_ids=completed_ids,
        pending_step_ids=pending_ids,
        resume_from_step_id=resume_from,
    )
