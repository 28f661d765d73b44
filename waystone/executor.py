"""Execution of a single workflow step."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .conditions import resolve_path
from .connectors import ConnectorInvoker, ConnectorRegistry
from .constants import SUMMARY_WINDOW
from .contracts import Step, StepResult, StepStatus, Workflow, utcnow

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


@dataclass
class StepOutcome:
    status: StepStatus
    summary: str
    payload: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None


TransformHandler = Callable[[Step, Dict[str, Any], Sequence[StepResult], Workflow], StepOutcome]


# ----------------------------------------------------------------------
# Run context


def step_context(result: StepResult) -> Dict[str, Any]:
    return {
        "status": result.status,
        "summary": result.output_summary,
        "output": result.output_payload,
    }


def build_context(
    root: Optional[Dict[str, Any]], results: Sequence[StepResult]
) -> Dict[str, Any]:
    """Context that templates and branch conditions read from.

    ``steps`` is keyed by step id and ``current`` aliases the latest result.
    """
    steps = {result.step_id: step_context(result) for result in results}
    current = step_context(results[-1]) if results else {}
    return {
        "root": dict(root or {}),
        "steps": steps,
        "current": current,
        "current_step_id": results[-1].step_id if results else None,
    }


# ----------------------------------------------------------------------
# Input templates


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def render_text(template: str, context: Dict[str, Any]) -> str:
    return _PLACEHOLDER.sub(lambda match: _stringify(resolve_path(context, match.group(1))), template)


def _render_value(value: Any, context: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return resolve_path(context, whole.group(1))
        return render_text(value, context)
    if isinstance(value, list):
        return [_render_value(item, context) for item in value]
    if isinstance(value, dict):
        return {key: _render_value(item, context) for key, item in value.items()}
    return value


def render_input_template(template: Optional[str], context: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve ``template`` into a connector/transform payload.

    JSON object templates keep their structure; a string value that is a
    single placeholder takes the referenced value as-is. Any other template is
    rendered as text under the ``input`` key.
    """
    if not template or not template.strip():
        return {}
    try:
        parsed = json.loads(template)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return _render_value(parsed, context)
    return {"input": render_text(template, context)}


# ----------------------------------------------------------------------
# Built-in transforms


def summarize_previous(previous: Sequence[StepResult]) -> str:
    if not previous:
        return "No prior outputs available."
    lines = [
        f"- {result.output_summary.strip()}"
        for result in previous[-SUMMARY_WINDOW:]
        if result.output_summary.strip()
    ]
    if not lines:
        return "No summarized output available from previous steps."
    return "\n".join(lines)


def collect_context(
    step: Step, payload: Dict[str, Any], previous: Sequence[StepResult], workflow: Workflow
) -> StepOutcome:
    snapshot = [
        {"step_id": result.step_id, "summary": result.output_summary, "status": result.status}
        for result in previous
    ]
    query = payload.get("query") or workflow.natural_language_prompt or workflow.name
    return StepOutcome(
        status="completed",
        summary=f"Collected workflow context from {len(previous)} prior step(s).",
        payload={"query": query, "input": payload, "snapshot": snapshot},
    )


def summarize(
    step: Step, payload: Dict[str, Any], previous: Sequence[StepResult], workflow: Workflow
) -> StepOutcome:
    return StepOutcome(
        status="completed",
        summary=f"Generated synthesis from {len(previous)} prior step(s).",
        payload={
            "summary": summarize_previous(previous),
            "source_step_ids": [result.step_id for result in previous],
        },
    )


DEFAULT_TRANSFORMS: Dict[str, TransformHandler] = {
    "transform.collect_context": collect_context,
    "transform.summarize": summarize,
}


def publish_artifact(previous: Sequence[StepResult], workflow: Workflow) -> StepOutcome:
    last = previous[-1] if previous else None
    body = ""
    if last is not None:
        body = str(last.output_payload.get("summary") or last.output_summary or "")
    return StepOutcome(
        status="completed",
        summary="Published workflow artifact.",
        payload={
            "artifact_title": f"{workflow.name} Output",
            "artifact_body": body or "No generated output.",
            "from_step_id": last.step_id if last else None,
        },
    )


# ----------------------------------------------------------------------


class StepExecutor:
    """Runs one step according to its kind and records a :class:`StepResult`."""

    def __init__(
        self,
        invoker: Optional[ConnectorInvoker] = None,
        transforms: Optional[Dict[str, TransformHandler]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._invoker = invoker or ConnectorRegistry()
        self._transforms = {**DEFAULT_TRANSFORMS, **(transforms or {})}
        self._clock = clock

    def register_transform(self, action_id: str, handler: TransformHandler) -> None:
        self._transforms[action_id] = handler

    async def execute(
        self,
        *,
        user_id: str,
        workflow: Workflow,
        step: Step,
        previous_results: List[StepResult],
        context: Dict[str, Any],
    ) -> StepResult:
        started_at = self._clock()
        try:
            payload = render_input_template(step.input_template, context)
            outcome = await self._run(user_id, workflow, step, payload, previous_results)
        except Exception as exc:
            logger.exception(f"Step {step.id} of workflow {workflow.id} raised")
            outcome = StepOutcome(
                status="failed",
                summary=f"Step failed: {exc}",
                error_message=str(exc),
            )

        finished_at = max(self._clock(), started_at)
        return StepResult(
            workflow_id=workflow.id,
            step_id=step.id,
            status=outcome.status,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
            output_summary=outcome.summary,
            output_payload=outcome.payload,
            error_message=outcome.error_message,
        )

    async def _run(
        self,
        user_id: str,
        workflow: Workflow,
        step: Step,
        payload: Dict[str, Any],
        previous: List[StepResult],
    ) -> StepOutcome:
        if step.kind == "connector":
            return await self._run_connector(user_id, step, payload)

        if step.kind == "transform":
            handler = self._transforms.get(step.action_id)
            if handler is None:
                message = f"Unsupported transform action: {step.action_id}"
                return StepOutcome(status="failed", summary=message, error_message=message)
            return handler(step, payload, previous, workflow)

        if step.kind == "artifact":
            if step.action_id != "artifact.publish":
                message = f"Unsupported artifact action: {step.action_id}"
                return StepOutcome(status="failed", summary=message, error_message=message)
            return publish_artifact(previous, workflow)

        return StepOutcome(
            status="checkpoint_required",
            summary=f'Checkpoint "{step.title}" requires review before continuing.',
        )

    async def _run_connector(
        self, user_id: str, step: Step, payload: Dict[str, Any]
    ) -> StepOutcome:
        result = await self._invoker.invoke(step.action_id, payload, user_id)

        if result.requires_approval:
            reason = result.approval_reason or "Connector action requires approval."
            return StepOutcome(
                status="approval_required",
                summary=f"Connector action blocked pending approval: {reason}",
                payload={"action_id": step.action_id, "policy_reason": reason},
            )

        if not result.ok:
            error = result.error_message or "Connector execution failed."
            return StepOutcome(
                status="failed",
                summary=result.summary or "Connector execution failed.",
                payload={"connector_result": result.model_dump()},
                error_message=error,
            )

        return StepOutcome(
            status="completed",
            summary=result.summary,
            payload={"action_id": step.action_id, "data": result.data},
        )
