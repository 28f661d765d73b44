"""Compiling natural-language prompts into workflow skeletons."""

from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from .contracts import EventSpec, PlanGraph, ScheduleSpec, Step, Trigger, Workflow, utcnow
from .errors import WorkflowValidationError

MAX_NAME_LENGTH = 48

# (prompt pattern, source step) pairs, checked in order
_SOURCES: List[Tuple[str, dict]] = [
    (
        r"email|inbox|mail",
        {
            "title": "Fetch inbox",
            "description": "Read the latest email messages.",
            "action_id": "connector.email.fetch_inbox",
            "input_template": '{"limit": 10}',
            "summary": ("Summarize emails", "Aggregate key points and action items."),
            "publish": ("Publish inbox artifact", "Create an inbox artifact with summary output."),
        },
    ),
    (
        r"calendar|event|meeting|schedule|caldav",
        {
            "title": "List calendar events",
            "description": "Load upcoming events from the connected calendar.",
            "action_id": "connector.calendar.list_events",
            "input_template": '{"limit": 10}',
            "summary": (
                "Summarize calendar priorities",
                "Summarize event cadence and notable conflicts.",
            ),
            "publish": ("Publish schedule briefing", "Publish calendar summary artifact."),
        },
    ),
    (
        r"gdocs|google doc|document|docs?\b",
        {
            "title": "List Google Docs",
            "description": "Load available Google documents.",
            "action_id": "connector.gdocs.list_documents",
            "input_template": '{"limit": 10}',
            "summary": (
                "Extract document highlights",
                "Generate concise highlights from the loaded documents.",
            ),
            "publish": ("Publish document digest", "Publish synthesis as an inbox artifact."),
        },
    ),
    (
        r"notion|page|workspace",
        {
            "title": "List Notion pages",
            "description": "Read available pages from the Notion workspace.",
            "action_id": "connector.notion.list_pages",
            "input_template": None,
            "summary": ("Extract key points", "Summarize notable updates from the pages."),
            "publish": ("Publish workspace digest", "Publish summary as an inbox artifact."),
        },
    ),
]


class WorkflowCompiler(Protocol):
    """Turns a natural-language prompt into a draft workflow."""

    async def compile(self, user_id: str, prompt: str) -> Workflow:
        """Return an unsaved workflow for ``prompt``."""


def normalize_name(prompt: str) -> str:
    compact = " ".join(prompt.split())
    if not compact:
        return "Untitled Workflow"
    if len(compact) > MAX_NAME_LENGTH:
        return f"{compact[: MAX_NAME_LENGTH - 3]}..."
    return compact


def _next_morning(now: datetime) -> datetime:
    target = now.replace(hour=9, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


def infer_trigger(prompt: str, now: datetime) -> Trigger:
    lowered = prompt.lower()
    if re.search(r"every morning|daily|every day", lowered):
        return Trigger(
            type="schedule",
            schedule=ScheduleSpec(
                interval_minutes=24 * 60, next_run_at=_next_morning(now), cron_like="DAILY@09:00"
            ),
        )
    if re.search(r"every hour|hourly", lowered):
        return Trigger(
            type="schedule",
            schedule=ScheduleSpec(
                interval_minutes=60, next_run_at=now + timedelta(hours=1), cron_like="HOURLY"
            ),
        )
    keyword = re.search(r"keyword[:\s]+([a-z0-9_-]+)", lowered)
    if keyword or re.search(r"when.*message", lowered):
        return Trigger(
            type="event",
            event=EventSpec(
                event_type="keyword_match" if keyword else "new_message",
                keyword=keyword.group(1) if keyword else None,
            ),
        )
    return Trigger(type="manual")


def infer_context_query(prompt: str) -> Optional[str]:
    """Topic for a leading context-collection step, if the prompt asks for one."""
    lowered = prompt.strip().lower()
    if not re.search(r"knowledge|context|notes?\b|memor(y|ies)", lowered):
        return None
    topic = re.search(r"(?:notes?|knowledge|context|memories?)\s+(?:on|about|for)\s+([^,.!?]+)", lowered)
    if topic:
        return topic.group(1).strip()
    return prompt.strip()


def infer_steps(prompt: str) -> List[Step]:
    lowered = prompt.lower()
    source = next((spec for pattern, spec in _SOURCES if re.search(pattern, lowered)), None)

    if source is None:
        steps = [
            Step(
                title="Collect source data",
                description="Gather context required for this workflow.",
                kind="transform",
                action_id="transform.collect_context",
            ),
            Step(
                title="Generate synthesis",
                description="Synthesize concise recommendations.",
                kind="transform",
                action_id="transform.summarize",
            ),
            Step(
                title="Publish artifact",
                description="Store output as an inbox artifact.",
                kind="artifact",
                action_id="artifact.publish",
            ),
        ]
    else:
        steps = [
            Step(
                title=source["title"],
                description=source["description"],
                kind="connector",
                action_id=source["action_id"],
                input_template=source["input_template"],
            ),
            Step(
                title=source["summary"][0],
                description=source["summary"][1],
                kind="transform",
                action_id="transform.summarize",
            ),
            Step(
                title=source["publish"][0],
                description=source["publish"][1],
                kind="artifact",
                action_id="artifact.publish",
            ),
        ]

    query = infer_context_query(prompt)
    if not query:
        return steps
    if steps[0].action_id == "transform.collect_context":
        steps[0].input_template = json.dumps({"query": query, "top_k": 4})
    else:
        steps.insert(
            0,
            Step(
                title="Query knowledge context",
                description="Retrieve relevant notes and prior artifacts before execution.",
                kind="transform",
                action_id="transform.collect_context",
                input_template=json.dumps({"query": query, "top_k": 4}),
            ),
        )
    return steps


class KeywordWorkflowCompiler:
    """Rule-based compiler used when no language model is configured."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    async def compile(self, user_id: str, prompt: str) -> Workflow:
        prompt = prompt.strip()
        if not prompt:
            raise WorkflowValidationError("Workflow prompt is required.")
        now = self._clock()
        steps = infer_steps(prompt)
        return Workflow(
            user_id=user_id,
            name=normalize_name(prompt),
            description=f"Auto-generated plan from prompt: {prompt}",
            natural_language_prompt=prompt,
            trigger=infer_trigger(prompt, now),
            steps=steps,
            plan_graph=PlanGraph(entry_step_id=steps[0].id),
            status="ready",
            created_at=now,
            updated_at=now,
        )
