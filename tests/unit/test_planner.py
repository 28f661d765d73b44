from datetime import datetime, timezone

import pytest

from waystone.errors import WorkflowValidationError
from waystone.planner import KeywordWorkflowCompiler, infer_trigger, normalize_name

NOW = datetime(2026, 5, 4, 10, 30, tzinfo=timezone.utc)


def test_infer_trigger_variants():
    daily = infer_trigger("Every morning summarize my inbox", NOW)
    assert daily.type == "schedule"
    assert daily.schedule.interval_minutes == 1440
    assert daily.schedule.next_run_at == datetime(2026, 5, 5, 9, 0, tzinfo=timezone.utc)

    hourly = infer_trigger("hourly check", NOW)
    assert hourly.schedule.cron_like == "HOURLY"

    keyword = infer_trigger("Run on keyword: invoice", NOW)
    assert keyword.type == "event"
    assert keyword.event.event_type == "keyword_match"
    assert keyword.event.keyword == "invoice"

    message = infer_trigger("When a new message arrives, file it", NOW)
    assert message.event.event_type == "new_message"

    assert infer_trigger("do the thing", NOW).type == "manual"


def test_normalize_name_truncates():
    assert normalize_name("  a   b  ") == "a b"
    assert len(normalize_name("x" * 80)) == 48


@pytest.mark.asyncio
async def test_compile_builds_collect_summarize_publish_skeleton():
    compiler = KeywordWorkflowCompiler(clock=lambda: NOW)
    workflow = await compiler.compile("user-1", "Every morning summarize my inbox")
    assert workflow.status == "ready"
    assert [step.kind for step in workflow.steps] == ["connector", "transform", "artifact"]
    assert workflow.steps[0].action_id == "connector.email.fetch_inbox"
    assert workflow.plan_graph.entry_step_id == workflow.steps[0].id

    generic = await compiler.compile("user-1", "Think about roadmap")
    assert [step.action_id for step in generic.steps] == [
        "transform.collect_context",
        "transform.summarize",
        "artifact.publish",
    ]

    with_notes = await compiler.compile("user-1", "Use my notes about hiring before checking my inbox")
    assert with_notes.steps[0].title == "Query knowledge context"
    assert '"query": "hiring before checking my inbox"' in with_notes.steps[0].input_template
    assert len(with_notes.steps) == 4

    generic_notes = await compiler.compile("user-1", "Brief the team from notes on hiring")
    assert len(generic_notes.steps) == 3
    assert '"query": "hiring"' in generic_notes.steps[0].input_template


@pytest.mark.asyncio
async def test_empty_prompt_is_rejected():
    with pytest.raises(WorkflowValidationError):
        await KeywordWorkflowCompiler().compile("user-1", "   ")
