import pytest

from waystone.connectors import ConnectorRegistry, ConnectorResult
from waystone.contracts import Step, Workflow
from waystone.executor import StepExecutor, build_context, render_input_template


def _workflow(*steps: Step) -> Workflow:
    return Workflow(user_id="user-1", name="Inbox digest", natural_language_prompt="digest", steps=list(steps))


def test_render_json_template_keeps_types():
    context = {"root": {"limit": 5, "who": "ana"}, "current": {"summary": "three mails"}}
    payload = render_input_template('{"limit": "{{ root.limit }}", "note": "for {{root.who}}: {{ current.summary }}"}', context)
    assert payload == {"limit": 5, "note": "for ana: three mails"}


def test_render_plain_template_wraps_text():
    assert render_input_template("Hello {{ root.name }}", {"root": {"name": "Bo"}}) == {"input": "Hello Bo"}
    assert render_input_template(None, {}) == {}


def test_render_ignores_unsafe_paths():
    assert render_input_template("x{{ __proto__.y }}", {"__proto__": {"y": 1}}) == {"input": "x"}


@pytest.mark.asyncio
async def test_connector_step_passes_rendered_payload():
    calls = []

    async def email(action, payload, user_id):
        calls.append((action, payload, user_id))
        return ConnectorResult(ok=True, summary="Fetched 2 messages", data={"count": 2})

    registry = ConnectorRegistry()
    registry.register("email", email)
    step = Step(
        id="fetch",
        title="Fetch",
        kind="connector",
        action_id="connector.email.fetch_inbox",
        input_template='{"limit": "{{ root.limit }}"}',
    )

    result = await StepExecutor(registry).execute(
        user_id="user-1",
        workflow=_workflow(step),
        step=step,
        previous_results=[],
        context=build_context({"limit": 3}, []),
    )
    assert result.status == "completed"
    assert result.output_payload == {"action_id": "connector.email.fetch_inbox", "data": {"count": 2}}
    assert calls == [("fetch_inbox", {"limit": 3}, "user-1")]


@pytest.mark.asyncio
async def test_connector_failures_and_approvals():
    registry = ConnectorRegistry()
    registry.register("down", lambda action, payload, user_id: ConnectorResult(ok=False, error_message="503"))
    registry.register(
        "gated",
        lambda action, payload, user_id: ConnectorResult(ok=True, requires_approval=True, approval_reason="sends mail"),
    )

    def boom(action, payload, user_id):
        raise RuntimeError("socket closed")

    registry.register("crash", boom)
    executor = StepExecutor(registry)

    async def run(action_id):
        step = Step(title=action_id, kind="connector", action_id=action_id)
        return await executor.execute(
            user_id="u", workflow=_workflow(step), step=step, previous_results=[], context={}
        )

    failed = await run("connector.down.read")
    assert failed.status == "failed"
    assert failed.error_message == "503"

    gated = await run("connector.gated.send")
    assert gated.status == "approval_required"
    assert gated.output_payload["policy_reason"] == "sends mail"

    crashed = await run("connector.crash.read")
    assert crashed.status == "failed"
    assert "socket closed" in crashed.error_message

    unknown = await run("connector.nobody.read")
    assert unknown.status == "failed"


@pytest.mark.asyncio
async def test_transforms_artifacts_and_checkpoints():
    collect = Step(id="collect", title="Collect", kind="transform", action_id="transform.collect_context")
    summarize = Step(id="summarize", title="Summarize", kind="transform", action_id="transform.summarize")
    publish = Step(id="publish", title="Publish", kind="artifact", action_id="artifact.publish")
    review = Step(id="review", title="Review", kind="checkpoint", action_id="checkpoint.review")
    unknown = Step(id="mystery", title="Mystery", kind="transform", action_id="transform.mystery")
    workflow = _workflow(collect, summarize, publish, review, unknown)
    executor = StepExecutor()

    results = []
    for step in (collect, summarize, publish):
        results.append(
            await executor.execute(
                user_id="u",
                workflow=workflow,
                step=step,
                previous_results=list(results),
                context=build_context({}, results),
            )
        )
    assert [result.status for result in results] == ["completed"] * 3
    assert results[0].output_payload["query"] == "digest"
    assert "Collected workflow context" in results[1].output_payload["summary"]
    assert results[2].output_payload["artifact_title"] == "Inbox digest Output"
    assert results[2].output_payload["from_step_id"] == "summarize"

    checkpoint = await executor.execute(
        user_id="u", workflow=workflow, step=review, previous_results=results, context={}
    )
    assert checkpoint.status == "checkpoint_required"

    missing = await executor.execute(
        user_id="u", workflow=workflow, step=unknown, previous_results=[], context={}
    )
    assert missing.status == "failed"
    assert "Unsupported transform" in missing.error_message


def test_build_context_exposes_steps_and_current():
    context = build_context({"a": 1}, [])
    assert context == {"root": {"a": 1}, "steps": {}, "current": {}, "current_step_id": None}
