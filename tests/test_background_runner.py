import asyncio

import pytest

from waystone import BackgroundRunner, ConnectorRegistry, ConnectorResult, WorkflowEngine
from waystone.config import RunnerConfig, WaystoneConfig
from waystone.contracts import PolicyBudget, Step, Workflow, WorkflowPolicy
from waystone.errors import BackgroundRunError
from waystone.persistence import InMemoryWorkflowRepository

USER = "user-1"


def _engine(handler) -> WorkflowEngine:
    registry = ConnectorRegistry()
    registry.register("email", handler)
    return WorkflowEngine(InMemoryWorkflowRepository(), invoker=registry, config=WaystoneConfig())


def _inbox_workflow(policy=None) -> Workflow:
    return Workflow(
        id="wf-inbox",
        user_id=USER,
        name="Inbox digest",
        status="ready",
        policy=policy,
        steps=[
            Step(id="fetch", title="Fetch", kind="connector", action_id="connector.email.fetch_inbox"),
            Step(id="summarize", title="Summarize", kind="transform", action_id="transform.summarize"),
        ],
    )


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_the_run():
    calls = []

    def always_down(action, payload, user_id):
        calls.append(action)
        return ConnectorResult(ok=False, error_message="IMAP unavailable")

    engine = _engine(always_down)
    await engine.save_workflow(_inbox_workflow())
    sleep = SleepRecorder()
    runner = BackgroundRunner(engine, RunnerConfig(max_attempts=3, backoff_jitter=0), sleep=sleep)

    execution = await runner.run_in_background(USER, "wf-inbox")
    assert execution.status == "failed"
    assert execution.attempt == 3
    assert len(calls) == 3
    assert sleep.delays == [1.5, 2.25]

    entries = await engine.dead_letters.list(USER)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.execution_id == execution.id
    assert entry.reason == "IMAP unavailable"
    assert entry.retry_count == 2
    assert [result.step_id for result in entry.step_results] == ["fetch"]


@pytest.mark.asyncio
async def test_resolving_a_dead_letter_does_not_rerun():
    engine = _engine(lambda action, payload, user_id: ConnectorResult(ok=False, error_message="down"))
    await engine.save_workflow(_inbox_workflow())
    runner = BackgroundRunner(engine, RunnerConfig(max_attempts=1), sleep=SleepRecorder())

    await runner.run_in_background(USER, "wf-inbox")
    entry = (await engine.dead_letters.list(USER))[0]
    executions_before = await engine.list_executions(USER, "wf-inbox")

    resolved = await engine.dead_letters.mark_resolved(USER, entry.id)
    assert resolved.status == "resolved"
    assert await engine.dead_letters.list(USER) == []
    assert len(await engine.dead_letters.list(USER, include_resolved=True)) == 1
    assert len(await engine.list_executions(USER, "wf-inbox")) == len(executions_before)


@pytest.mark.asyncio
async def test_recovered_run_is_not_dead_lettered():
    attempts = []

    def flaky(action, payload, user_id):
        attempts.append(action)
        if len(attempts) == 1:
            return ConnectorResult(ok=False, error_message="timeout")
        return ConnectorResult(ok=True, summary="Fetched 1 message")

    engine = _engine(flaky)
    await engine.save_workflow(_inbox_workflow())
    runner = BackgroundRunner(engine, RunnerConfig(max_attempts=3), sleep=SleepRecorder())

    execution = await runner.run_in_background(USER, "wf-inbox")
    assert execution.status == "completed"
    assert execution.attempt == 2
    assert await engine.dead_letters.list(USER) == []


@pytest.mark.asyncio
async def test_timeout_records_failure_and_raises():
    async def hangs(action, payload, user_id):
        await asyncio.Event().wait()

    engine = _engine(hangs)
    await engine.save_workflow(_inbox_workflow())
    runner = BackgroundRunner(engine, RunnerConfig(execution_timeout=0.05), sleep=SleepRecorder())

    with pytest.raises(BackgroundRunError):
        await runner.run_in_background(USER, "wf-inbox")

    executions = await engine.list_executions(USER, "wf-inbox")
    assert len(executions) == 1
    assert executions[0].status == "failed"
    assert "exceeded workflow timeout" in executions[0].context["error"]

    entries = await engine.dead_letters.list(USER)
    assert len(entries) == 1
    assert entries[0].execution_id == executions[0].id


@pytest.mark.asyncio
async def test_policy_runtime_budget_overrides_default_timeout():
    async def hangs(action, payload, user_id):
        await asyncio.Event().wait()

    engine = _engine(hangs)
    policy = WorkflowPolicy(budget=PolicyBudget(max_runtime_seconds=0.05))
    await engine.save_workflow(_inbox_workflow(policy))
    runner = BackgroundRunner(engine, RunnerConfig(execution_timeout=60), sleep=SleepRecorder())

    with pytest.raises(BackgroundRunError, match="0.05s"):
        await runner.run_in_background(USER, "wf-inbox")


@pytest.mark.asyncio
async def test_heartbeats_fire_while_running():
    async def slow(action, payload, user_id):
        await asyncio.sleep(0.1)
        return ConnectorResult(ok=True, summary="done")

    engine = _engine(slow)
    await engine.save_workflow(_inbox_workflow())
    runner = BackgroundRunner(engine, RunnerConfig(heartbeat_interval=0.01), sleep=SleepRecorder())
    beats = []

    execution = await runner.submit(USER, "wf-inbox", on_heartbeat=beats.append)
    assert execution.status == "completed"
    assert len(beats) >= 2
