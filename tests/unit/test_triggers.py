import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from waystone.contracts import EventSpec, ScheduleSpec, Trigger, Workflow
from waystone.triggers import TriggerEvent, TriggerManager, next_occurrence

NEXT_RUN = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _scheduled(workflow_id: str = "wf-sched", next_run_at: datetime = NEXT_RUN, **kwargs) -> Workflow:
    return Workflow(
        id=workflow_id,
        user_id="user-1",
        name=workflow_id,
        status=kwargs.pop("status", "ready"),
        trigger=Trigger(
            type="schedule",
            schedule=ScheduleSpec(interval_minutes=60, next_run_at=next_run_at),
            **kwargs,
        ),
    )


def _event(workflow_id: str, event_type: str = "keyword_match", keyword=None) -> Workflow:
    return Workflow(
        id=workflow_id,
        user_id="user-1",
        name=workflow_id,
        status="ready",
        trigger=Trigger(type="event", event=EventSpec(event_type=event_type, keyword=keyword)),
    )


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, workflow, trigger_type, variables):
        self.calls.append((workflow.id, trigger_type, variables))


def test_next_occurrence_skips_missed_intervals():
    now = NEXT_RUN + timedelta(hours=2, minutes=30)
    assert next_occurrence(NEXT_RUN, 60, now) == NEXT_RUN + timedelta(hours=3)
    assert next_occurrence(NEXT_RUN, 60, NEXT_RUN) == NEXT_RUN + timedelta(hours=1)


@pytest.mark.asyncio
async def test_tick_fires_only_when_due_and_advances():
    manager = TriggerManager()
    recorder = Recorder()
    manager.register(_scheduled(), recorder)

    assert await manager.tick(NEXT_RUN - timedelta(seconds=1)) == []
    await manager.drain()
    assert recorder.calls == []

    assert await manager.tick(NEXT_RUN) == ["wf-sched"]
    await manager.drain()
    assert len(recorder.calls) == 1
    assert recorder.calls[0][1] == "schedule"
    assert manager.get_registered("wf-sched").trigger.schedule.next_run_at == NEXT_RUN + timedelta(hours=1)

    # same instant again: already advanced, nothing fires
    assert await manager.tick(NEXT_RUN) == []
    await manager.drain()
    assert len(recorder.calls) == 1


@pytest.mark.asyncio
async def test_tick_orders_by_next_run_and_skips_inert_workflows():
    manager = TriggerManager()
    recorder = Recorder()
    manager.register(_scheduled("late", NEXT_RUN - timedelta(minutes=1)), recorder)
    manager.register(_scheduled("early", NEXT_RUN - timedelta(minutes=30)), recorder)
    manager.register(_scheduled("paused", NEXT_RUN - timedelta(minutes=40), status="paused"), recorder)
    manager.register(_scheduled("disabled", NEXT_RUN - timedelta(minutes=50), enabled=False), recorder)

    assert await manager.tick(NEXT_RUN) == ["early", "late"]
    await manager.drain()


@pytest.mark.asyncio
async def test_tick_does_not_wait_for_slow_runs():
    manager = TriggerManager()
    release = asyncio.Event()
    started = []

    async def slow(workflow, trigger_type, variables):
        started.append(workflow.id)
        await release.wait()

    manager.register(_scheduled("slow"), slow)
    manager.register(_scheduled("fast", NEXT_RUN + timedelta(seconds=1)), Recorder())

    fired = await asyncio.wait_for(manager.tick(NEXT_RUN + timedelta(seconds=1)), timeout=1)
    assert fired == ["slow", "fast"]
    await asyncio.sleep(0)
    assert manager.is_in_flight("slow")

    # a second due firing is skipped while the first run is still going
    assert await manager.tick(NEXT_RUN + timedelta(hours=5)) == ["fast"]

    release.set()
    await manager.drain()
    assert started == ["slow"]


@pytest.mark.asyncio
async def test_unregister_removes_workflow():
    manager = TriggerManager()
    recorder = Recorder()
    unregister = manager.register(_scheduled(), recorder)
    unregister()
    assert await manager.tick(NEXT_RUN) == []
    assert manager.registered_workflow_ids == []


@pytest.mark.asyncio
async def test_stale_unregister_keeps_newer_registration():
    manager = TriggerManager()
    stale = manager.register(_scheduled(), Recorder())
    manager.register(_scheduled(), Recorder())
    stale()
    assert manager.registered_workflow_ids == ["wf-sched"]


@pytest.mark.asyncio
async def test_dispatch_event_fans_out_to_all_matches():
    manager = TriggerManager()
    recorder = Recorder()
    manager.register(_event("invoice", keyword="invoice"), recorder)
    manager.register(_event("invoice-too", keyword="INVOICE"), recorder)
    manager.register(_event("any", event_type="new_message"), recorder)
    manager.register(_event("other", keyword="refund"), recorder)

    matched = await manager.dispatch_event(TriggerEvent(type="keyword_match", text="New INVOICE attached"))
    await manager.drain()

    assert sorted(matched) == ["invoice", "invoice-too"]
    assert sorted(call[0] for call in recorder.calls) == ["invoice", "invoice-too"]
    assert all(call[1] == "event" for call in recorder.calls)
    assert recorder.calls[0][2]["event"]["text"] == "New INVOICE attached"


@pytest.mark.asyncio
async def test_event_type_must_match_trigger_type():
    manager = TriggerManager()
    manager.register(_event("on-message", event_type="new_message"), Recorder())
    manager.register(_event("on-keyword", keyword="invoice"), Recorder())

    assert await manager.dispatch_event(TriggerEvent(type="keyword_match", text="nothing here")) == []
    assert await manager.dispatch_event(TriggerEvent(type="new_message", text="invoice attached")) == [
        "on-message"
    ]
    await manager.drain()


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_dispatch():
    manager = TriggerManager()

    async def boom(workflow, trigger_type, variables):
        raise RuntimeError("connector down")

    manager.register(_event("any", event_type="new_message"), boom)
    assert await manager.dispatch_event(TriggerEvent(text="hi")) == ["any"]
    await manager.drain()


@pytest.mark.asyncio
async def test_start_and_stop_lifecycle():
    now = NEXT_RUN
    manager = TriggerManager(clock=lambda: now, tick_interval=0.01)
    recorder = Recorder()
    manager.register(_scheduled(), recorder)

    manager.start()
    assert manager.running
    await asyncio.sleep(0.05)
    await manager.stop()

    assert not manager.running
    assert len(recorder.calls) == 1
