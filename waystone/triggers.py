"""Schedule and event activation of registered workflows."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_TICK_INTERVAL
from .contracts import EventType, Trigger, TriggerType, Workflow, utcnow

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[Workflow, TriggerType, Dict[str, Any]], Awaitable[Any]]

_INERT_STATUSES = ("paused", "archived")


class TriggerEvent(BaseModel):
    """Incoming event matched against event triggers."""

    type: EventType = "new_message"
    text: str = ""
    user_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class _Registration:
    workflow: Workflow
    callback: TriggerCallback
    token: int


def next_occurrence(next_run_at: datetime, interval_minutes: int, now: datetime) -> datetime:
    """Advance ``next_run_at`` by whole intervals until it lies after ``now``."""
    step = timedelta(minutes=max(interval_minutes, 1))
    upcoming = next_run_at
    while upcoming <= now:
        upcoming += step
    return upcoming


def is_armed(workflow: Workflow) -> bool:
    return workflow.trigger.enabled and workflow.status not in _INERT_STATUSES


def event_matches(trigger: Trigger, event: TriggerEvent) -> bool:
    if trigger.type != "event" or trigger.event is None:
        return False
    if trigger.event.event_type != event.type:
        return False
    if trigger.event.event_type == "new_message":
        return True
    keyword = (trigger.event.keyword or "").strip().lower()
    return bool(keyword) and keyword in event.text.lower()


class TriggerManager:
    """Fires schedule and event triggers for registered workflows.

    ``tick`` and ``dispatch_event`` never wait for the runs they start. Each
    run is a separate task, so one slow workflow cannot hold up the others.
    A workflow whose previous schedule firing is still running is skipped.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        self._clock = clock
        self.tick_interval = tick_interval
        self._registrations: Dict[str, _Registration] = {}
        self._tokens = itertools.count(1)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Registration
    def register(self, workflow: Workflow, callback: TriggerCallback) -> Callable[[], None]:
        """Subscribe ``workflow``; the returned callable unsubscribes it.

        Registering the same workflow again replaces the earlier registration,
        and the earlier unregister callable becomes a no-op.
        """
        token = next(self._tokens)
        self._registrations[workflow.id] = _Registration(
            workflow=workflow.model_copy(deep=True), callback=callback, token=token
        )
        logger.debug(f"Registered {workflow.trigger.type} trigger for workflow {workflow.id}")

        def unregister() -> None:
            current = self._registrations.get(workflow.id)
            if current is not None and current.token == token:
                del self._registrations[workflow.id]
                logger.debug(f"Unregistered trigger for workflow {workflow.id}")

        return unregister

    def update(self, workflow: Workflow) -> bool:
        """Refresh the stored copy of a registered workflow."""
        registration = self._registrations.get(workflow.id)
        if registration is None:
            return False
        registration.workflow = workflow.model_copy(deep=True)
        return True

    def get_registered(self, workflow_id: str) -> Optional[Workflow]:
        registration = self._registrations.get(workflow_id)
        return registration.workflow.model_copy(deep=True) if registration else None

    @property
    def registered_workflow_ids(self) -> List[str]:
        return sorted(self._registrations)

    def clear(self) -> None:
        self._registrations.clear()

    def is_in_flight(self, workflow_id: str) -> bool:
        task = self._in_flight.get(workflow_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Firing
    def _spawn(
        self,
        registration: _Registration,
        trigger_type: TriggerType,
        variables: Dict[str, Any],
    ) -> asyncio.Task:
        workflow = registration.workflow.model_copy(deep=True)
        task = asyncio.create_task(
            self._fire(registration.callback, workflow, trigger_type, variables)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fire(
        self,
        callback: TriggerCallback,
        workflow: Workflow,
        trigger_type: TriggerType,
        variables: Dict[str, Any],
    ) -> None:
        try:
            await callback(workflow, trigger_type, variables)
        except Exception:
            logger.exception(f"{trigger_type} trigger run failed for workflow {workflow.id}")

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every due schedule trigger, earliest ``next_run_at`` first.

        Returns the ids of the workflows that were fired.
        """
        now = now or self._clock()
        due = [
            registration
            for registration in self._registrations.values()
            if registration.workflow.trigger.type == "schedule"
            and registration.workflow.trigger.schedule is not None
            and is_armed(registration.workflow)
            and registration.workflow.trigger.schedule.next_run_at <= now
        ]
        due.sort(key=lambda registration: registration.workflow.trigger.schedule.next_run_at)

        fired: List[str] = []
        for registration in due:
            workflow = registration.workflow
            if self.is_in_flight(workflow.id):
                logger.info(f"Skipping schedule for workflow {workflow.id}: previous run in flight")
                continue
            schedule = workflow.trigger.schedule
            scheduled_for = schedule.next_run_at
            schedule.next_run_at = next_occurrence(
                scheduled_for, schedule.interval_minutes, now
            )
            self._in_flight[workflow.id] = self._spawn(
                registration, "schedule", {"scheduled_for": scheduled_for.isoformat()}
            )
            fired.append(workflow.id)
            logger.info(
                f"Schedule fired for workflow {workflow.id}; next run at {schedule.next_run_at.isoformat()}"
            )
        return fired

    async def dispatch_event(self, event: TriggerEvent) -> List[str]:
        """Fire every registered event trigger matching ``event``."""
        matched: List[str] = []
        for registration in list(self._registrations.values()):
            workflow = registration.workflow
            if event.user_id is not None and workflow.user_id != event.user_id:
                continue
            if not is_armed(workflow) or not event_matches(workflow.trigger, event):
                continue
            variables = {"event": event.model_dump()}
            self._spawn(registration, "event", variables)
            matched.append(workflow.id)
        if matched:
            logger.info(f"Event {event.type} matched {len(matched)} workflow(s)")
        return matched

    async def drain(self) -> None:
        """Wait for every run started by this manager to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Trigger tick failed")
            await asyncio.sleep(self.tick_interval)

    def start(self) -> None:
        """Start ticking every ``tick_interval`` seconds on the running loop."""
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Trigger manager started (tick every {self.tick_interval}s)")

    async def stop(self, drain: bool = True) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
            logger.info("Trigger manager stopped")
        if drain:
            await self.drain()
