"""Dead-letter queue for executions that failed beyond automatic recovery."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .constants import MAX_DEAD_LETTER_ENTRIES
from .contracts import DeadLetterEntry, StepResult, TriggerType, utcnow
from .errors import DeadLetterNotFoundError
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Holds terminally failed runs until an operator resolves them.

    Resolving an entry never re-runs its workflow. Resubmission is a fresh
    ``run_workflow_by_id`` call, which callers can record with
    :meth:`mark_retrying`.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Callable[[], datetime] = utcnow,
        max_entries: int = MAX_DEAD_LETTER_ENTRIES,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._max_entries = max_entries

    async def append(
        self,
        *,
        user_id: str,
        workflow_id: str,
        reason: str,
        execution_id: Optional[str] = None,
        trigger_type: TriggerType = "manual",
        step_results: Sequence[StepResult] = (),
        retry_count: int = 0,
    ) -> DeadLetterEntry:
        now = self._clock()
        entry = DeadLetterEntry(
            user_id=user_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
            trigger_type=trigger_type,
            reason=reason,
            retry_count=retry_count,
            step_results=list(step_results),
            created_at=now,
            updated_at=now,
        )
        await self._repository.save_dead_letter(entry)
        logger.warning(
            f"Workflow {workflow_id} dead-lettered as {entry.id} "
            f"(execution={execution_id}): {reason}"
        )
        await self._trim(user_id)
        return entry

    async def _trim(self, user_id: str) -> None:
        entries = await self._repository.list_dead_letters(user_id)
        for stale in entries[self._max_entries :]:
            await self._repository.delete_dead_letter(user_id, stale.id)

    async def get(self, user_id: str, entry_id: str) -> DeadLetterEntry:
        entry = await self._repository.get_dead_letter(user_id, entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(entry_id)
        return entry

    async def list(self, user_id: str, include_resolved: bool = False) -> List[DeadLetterEntry]:
        """Unresolved entries newest first; ``include_resolved`` lists everything."""
        entries = await self._repository.list_dead_letters(user_id)
        if include_resolved:
            return entries
        return [entry for entry in entries if entry.status != "resolved"]

    async def mark_resolved(self, user_id: str, entry_id: str) -> DeadLetterEntry:
        entry = await self.get(user_id, entry_id)
        if entry.status == "resolved":
            return entry
        now = self._clock()
        entry.status = "resolved"
        entry.resolved_at = now
        entry.updated_at = now
        await self._repository.save_dead_letter(entry)
        logger.info(f"Dead-letter entry {entry_id} resolved")
        return entry

    async def mark_retrying(self, user_id: str, entry_id: str) -> DeadLetterEntry:
        entry = await self.get(user_id, entry_id)
        entry.status = "retrying"
        entry.retry_count += 1
        entry.updated_at = self._clock()
        await self._repository.save_dead_letter(entry)
        return entry

    async def escalations(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        escalate_after: timedelta = timedelta(hours=1),
    ) -> List[DeadLetterEntry]:
        """Unresolved entries that have waited longer than ``escalate_after``."""
        cutoff = (now or self._clock()) - escalate_after
        return [entry for entry in await self.list(user_id) if entry.created_at <= cutoff]
