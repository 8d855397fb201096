"""Admission-controlled pump that drains the queue within the host budget."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from task_pump.config import QueueSettings
from task_pump.queue.budget import ResourceBudget
from task_pump.queue.executor import ExecutionOutcome, TaskExecutor
from task_pump.queue.id_guard import IdentifierSpaceGuard
from task_pump.queue.models import PumpSummary
from task_pump.queue.orphans import OrphanDetector
from task_pump.queue.repository import TaskRepository
from task_pump.storage.common import utc_now

logger = logging.getLogger(__name__)

STOP_TIME_BUDGET = "time_budget"
STOP_MEMORY_BUDGET = "memory_budget"


class TaskRunner:
    """Claims and executes queued tasks one at a time.

    Before each claim the runner checks the remaining wall time and free
    memory; the store then refuses the claim if the queue is empty or the
    concurrency cap is reached. The first failing check ends the pump.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        executor: TaskExecutor,
        orphans: OrphanDetector,
        guard: IdentifierSpaceGuard,
        budget: ResourceBudget,
        settings: QueueSettings,
        max_concurrent_tasks: Callable[[], int],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.orphans = orphans
        self.guard = guard
        self.budget = budget
        self.settings = settings
        self.max_concurrent_tasks = max_concurrent_tasks
        self.clock = clock
        self.pre_execution_callbacks: list[Callable[[], Any]] = []

    def pump(self) -> PumpSummary:
        summary = PumpSummary()
        if self.pre_execution_callbacks and self.repository.count_queued_tasks() > 0:
            for callback in self.pre_execution_callbacks:
                callback()

        while True:
            stop_reason = self._budget_stop_reason()
            if stop_reason is not None:
                summary.stop_reason = stop_reason
                break

            now = self.clock()
            claim = self.repository.claim_next_task(
                max_concurrent_tasks=self.max_concurrent_tasks(),
                orphan_cutoff=self.orphans.cutoff(now),
                now=now,
            )
            if claim.task is None:
                summary.stop_reason = claim.reason
                break

            task = claim.task
            summary.claimed += 1
            summary.task_ids.append(task.task_id)
            logger.info("Claimed task %d: %s", task.task_id, self.executor.synopsis(task))

            outcome = self.executor.execute(task)
            if outcome is ExecutionOutcome.COMPLETED:
                summary.completed += 1
            elif outcome is ExecutionOutcome.REQUEUED:
                summary.requeued += 1
            elif outcome is ExecutionOutcome.STUCK:
                summary.stuck += 1

        logger.debug("Pump stopped after %d task(s): %s", summary.claimed, summary.stop_reason)
        summary.id_space_reset = self.guard.check()
        return summary

    def _budget_stop_reason(self) -> str | None:
        if self.budget.remaining_seconds() <= self.settings.min_seconds_to_run_task:
            return STOP_TIME_BUDGET
        if self.budget.free_memory_fraction() <= self.settings.min_free_memory_fraction:
            return STOP_MEMORY_BUDGET
        return None
