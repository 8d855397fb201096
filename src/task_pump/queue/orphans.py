"""Detection and recovery of running tasks whose process went away."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from task_pump.queue.budget import ResourceBudget
from task_pump.queue.models import TaskFilter, TaskPriority, TaskView
from task_pump.queue.repository import TaskRepository
from task_pump.storage.common import utc_now

logger = logging.getLogger(__name__)


class OrphanDetector:
    """A running task is orphaned once it started longer ago than one execution may last."""

    def __init__(self, *, repository: TaskRepository, budget: ResourceBudget) -> None:
        self.repository = repository
        self.budget = budget

    def cutoff(self, now: datetime | None = None) -> datetime:
        now = now or utc_now()
        return now - timedelta(seconds=self.budget.max_execution_seconds())

    def count_orphans(
        self,
        task_filter: TaskFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        return self.repository.count_orphaned_tasks(
            orphan_cutoff=self.cutoff(now),
            task_filter=task_filter,
        )

    def list_orphans(
        self,
        task_filter: TaskFilter | None = None,
        *,
        count: int = 100,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[TaskView]:
        return self.repository.list_orphaned_tasks(
            orphan_cutoff=self.cutoff(now),
            task_filter=task_filter,
            count=count,
            offset=offset,
        )

    def requeue_orphan(self, task_id: int, new_priority: int | None = None) -> int | None:
        """Move a running task back to the queue, optionally at a new priority.

        Returns the id the task was queued under, or None if it was not running.
        """

        new_id = self.repository.requeue_running_task(task_id, priority=new_priority)
        if new_id is None:
            logger.warning("Orphaned task %d is no longer running.", task_id)
        else:
            logger.info("Requeued orphaned task %d as %d.", task_id, new_id)
        return new_id

    def requeue_all_orphans(self, *, now: datetime | None = None) -> list[int]:
        """Requeue every orphan one priority level more urgent than before."""

        orphans = self.list_orphans(count=self.count_orphans(now=now), now=now)
        requeued: list[int] = []
        for task in orphans:
            new_id = self.requeue_orphan(
                task.task_id,
                new_priority=TaskPriority.clamp(int(task.priority) - 1),
            )
            if new_id is not None:
                requeued.append(new_id)
        return requeued
