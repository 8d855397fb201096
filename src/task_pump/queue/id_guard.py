"""Restart queued task ids before the identifier space runs out."""

from __future__ import annotations

import logging

from task_pump.config import QueueSettings
from task_pump.queue.budget import ResourceBudget
from task_pump.queue.repository import TaskRepository

logger = logging.getLogger(__name__)


class IdentifierSpaceGuard:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        budget: ResourceBudget,
        settings: QueueSettings,
    ) -> None:
        self.repository = repository
        self.budget = budget
        self.settings = settings

    @property
    def threshold(self) -> float:
        return self.settings.id_space_max * self.settings.id_reset_fraction

    def check(self) -> bool:
        """Reset the id sequence if the queue is empty and ids are nearly exhausted.

        Running rows keep their ids. Returns True when a reset happened.
        """

        if self.budget.remaining_seconds() <= self.settings.id_guard_min_seconds:
            return False
        reset = self.repository.reset_queued_ids_if_exhausted(threshold=self.threshold)
        if reset:
            logger.info("Queued task id sequence reset after passing %.0f.", self.threshold)
        return reset
