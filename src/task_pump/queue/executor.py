"""Runs one claimed task and settles its running record."""

from __future__ import annotations

import functools
import gc
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from task_pump.config import QueueSettings
from task_pump.queue.budget import ResourceBudget
from task_pump.queue.callbacks import CONTEXT_KWARG, CallbackRegistry, ResolvedCallback
from task_pump.queue.models import TaskKind, TaskView
from task_pump.queue.repository import TaskRepository
from task_pump.queue.synopsis import format_synopsis

logger = logging.getLogger(__name__)

PeriodicDispatcher = Callable[[str | None, Callable[..., Any], list[Any]], Any]


def run_periodic_event(
    event_name: str | None,
    func: Callable[..., Any],
    parameters: list[Any],
) -> Any:
    """Default periodic dispatcher: call the wrapped callback directly."""

    return func(*parameters)


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    REQUEUED = "requeued"
    STUCK = "stuck"
    VANISHED = "vanished"


@dataclass(slots=True)
class ExecutionContext:
    """State of the task currently executing in this process."""

    task: TaskView
    requeue_requested: bool = False

    def request_requeue(self) -> None:
        self.requeue_requested = True


class TaskExecutor:
    """Invokes task callbacks and moves their running rows afterwards."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: CallbackRegistry,
        budget: ResourceBudget,
        settings: QueueSettings,
        periodic_dispatcher: PeriodicDispatcher = run_periodic_event,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.budget = budget
        self.settings = settings
        self.periodic_dispatcher = periodic_dispatcher
        self.current_context: ExecutionContext | None = None

    def synopsis(self, task: TaskView) -> str:
        return format_synopsis(
            task.callback,
            task.parameters,
            display_name=self.registry.display_name(task.callback),
        )

    def execute(self, task: TaskView) -> ExecutionOutcome:
        """Run a task that has already been claimed into the running set.

        Exceptions raised by the task body are logged and re-raised; the
        running row is left in place and eventually reported as an orphan.
        """

        resolved = self.registry.resolve(task.callback)
        if resolved is None:
            logger.error("Task %s had invalid callback.", self.synopsis(task))
            outcome = ExecutionOutcome.STUCK
        else:
            outcome = self._run(task, resolved)

        pruned = self.repository.prune_running_tasks(
            max_to_track=self.settings.max_running_tasks_to_track,
        )
        if pruned:
            logger.debug("Pruned %d running task records.", pruned)
        return outcome

    def _run(self, task: TaskView, resolved: ResolvedCallback) -> ExecutionOutcome:
        context = ExecutionContext(task=task)
        invoke = resolved.func
        if resolved.pass_context:
            invoke = functools.partial(resolved.func, **{CONTEXT_KWARG: context})
        parameters = list(task.parameters or [])

        free_before = self.budget.free_memory_bytes()
        self.current_context = context
        try:
            if task.kind is TaskKind.PERIODIC:
                self.periodic_dispatcher(task.periodic_event, invoke, parameters)
            elif parameters:
                invoke(*parameters)
            else:
                invoke()
        except Exception:
            logger.error("Task %s raised an exception.", self.synopsis(task), exc_info=True)
            raise
        finally:
            self.current_context = None

        self._log_memory_leak(task, free_before)

        if context.requeue_requested:
            return self._requeue(task)
        self.repository.delete_running_task(task.task_id)
        return ExecutionOutcome.COMPLETED

    def _requeue(self, task: TaskView) -> ExecutionOutcome:
        new_id = self.repository.requeue_running_task(task.task_id)
        if new_id is None:
            logger.warning("Failed to requeue task with ID: %d", task.task_id)
            return ExecutionOutcome.VANISHED
        logger.info("Requeued task %d as %d.", task.task_id, new_id)
        return ExecutionOutcome.REQUEUED

    def _log_memory_leak(self, task: TaskView, free_before: int) -> None:
        gc.collect()
        used = free_before - self.budget.free_memory_bytes()
        threshold = self.budget.memory_ceiling_bytes() * self.settings.memory_leak_log_fraction
        if used <= threshold:
            return
        current = self.repository.get_task(task.task_id)
        synopsis = (
            f"Deleted Task with ID {task.task_id}" if current is None else self.synopsis(current)
        )
        logger.debug("Task %s leaked %s bytes.", synopsis, f"{used:,}")
