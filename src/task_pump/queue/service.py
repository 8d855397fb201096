"""Public task queue facade used by host applications and the CLI."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from task_pump.config import Settings
from task_pump.errors import NoCurrentTaskError, TaskStoreError
from task_pump.queue.budget import ProcessResourceBudget, ResourceBudget
from task_pump.queue.callbacks import CallbackRegistry
from task_pump.queue.executor import PeriodicDispatcher, TaskExecutor, run_periodic_event
from task_pump.queue.id_guard import IdentifierSpaceGuard
from task_pump.queue.models import (
    Callback,
    PumpSummary,
    TaskFilter,
    TaskKind,
    TaskPriority,
    TaskView,
)
from task_pump.queue.orphans import OrphanDetector
from task_pump.queue.repository import QueueSettingsView, TaskRepository
from task_pump.queue.runner import TaskRunner
from task_pump.storage.common import utc_now


class TaskQueue:
    """Persisted priority queue of callback tasks.

    Setting overrides made with ``persistent=False`` apply to this instance
    only; persistent ones are stored and seen by every process sharing the
    database.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        registry: CallbackRegistry,
        budget: ResourceBudget | None = None,
        repository: TaskRepository | None = None,
        periodic_dispatcher: PeriodicDispatcher = run_periodic_event,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.budget = budget or ProcessResourceBudget.from_settings(settings.host)
        self.repository = repository or TaskRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        self.clock = clock
        self.orphans = OrphanDetector(repository=self.repository, budget=self.budget)
        self.executor = TaskExecutor(
            repository=self.repository,
            registry=registry,
            budget=self.budget,
            settings=settings.queue,
            periodic_dispatcher=periodic_dispatcher,
        )
        self.guard = IdentifierSpaceGuard(
            repository=self.repository,
            budget=self.budget,
            settings=settings.queue,
        )
        self.runner = TaskRunner(
            repository=self.repository,
            executor=self.executor,
            orphans=self.orphans,
            guard=self.guard,
            budget=self.budget,
            settings=settings.queue,
            max_concurrent_tasks=self.get_max_concurrent_tasks,
            clock=clock,
        )
        self._initialized = False
        self._max_concurrent_tasks: int | None = None
        self._task_execution_enabled: bool | None = None

    @classmethod
    @contextmanager
    def open(
        cls,
        settings: Settings,
        registry: CallbackRegistry,
        budget: ResourceBudget | None = None,
        **kwargs: Any,
    ) -> Iterator[TaskQueue]:
        """Yield an initialized queue and close its store afterwards."""

        queue = cls(settings=settings, registry=registry, budget=budget, **kwargs)
        try:
            queue.init_schema()
            yield queue
        finally:
            queue.close()

    def init_schema(self) -> None:
        self.repository.init_schema()
        self._initialized = True

    def close(self) -> None:
        self.repository.close()

    def _store(self) -> TaskRepository:
        if not self._initialized:
            raise TaskStoreError("Task store is not initialized; call init_schema() first.")
        return self.repository

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the store's writer lock across several task operations.

        Every queue call made inside the block runs in one ``BEGIN IMMEDIATE``
        transaction, so other processes cannot interleave; for example a
        `task_exists` check followed by an `enqueue` or `delete_task`. The
        changes commit when the block exits and roll back if it raises.
        `pump()` cannot run inside the block.
        """

        with self._store().atomic():
            yield

    # ---- enqueue ------------------------------------------------------------

    def enqueue(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        priority: int = TaskPriority.LOW,
        description: str = "",
    ) -> int:
        return self._store().enqueue_task(callback, parameters, priority, description)

    def enqueue_unique(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        priority: int = TaskPriority.LOW,
        description: str = "",
    ) -> bool:
        return self._store().enqueue_unique_task(callback, parameters, priority, description)

    def enqueue_periodic(  # noqa: PLR0913
        self,
        event_name: str,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        priority: int = TaskPriority.LOW,
        description: str = "",
    ) -> bool:
        """Queue a periodic event run unless the same callback is already pending."""

        return self._store().enqueue_unique_task(
            callback,
            parameters,
            priority,
            description,
            kind=TaskKind.PERIODIC,
            periodic_event=event_name,
        )

    def task_exists(self, callback: Callback, parameters: Sequence[Any] | None = None) -> bool:
        return self._store().task_exists(callback, parameters)

    # ---- queries ------------------------------------------------------------

    def count_queued_tasks(self, task_filter: TaskFilter | None = None) -> int:
        return self._store().count_queued_tasks(task_filter)

    def list_queued_tasks(
        self,
        task_filter: TaskFilter | None = None,
        *,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        return self._store().list_queued_tasks(task_filter, count=count, offset=offset)

    def count_running_tasks(self, task_filter: TaskFilter | None = None) -> int:
        return self._store().count_running_tasks(
            orphan_cutoff=self.orphans.cutoff(self.clock()),
            task_filter=task_filter,
        )

    def list_running_tasks(
        self,
        task_filter: TaskFilter | None = None,
        *,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        return self._store().list_running_tasks(
            orphan_cutoff=self.orphans.cutoff(self.clock()),
            task_filter=task_filter,
            count=count,
            offset=offset,
        )

    def count_orphaned_tasks(self, task_filter: TaskFilter | None = None) -> int:
        self._store()
        return self.orphans.count_orphans(task_filter, now=self.clock())

    def list_orphaned_tasks(
        self,
        task_filter: TaskFilter | None = None,
        *,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        self._store()
        return self.orphans.list_orphans(task_filter, count=count, offset=offset, now=self.clock())

    def get_task_ids(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
    ) -> list[int]:
        """Ids of matching queued and (non-orphaned) running tasks."""

        return sorted(
            [
                *self.get_queued_task_ids(callback, parameters),
                *self.get_running_task_ids(callback, parameters),
            ],
        )

    def get_queued_task_ids(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
    ) -> list[int]:
        return self._store().get_queued_task_ids(callback, parameters)

    def get_running_task_ids(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
    ) -> list[int]:
        return self._store().get_running_task_ids(
            callback,
            parameters,
            orphan_cutoff=self.orphans.cutoff(self.clock()),
        )

    def get_task(self, task_id: int) -> TaskView | None:
        return self._store().get_task(task_id)

    def delete_task(self, task_id: int) -> int:
        return self._store().delete_task(task_id)

    def synopsis(self, task: TaskView) -> str:
        return self.executor.synopsis(task)

    # ---- execution ----------------------------------------------------------

    def pump(self) -> PumpSummary:
        """Run queued tasks until the budget, the queue or the concurrency cap stops it."""

        if self._store().in_atomic:
            raise TaskStoreError("pump() cannot run inside an atomic() block.")
        return self.runner.pump()

    def register_pre_execution_callback(self, callback: Callable[[], Any]) -> None:
        """Run `callback` at the start of each pump that finds queued work."""

        self.runner.pre_execution_callbacks.append(callback)

    def request_self_requeue(self, requeue: bool = True) -> None:
        """Ask for the currently executing task to be queued again when it returns."""

        context = self.executor.current_context
        if context is None:
            raise NoCurrentTaskError("No task is currently executing.")
        context.requeue_requested = requeue

    def current_priority(self) -> TaskPriority | None:
        context = self.executor.current_context
        return context.task.priority if context is not None else None

    def next_higher_priority(self, priority: int | None = None) -> TaskPriority | None:
        if priority is None:
            priority = self.current_priority()
            if priority is None:
                return None
        return TaskPriority.clamp(int(priority) - 1)

    def next_lower_priority(self, priority: int | None = None) -> TaskPriority | None:
        if priority is None:
            priority = self.current_priority()
            if priority is None:
                return None
        return TaskPriority.clamp(int(priority) + 1)

    # ---- orphans ------------------------------------------------------------

    def requeue_orphan(self, task_id: int, new_priority: int | None = None) -> int | None:
        self._store()
        return self.orphans.requeue_orphan(task_id, new_priority)

    def requeue_all_orphans(self) -> list[int]:
        self._store()
        return self.orphans.requeue_all_orphans(now=self.clock())

    # ---- settings -----------------------------------------------------------

    def get_max_concurrent_tasks(self) -> int:
        if self._max_concurrent_tasks is not None:
            return self._max_concurrent_tasks
        stored = self._stored_settings().max_concurrent_tasks
        if stored is not None:
            return stored
        return self.settings.queue.default_max_concurrent_tasks

    def set_max_concurrent_tasks(self, value: int, *, persistent: bool = False) -> int:
        if value <= 0:
            raise ValueError("max_concurrent_tasks must be a positive integer.")
        if persistent:
            self._store().update_settings(max_concurrent_tasks=value)
            self._max_concurrent_tasks = None
        else:
            self._max_concurrent_tasks = value
        return self.get_max_concurrent_tasks()

    def task_execution_enabled(self) -> bool:
        """Advisory flag hosts consult before calling `pump`."""

        if self._task_execution_enabled is not None:
            return self._task_execution_enabled
        return self._stored_settings().task_execution_enabled

    def set_task_execution_enabled(self, value: bool, *, persistent: bool = False) -> bool:
        if persistent:
            self._store().update_settings(task_execution_enabled=value)
            self._task_execution_enabled = None
        else:
            self._task_execution_enabled = value
        return self.task_execution_enabled()

    def last_task_run_at(self) -> datetime:
        return self._stored_settings().last_task_run_at

    def _stored_settings(self) -> QueueSettingsView:
        stored = self._store().get_settings()
        if stored is None:
            raise TaskStoreError("Unable to load task queue settings.")
        return stored
