"""Controllers for task queue CLI commands."""

from __future__ import annotations

import importlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from task_pump.config import Settings
from task_pump.queue.callbacks import CallbackRegistry
from task_pump.queue.models import TaskView
from task_pump.queue.service import TaskQueue

TASK_STATES = ("queued", "running", "orphaned")


@dataclass(slots=True)
class QueueCommand:
    """CLI input for commands that only need the store."""

    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    state: str
    limit: int = 100
    offset: int = 0


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task inspection and mutation."""

    db_path: Path | None
    task_id: int
    priority: int | None = None


@dataclass(slots=True)
class PumpCommand:
    """CLI input for a foreground pump."""

    db_path: Path | None
    registry: str | None


@dataclass(slots=True)
class SettingsCommand:
    """CLI input for persisted queue settings."""

    db_path: Path | None
    max_tasks: int | None = None
    enabled: bool | None = None


class TaskQueueCliController:
    """Coordinates queue inspection, maintenance and pump CLI operations."""

    def stats(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            queued = queue.count_queued_tasks()
            running = queue.count_running_tasks()
            orphaned = queue.count_orphaned_tasks()
            max_tasks = queue.get_max_concurrent_tasks()
            enabled = queue.task_execution_enabled()
            last_run = queue.last_task_run_at()

        return [
            f"Queued: {queued}",
            f"Running: {running}",
            f"Orphaned: {orphaned}",
            f"Max concurrent tasks: {max_tasks}",
            f"Task execution enabled: {'yes' if enabled else 'no'}",
            f"Last task run at: {last_run.isoformat()}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        if command.state not in TASK_STATES:
            raise ValueError(f"Unsupported task state: {command.state}")
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            if command.state == "queued":
                tasks = queue.list_queued_tasks(count=command.limit, offset=command.offset)
            elif command.state == "running":
                tasks = queue.list_running_tasks(count=command.limit, offset=command.offset)
            else:
                tasks = queue.list_orphaned_tasks(count=command.limit, offset=command.offset)
            lines = [f"Tasks ({command.state}): {len(tasks)}"]
            lines.extend(_task_line(queue, task) for task in tasks)
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            task = queue.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            synopsis = queue.synopsis(task)

        started = task.started_at.isoformat() if task.started_at is not None else "-"
        return [
            f"Task: {task.task_id}",
            f"State: {task.state.value}",
            f"Kind: {task.kind.value}",
            f"Periodic event: {task.periodic_event or '-'}",
            f"Callback: {synopsis}",
            *([f"Stored callback: {task.raw_callback}"] if task.callback is None else []),
            f"Priority: {int(task.priority)} ({task.priority.name})",
            f"Description: {task.description or '-'}",
            f"Started at: {started}",
        ]

    def delete_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            removed = queue.delete_task(command.task_id)
        if not removed:
            return [f"Task not found: {command.task_id}"]
        return [f"Task deleted: {command.task_id}"]

    def requeue_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            new_id = queue.requeue_orphan(command.task_id, command.priority)
        if new_id is None:
            return [f"Running task not found: {command.task_id}"]
        return [f"Task re-queued: {command.task_id} -> {new_id}"]

    def requeue_orphans(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            new_ids = queue.requeue_all_orphans()
        return [f"Orphaned tasks re-queued: {len(new_ids)}"]

    def pump(self, command: PumpCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        registry = load_registry(command.registry) if command.registry else CallbackRegistry()
        with _queue(settings, registry=registry) as queue:
            summary = queue.pump()

        return [
            "Pump summary: "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"requeued={summary.requeued} stuck={summary.stuck} "
            f"stop_reason={summary.stop_reason} id_space_reset={summary.id_space_reset}",
        ]

    def settings(self, command: SettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            if command.max_tasks is not None:
                queue.set_max_concurrent_tasks(command.max_tasks, persistent=True)
            if command.enabled is not None:
                queue.set_task_execution_enabled(command.enabled, persistent=True)
            max_tasks = queue.get_max_concurrent_tasks()
            enabled = queue.task_execution_enabled()

        return [
            f"Max concurrent tasks: {max_tasks}",
            f"Task execution enabled: {'yes' if enabled else 'no'}",
        ]


def load_registry(path: str) -> CallbackRegistry:
    """Import a `module:attribute` registry, calling the attribute if it is a factory."""

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Registry must be given as module:attribute, got {path!r}.")
    try:
        value = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as error:
        raise ValueError(f"Unable to load registry {path}: {error}") from error
    if not isinstance(value, CallbackRegistry) and callable(value):
        value = value()
    if not isinstance(value, CallbackRegistry):
        raise ValueError(f"{path} is not a CallbackRegistry.")
    return value


def _task_line(queue: TaskQueue, task: TaskView) -> str:
    started = f" started_at={task.started_at.isoformat()}" if task.started_at else ""
    return (
        f"  {task.task_id} priority={int(task.priority)} kind={task.kind.value} "
        f"callback={queue.synopsis(task)}{started}"
    )


@contextmanager
def _queue(settings: Settings, registry: CallbackRegistry | None = None) -> Iterator[TaskQueue]:
    settings.validate()
    with TaskQueue.open(settings, registry or CallbackRegistry()) as queue:
        yield queue
