"""CLI entrypoint for task-pump."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_pump import __version__
from task_pump.errors import TaskQueueError
from task_pump.queue.controllers import (
    TASK_STATES,
    ListTasksCommand,
    PumpCommand,
    QueueCommand,
    SettingsCommand,
    TaskIdCommand,
    TaskQueueCliController,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = TaskQueueCliController()
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="task-pump")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue diagnostics.",
)
def task_pump(log_level: str) -> None:
    """Persisted priority task queue CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_pump.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Show queue sizes and persisted settings."""

    _emit_lines(_call(QUEUE_CONTROLLER.stats, QueueCommand(db_path=db_path)))


@task_pump.command("tasks")
@click.argument(
    "state",
    type=click.Choice(list(TASK_STATES), case_sensitive=False),
    default="queued",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max tasks to print.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Tasks to skip before printing.",
)
def queue_tasks(state: str, db_path: Path | None, limit: int, offset: int) -> None:
    """List queued, running or orphaned tasks."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, state=state.lower(), limit=limit, offset=offset),
        ),
    )


@task_pump.command("inspect")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_inspect(task_id: int, db_path: Path | None) -> None:
    """Inspect one queued or running task."""

    _emit_lines(
        _call(QUEUE_CONTROLLER.inspect_task, TaskIdCommand(db_path=db_path, task_id=task_id)),
    )


@task_pump.command("delete")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_delete(task_id: int, db_path: Path | None) -> None:
    """Remove a task from the queue or the running set."""

    _emit_lines(
        _call(QUEUE_CONTROLLER.delete_task, TaskIdCommand(db_path=db_path, task_id=task_id)),
    )


@task_pump.command("requeue")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=4),
    default=None,
    help="New priority, 1 (high) to 4 (background).",
)
def queue_requeue(task_id: int, db_path: Path | None, priority: int | None) -> None:
    """Move a running (usually orphaned) task back to the queue."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.requeue_task,
            TaskIdCommand(db_path=db_path, task_id=task_id, priority=priority),
        ),
    )


@task_pump.command("requeue-orphans")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_requeue_orphans(db_path: Path | None) -> None:
    """Requeue every orphaned task one priority level higher."""

    _emit_lines(_call(QUEUE_CONTROLLER.requeue_orphans, QueueCommand(db_path=db_path)))


@task_pump.command("pump")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--registry",
    default=None,
    help="Callback registry as `module:attribute` (a registry or a factory returning one).",
)
def queue_pump(db_path: Path | None, registry: str | None) -> None:
    """Run queued tasks in the foreground until the budget runs out."""

    _emit_lines(
        _call(QUEUE_CONTROLLER.pump, PumpCommand(db_path=db_path, registry=registry)),
    )


@task_pump.command("settings")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Persist the maximum number of concurrently running tasks.",
)
@click.option(
    "--enable/--disable",
    "enabled",
    default=None,
    help="Persist whether hosts should pump the queue.",
)
def queue_settings(db_path: Path | None, max_tasks: int | None, enabled: bool | None) -> None:
    """Show or update persisted queue settings."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.settings,
            SettingsCommand(db_path=db_path, max_tasks=max_tasks, enabled=enabled),
        ),
    )


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (TaskQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_pump()
