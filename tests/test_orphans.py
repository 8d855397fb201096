from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import allure

from task_pump.queue.models import FunctionRef, TaskPriority, TaskState
from task_pump.queue.service import TaskQueue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Orphan Recovery"),
]

EXPORT = FunctionRef("export")


def _start(task_queue: TaskQueue, started_at: datetime) -> None:
    claim = task_queue.repository.claim_next_task(
        max_concurrent_tasks=100,
        orphan_cutoff=datetime(2000, 1, 1, tzinfo=UTC),
        now=started_at,
    )
    assert claim.task is not None


def test_orphan_predicate_uses_max_execution_time(task_queue: TaskQueue, budget) -> None:
    now = datetime.now(tz=UTC)
    stale_id = task_queue.enqueue(EXPORT, ["stale"])
    _start(task_queue, now - timedelta(seconds=budget.max_execution + 1))
    fresh_id = task_queue.enqueue(EXPORT, ["fresh"])
    _start(task_queue, now)

    assert task_queue.count_orphaned_tasks() == 1
    assert [task.task_id for task in task_queue.list_orphaned_tasks()] == [stale_id]
    assert task_queue.count_running_tasks() == 1
    assert [task.task_id for task in task_queue.list_running_tasks()] == [fresh_id]


def test_orphans_do_not_block_the_concurrency_cap(task_queue: TaskQueue, registry) -> None:
    done: list[str] = []
    registry.register_function("finish", done.append)
    task_queue.set_max_concurrent_tasks(1)
    task_queue.enqueue(EXPORT, ["stale"])
    _start(task_queue, datetime.now(tz=UTC) - timedelta(hours=1))
    task_queue.enqueue(FunctionRef("finish"), ["next"])

    summary = task_queue.pump()

    assert summary.completed == 1
    assert done == ["next"]


def test_requeue_orphan_moves_task_back_with_new_priority(task_queue: TaskQueue, caplog) -> None:
    caplog.set_level(logging.INFO, logger="task_pump.queue.orphans")
    orphan_id = task_queue.enqueue(EXPORT, ["stale"], description="weekly export")
    _start(task_queue, datetime.now(tz=UTC) - timedelta(hours=1))

    new_id = task_queue.requeue_orphan(orphan_id, TaskPriority.HIGH)

    assert new_id is not None
    assert new_id != orphan_id
    assert task_queue.count_orphaned_tasks() == 0
    requeued = task_queue.get_task(new_id)
    assert requeued is not None
    assert requeued.state is TaskState.QUEUED
    assert requeued.priority is TaskPriority.HIGH
    assert requeued.description == "weekly export"
    assert requeued.parameters == ["stale"]
    assert f"Requeued orphaned task {orphan_id} as {new_id}." in caplog.messages


def test_requeue_orphan_keeps_priority_by_default(task_queue: TaskQueue) -> None:
    orphan_id = task_queue.enqueue(EXPORT, priority=TaskPriority.BACKGROUND)
    _start(task_queue, datetime.now(tz=UTC) - timedelta(hours=1))

    new_id = task_queue.requeue_orphan(orphan_id)

    assert new_id is not None
    requeued = task_queue.get_task(new_id)
    assert requeued is not None
    assert requeued.priority is TaskPriority.BACKGROUND


def test_requeue_missing_orphan_returns_none(task_queue: TaskQueue) -> None:
    assert task_queue.requeue_orphan(404) is None


def test_requeue_all_orphans_bumps_priority_one_level(task_queue: TaskQueue) -> None:
    long_ago = datetime.now(tz=UTC) - timedelta(hours=1)
    task_queue.enqueue(EXPORT, ["a"], priority=TaskPriority.LOW)
    _start(task_queue, long_ago)
    task_queue.enqueue(EXPORT, ["b"], priority=TaskPriority.HIGH)
    _start(task_queue, long_ago)

    new_ids = task_queue.requeue_all_orphans()

    assert len(new_ids) == 2
    assert task_queue.count_orphaned_tasks() == 0
    priorities = {
        tuple(task.parameters or []): task.priority for task in task_queue.list_queued_tasks()
    }
    assert priorities == {("a",): TaskPriority.MEDIUM, ("b",): TaskPriority.HIGH}
