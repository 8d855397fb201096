from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from task_pump.config import QueueSettings, Settings
from task_pump.queue.callbacks import CallbackRegistry
from task_pump.queue.models import FunctionRef
from task_pump.queue.service import TaskQueue
from task_pump.storage.common import connect_sqlite_with_policy

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Identifier Space"),
]

CLEANUP = FunctionRef("cleanup")


@pytest.fixture()
def small_id_queue(tmp_path: Path, budget) -> Iterator[TaskQueue]:
    settings = Settings(db_path=tmp_path / "ids.db", queue=QueueSettings(id_space_max=100))
    budget.seconds = 60
    with TaskQueue.open(settings, CallbackRegistry(), budget) as queue:
        yield queue


def _set_last_issued_id(db_path: Path, value: int) -> None:
    connection = connect_sqlite_with_policy(db_path=db_path, busy_timeout_ms=1000)
    try:
        connection.execute(
            "UPDATE sqlite_sequence SET seq = ? WHERE name = 'queued_tasks'",
            (value,),
        )
    finally:
        connection.close()


def test_guard_resets_ids_when_queue_is_empty_and_space_nearly_used(
    small_id_queue: TaskQueue,
) -> None:
    small_id_queue.delete_task(small_id_queue.enqueue(CLEANUP))
    _set_last_issued_id(small_id_queue.settings.db_path, 94)
    assert small_id_queue.repository.next_queued_task_id() == 95

    assert small_id_queue.guard.check() is True

    assert small_id_queue.repository.next_queued_task_id() == 1
    assert small_id_queue.enqueue(CLEANUP) == 1


def test_guard_does_nothing_while_tasks_are_queued(small_id_queue: TaskQueue) -> None:
    task_id = small_id_queue.enqueue(CLEANUP)
    _set_last_issued_id(small_id_queue.settings.db_path, 94)

    assert small_id_queue.guard.check() is False

    assert small_id_queue.get_queued_task_ids(CLEANUP) == [task_id]
    assert small_id_queue.repository.next_queued_task_id() == 95


def test_guard_does_nothing_below_threshold(small_id_queue: TaskQueue) -> None:
    small_id_queue.delete_task(small_id_queue.enqueue(CLEANUP))
    _set_last_issued_id(small_id_queue.settings.db_path, 50)

    assert small_id_queue.guard.check() is False
    assert small_id_queue.repository.next_queued_task_id() == 51


def test_guard_needs_spare_time(small_id_queue: TaskQueue, budget) -> None:
    small_id_queue.delete_task(small_id_queue.enqueue(CLEANUP))
    _set_last_issued_id(small_id_queue.settings.db_path, 94)
    budget.seconds = 30

    assert small_id_queue.guard.check() is False


def test_guard_runs_after_pump_and_keeps_running_rows(small_id_queue: TaskQueue) -> None:
    running_id = small_id_queue.enqueue(CLEANUP, ["stuck"])
    small_id_queue.budget.seconds = 3600
    small_id_queue.pump()
    _set_last_issued_id(small_id_queue.settings.db_path, 94)
    small_id_queue.budget.seconds = 60

    summary = small_id_queue.pump()

    assert summary.claimed == 0
    assert summary.id_space_reset is True
    assert small_id_queue.get_running_task_ids(CLEANUP) == [running_id]


def test_ids_restart_past_running_rows_so_claims_keep_working(
    small_id_queue: TaskQueue,
) -> None:
    small_id_queue.budget.seconds = 3600
    stuck_id = small_id_queue.enqueue(CLEANUP, ["stuck"])
    small_id_queue.pump()
    _set_last_issued_id(small_id_queue.settings.db_path, 94)
    small_id_queue.budget.seconds = 60
    assert small_id_queue.pump().id_space_reset is True

    small_id_queue.budget.seconds = 3600
    new_id = small_id_queue.enqueue(CLEANUP, ["fresh"])
    summary = small_id_queue.pump()

    assert new_id == stuck_id + 1
    assert summary.claimed == 1
    assert summary.stuck == 1
    assert small_id_queue.get_running_task_ids(CLEANUP) == [stuck_id, new_id]


def test_guard_waits_while_a_running_row_holds_a_high_id(small_id_queue: TaskQueue) -> None:
    small_id_queue.budget.seconds = 3600
    small_id_queue.delete_task(small_id_queue.enqueue(CLEANUP))
    _set_last_issued_id(small_id_queue.settings.db_path, 94)
    high_id = small_id_queue.enqueue(CLEANUP, ["stuck"])
    small_id_queue.pump()

    assert high_id == 95
    assert small_id_queue.get_running_task_ids(CLEANUP) == [high_id]
    assert small_id_queue.guard.check() is False
    assert small_id_queue.repository.next_queued_task_id() == 96
