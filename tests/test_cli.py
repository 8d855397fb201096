from __future__ import annotations

import textwrap
from pathlib import Path

import allure
from click.testing import CliRunner

from task_pump.config import Settings
from task_pump.main import task_pump
from task_pump.queue.callbacks import CallbackRegistry
from task_pump.queue.models import FunctionRef, TaskPriority
from task_pump.queue.service import TaskQueue
from task_pump.storage.common import connect_sqlite_with_policy

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Operator CLI"),
]


def _seed(db_path: Path) -> list[int]:
    with TaskQueue.open(Settings(db_path=db_path), CallbackRegistry()) as queue:
        return [
            queue.enqueue(FunctionRef("export"), ["daily", 3], priority=TaskPriority.MEDIUM),
            queue.enqueue(FunctionRef("cleanup"), description="temp files"),
        ]


def test_cli_stats_tasks_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    export_id, cleanup_id = _seed(db_path)
    runner = CliRunner()

    stats = runner.invoke(task_pump, ["stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0, stats.output
    assert "Queued: 2" in stats.output
    assert "Running: 0" in stats.output
    assert "Last task run at: 2000-01-02T03:04:05+00:00" in stats.output

    tasks = runner.invoke(task_pump, ["tasks", "queued", "--db-path", str(db_path)])
    assert tasks.exit_code == 0, tasks.output
    assert "Tasks (queued): 2" in tasks.output
    assert f'{export_id} priority=2 kind=direct callback=export("daily", 3)' in tasks.output

    inspect = runner.invoke(task_pump, ["inspect", str(cleanup_id), "--db-path", str(db_path)])
    assert inspect.exit_code == 0, inspect.output
    assert "State: queued" in inspect.output
    assert "Callback: cleanup()" in inspect.output
    assert "Description: temp files" in inspect.output


def test_cli_delete_and_missing_task(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    export_id, _ = _seed(db_path)
    runner = CliRunner()

    deleted = runner.invoke(task_pump, ["delete", str(export_id), "--db-path", str(db_path)])
    assert deleted.exit_code == 0, deleted.output
    assert f"Task deleted: {export_id}" in deleted.output

    again = runner.invoke(task_pump, ["delete", str(export_id), "--db-path", str(db_path)])
    assert f"Task not found: {export_id}" in again.output

    missing = runner.invoke(task_pump, ["inspect", "999", "--db-path", str(db_path)])
    assert "Task not found: 999" in missing.output


def test_cli_pump_without_registry_leaves_tasks_stuck(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _seed(db_path)
    monkeypatch.setenv("TASK_PUMP_MEMORY_CEILING_BYTES", str(64 * 1024**3))
    runner = CliRunner()

    result = runner.invoke(task_pump, ["pump", "--db-path", str(db_path)])
    assert result.exit_code == 0, result.output
    assert "claimed=2" in result.output
    assert "stuck=2" in result.output

    running = runner.invoke(task_pump, ["tasks", "running", "--db-path", str(db_path)])
    assert "Tasks (running): 2" in running.output

    requeue = runner.invoke(
        task_pump,
        ["requeue", "1", "--priority", "1", "--db-path", str(db_path)],
    )
    assert requeue.exit_code == 0, requeue.output
    assert "Task re-queued: 1 -> 3" in requeue.output


def test_cli_pump_with_registry_module(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    marker = tmp_path / "marker.txt"
    module_dir = tmp_path / "modules"
    module_dir.mkdir()
    (module_dir / "cli_pump_tasks.py").write_text(
        textwrap.dedent(
            """
            from pathlib import Path

            from task_pump.queue.callbacks import CallbackRegistry


            def build_registry():
                registry = CallbackRegistry()
                registry.register_function(
                    "touch",
                    lambda path: Path(path).write_text("done", "utf-8"),
                )
                return registry
            """,
        ),
        "utf-8",
    )
    monkeypatch.syspath_prepend(str(module_dir))
    monkeypatch.setenv("TASK_PUMP_MEMORY_CEILING_BYTES", str(64 * 1024**3))
    with TaskQueue.open(Settings(db_path=db_path), CallbackRegistry()) as queue:
        queue.enqueue(FunctionRef("touch"), [str(marker)])

    result = CliRunner().invoke(
        task_pump,
        ["pump", "--db-path", str(db_path), "--registry", "cli_pump_tasks:build_registry"],
    )

    assert result.exit_code == 0, result.output
    assert "completed=1" in result.output
    assert marker.read_text("utf-8") == "done"


def test_cli_rejects_bad_registry(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        task_pump,
        ["pump", "--db-path", str(tmp_path / "cli.db"), "--registry", "no_such_module_xyz:reg"],
    )

    assert result.exit_code != 0
    assert "Unable to load registry" in result.output


def test_cli_settings_persist(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    updated = runner.invoke(
        task_pump,
        ["settings", "--max-tasks", "5", "--disable", "--db-path", str(db_path)],
    )
    assert updated.exit_code == 0, updated.output
    assert "Max concurrent tasks: 5" in updated.output
    assert "Task execution enabled: no" in updated.output

    shown = runner.invoke(task_pump, ["settings", "--db-path", str(db_path)])
    assert "Max concurrent tasks: 5" in shown.output
    assert "Task execution enabled: no" in shown.output


def test_cli_requeue_orphans_reports_count(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        task_pump,
        ["requeue-orphans", "--db-path", str(tmp_path / "x.db")],
    )

    assert result.exit_code == 0, result.output
    assert "Orphaned tasks re-queued: 0" in result.output


def test_cli_inspect_shows_stored_callback_that_cannot_be_decoded(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _seed(db_path)
    connection = connect_sqlite_with_policy(db_path=db_path, busy_timeout_ms=1000)
    try:
        cursor = connection.execute(
            "INSERT INTO queued_tasks (callback, parameters, priority, description) "
            "VALUES (?, '[]', 3, '')",
            ('{"type": "closure"}',),
        )
        broken_id = cursor.lastrowid
    finally:
        connection.close()

    result = CliRunner().invoke(task_pump, ["inspect", str(broken_id), "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "Callback: ????()" in result.output
    assert 'Stored callback: {"type": "closure"}' in result.output


def test_cli_inspect_omits_stored_callback_for_decodable_tasks(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    export_id, _ = _seed(db_path)

    result = CliRunner().invoke(task_pump, ["inspect", str(export_id), "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "Stored callback" not in result.output
