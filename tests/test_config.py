from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_pump.config import (
    DEFAULT_ID_SPACE_MAX,
    DEFAULT_MEMORY_CEILING_BYTES,
    QueueSettings,
    Settings,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Configuration"),
]


def test_defaults_match_documented_thresholds(monkeypatch) -> None:
    for name in (
        "TASK_PUMP_DB_PATH",
        "TASK_PUMP_MIN_SECONDS_TO_RUN_TASK",
        "TASK_PUMP_MAX_RUNNING_TASKS_TO_TRACK",
        "TASK_PUMP_ID_SPACE_MAX",
        "TASK_PUMP_MEMORY_CEILING_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".task_pump.db")
    assert settings.queue.min_seconds_to_run_task == 65
    assert settings.queue.min_free_memory_fraction == 0.25
    assert settings.queue.max_running_tasks_to_track == 250
    assert settings.queue.memory_leak_log_fraction == 0.10
    assert settings.queue.id_space_max == DEFAULT_ID_SPACE_MAX
    assert settings.host.memory_ceiling_bytes == DEFAULT_MEMORY_CEILING_BYTES
    settings.validate()


def test_from_env_reads_prefixed_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_PUMP_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASK_PUMP_MAX_CONCURRENT_TASKS", "7")
    monkeypatch.setenv("TASK_PUMP_MAX_EXECUTION_SECONDS", "90")
    monkeypatch.setenv("TASK_PUMP_ID_RESET_FRACTION", "0.5")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue.default_max_concurrent_tasks == 7
    assert settings.host.max_execution_seconds == 90
    assert settings.queue.id_reset_fraction == 0.5


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_PUMP_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("queue", "env_name"),
    [
        (QueueSettings(min_free_memory_fraction=1.5), "MIN_FREE_MEMORY_FRACTION"),
        (QueueSettings(max_running_tasks_to_track=0), "MAX_RUNNING_TASKS_TO_TRACK"),
        (QueueSettings(default_max_concurrent_tasks=0), "MAX_CONCURRENT_TASKS"),
        (QueueSettings(id_reset_fraction=1.0), "ID_RESET_FRACTION"),
        (QueueSettings(min_seconds_to_run_task=-1), "MIN_SECONDS_TO_RUN_TASK"),
    ],
)
def test_validate_rejects_out_of_range_queue_settings(queue: QueueSettings, env_name: str) -> None:
    settings = Settings(queue=queue)

    with pytest.raises(ValueError, match=env_name):
        settings.validate()


def test_validate_rejects_non_positive_busy_timeout() -> None:
    with pytest.raises(ValueError, match="SQLITE_BUSY_TIMEOUT_MS"):
        Settings(sqlite_busy_timeout_ms=0).validate()
